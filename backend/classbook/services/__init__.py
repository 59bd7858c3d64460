"""Service layer: every public operation owns its transaction."""

from .booking_service import BookingService
from .cancellation_policy import (
    CancellationPolicyService,
    PolicyDecision,
    evaluate_cancellation,
    evaluate_reschedule,
)
from .conflict_checker import ConflictChecker, validate_interval
from .entitlement_ledger import EntitlementLedger
from .waitlist_service import WaitlistService

__all__ = [
    "BookingService",
    "CancellationPolicyService",
    "ConflictChecker",
    "EntitlementLedger",
    "PolicyDecision",
    "WaitlistService",
    "evaluate_cancellation",
    "evaluate_reschedule",
    "validate_interval",
]
