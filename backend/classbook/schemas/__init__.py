"""Pydantic schemas for ledger inputs and results."""

from .booking import BookingResult, ModificationCheck, NewSessionSpec, StudentBookingView
from .cancellation import CancellationPolicyConfig, CancellationResult, PromotionResult
from .package import AllowanceBalance, AllowanceSpec, PackageBalance
from .waitlist import WaitlistEntryView

__all__ = [
    "AllowanceBalance",
    "AllowanceSpec",
    "BookingResult",
    "CancellationPolicyConfig",
    "CancellationResult",
    "ModificationCheck",
    "NewSessionSpec",
    "PackageBalance",
    "PromotionResult",
    "StudentBookingView",
    "WaitlistEntryView",
]
