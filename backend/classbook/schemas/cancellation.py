# backend/classbook/schemas/cancellation.py
"""Cancellation policy configuration and cancellation results."""

from datetime import datetime
from typing import Optional

from pydantic import Field

from ..core.enums import PromotionOutcome
from ._strict_base import StrictModel, StrictRequestModel
from .booking import BookingResult


class CancellationPolicyConfig(StrictRequestModel):
    """Admin input for a new active cancellation policy."""

    policy_name: Optional[str] = Field(None, max_length=255)
    allow_cancellation: bool = True
    cancellation_deadline_hours: int = Field(24, ge=0, le=168)
    allow_rescheduling: bool = True
    rescheduling_deadline_hours: int = Field(24, ge=0, le=168)
    max_reschedules_per_booking: int = Field(2, ge=0, le=10)
    refund_credits_on_cancel: bool = True


class PromotionResult(StrictModel):
    """
    Outcome of one waitlist promotion attempt.

    Failures are reported here instead of raised so the caller decides
    whether to notify anyone; promotion never cascades on its own.
    """

    session_id: str
    outcome: PromotionOutcome
    entry_id: Optional[str] = None
    student_id: Optional[str] = None
    booking: Optional[BookingResult] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def promoted(self) -> bool:
        return self.outcome == PromotionOutcome.PROMOTED


class CancellationResult(StrictModel):
    booking_id: str
    session_id: str
    status: str
    cancelled_at: datetime
    refund_eligible: bool
    refunded_credits: int = 0
    session_cancelled: bool = False
    promotion: Optional[PromotionResult] = None

    @property
    def refunded(self) -> bool:
        return self.refunded_credits > 0
