# backend/classbook/schemas/booking.py
"""
Booking schemas for the classbook ledger.

Inputs describe a session to create on the fly; results describe what the
orchestrator did so calling layers can render it without re-reading the store.
"""

from datetime import datetime
from typing import TYPE_CHECKING, List, Optional

from pydantic import ConfigDict, Field, field_validator

from ..core.enums import PolicyDenialReason, ServiceType
from ..core.timezone_utils import ensure_utc
from ._strict_base import StrictModel, StrictRequestModel

if TYPE_CHECKING:
    from ..models.booking import Booking


class NewSessionSpec(StrictRequestModel):
    """
    Data for a session created as part of a booking.

    Naive datetimes are taken as UTC. Interval order is checked by the
    availability checker so an inverted window surfaces as a domain error.
    """

    teacher_id: str = Field(..., min_length=1, description="Teacher running the session")
    start_at: datetime
    end_at: datetime
    capacity_max: int = Field(1, ge=1, le=500)
    service_type: ServiceType = ServiceType.PRIVATE
    teacher_tier: int = Field(0, ge=0, description="Teacher tier snapshot, 0 when untiered")

    @field_validator("start_at", "end_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class BookingResult(StrictModel):
    """Outcome of a successful create, reschedule or promotion."""

    booking_id: str
    session_id: str
    student_id: str
    status: str
    seat_number: int
    credits_cost: Optional[int] = None
    student_package_id: Optional[str] = None
    package_use_id: Optional[str] = None
    allowance_id: Optional[str] = None
    reschedule_count: int = 0
    rescheduled_from_booking_id: Optional[str] = None
    session_created: bool = False

    @classmethod
    def from_booking(
        cls,
        booking: "Booking",
        *,
        allowance_id: Optional[str] = None,
        session_created: bool = False,
    ) -> "BookingResult":
        return cls(
            booking_id=booking.id,
            session_id=booking.session_id,
            student_id=booking.student_id,
            status=booking.status,
            seat_number=booking.seat_number,
            credits_cost=booking.credits_cost,
            student_package_id=booking.student_package_id,
            package_use_id=booking.package_use_id,
            allowance_id=allowance_id,
            reschedule_count=booking.reschedule_count or 0,
            rescheduled_from_booking_id=booking.rescheduled_from_booking_id,
            session_created=session_created,
        )


class ModificationCheck(StrictModel):
    """Whether the owner may cancel or reschedule a booking right now."""

    booking_id: str
    can_cancel: bool
    can_reschedule: bool
    refund_eligible: bool = False
    cancel_denial_reason: Optional[PolicyDenialReason] = None
    reschedule_denial_reason: Optional[PolicyDenialReason] = None
    hours_until_session: float
    cancellation_deadline: datetime
    rescheduling_deadline: datetime

    @property
    def reasons(self) -> List[PolicyDenialReason]:
        return [
            reason
            for reason in (self.cancel_denial_reason, self.reschedule_denial_reason)
            if reason is not None
        ]


class StudentBookingView(StrictModel):
    """An active booking as listed for its student."""

    model_config = ConfigDict(extra="forbid", from_attributes=True)

    booking_id: str
    session_id: str
    service_type: str
    start_at: datetime
    end_at: datetime
    status: str
    seat_number: int
    credits_cost: Optional[int] = None
    reschedule_count: int = 0
    can_cancel: bool
    can_reschedule: bool
    cancellation_deadline: datetime
