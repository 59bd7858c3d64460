"""Booking lifecycle domain events, published through the outbox at commit."""
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional


@dataclass
class BookingCreated:
    """Fired after a booking is successfully created."""

    EVENT_TYPE: ClassVar[str] = "booking.created"

    booking_id: str
    session_id: str
    student_id: str
    teacher_id: str
    status: str
    created_at: datetime
    credits_cost: Optional[int] = None

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    @property
    def idempotency_key(self) -> str:
        return f"{self.EVENT_TYPE}:{self.booking_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class BookingCancelled:
    """Fired after a booking is cancelled."""

    EVENT_TYPE: ClassVar[str] = "booking.cancelled"

    booking_id: str
    session_id: str
    student_id: str
    cancelled_by: str
    cancelled_at: datetime
    reason: Optional[str] = None
    refunded_credits: int = 0

    @property
    def aggregate_id(self) -> str:
        return self.booking_id

    @property
    def idempotency_key(self) -> str:
        return f"{self.EVENT_TYPE}:{self.booking_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionScheduled:
    """Fired when a booking creates its session; drives calendar provisioning."""

    EVENT_TYPE: ClassVar[str] = "session.scheduled"

    session_id: str
    teacher_id: str
    service_type: str
    start_at: datetime
    end_at: datetime
    booking_id: Optional[str] = None

    @property
    def aggregate_id(self) -> str:
        return self.session_id

    @property
    def idempotency_key(self) -> str:
        return f"{self.EVENT_TYPE}:{self.session_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionRescheduled:
    """Fired after a booking moves to another session."""

    EVENT_TYPE: ClassVar[str] = "session.rescheduled"

    student_id: str
    old_booking_id: str
    new_booking_id: str
    old_session_id: str
    new_session_id: str
    rescheduled_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.new_booking_id

    @property
    def idempotency_key(self) -> str:
        return f"{self.EVENT_TYPE}:{self.new_booking_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class SessionCancelled:
    """Fired when a session is cancelled because its last booking went away."""

    EVENT_TYPE: ClassVar[str] = "session.cancelled"

    session_id: str
    teacher_id: str
    cancelled_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.session_id

    @property
    def idempotency_key(self) -> str:
        return f"{self.EVENT_TYPE}:{self.session_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WaitlistNotified:
    """Fired when a waitlisted student is offered a freed seat."""

    EVENT_TYPE: ClassVar[str] = "waitlist.notified"

    entry_id: str
    session_id: str
    student_id: str
    notified_at: datetime
    expires_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.entry_id

    @property
    def idempotency_key(self) -> str:
        # An entry may be re-notified after its window lapses
        return f"{self.EVENT_TYPE}:{self.entry_id}:{int(self.notified_at.timestamp())}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class WaitlistPromoted:
    EVENT_TYPE: ClassVar[str] = "waitlist.promoted"

    entry_id: str
    session_id: str
    student_id: str
    booking_id: str
    promoted_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.entry_id

    @property
    def idempotency_key(self) -> str:
        return f"{self.EVENT_TYPE}:{self.entry_id}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PackageGranted:
    """Fired once per external payment turned into credits."""

    EVENT_TYPE: ClassVar[str] = "package.granted"

    package_id: str
    student_id: str
    source_payment_ref: str
    total_credits: int
    granted_at: datetime

    @property
    def aggregate_id(self) -> str:
        return self.package_id

    @property
    def idempotency_key(self) -> str:
        return f"{self.EVENT_TYPE}:{self.source_payment_ref}"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
