# backend/classbook/models/booking.py
"""
Booking model for the classbook ledger.

A booking is one student's claim on one seat of one session. Bookings are
never deleted: cancellation is a status change so the audit trail survives.

Two partial unique indexes back the seat invariants for active bookings
(invited, pending, confirmed):
- one active booking per (session, student)
- one active booking per (session, seat_number), seats numbered 1..capacity
"""

from datetime import datetime, timezone
from enum import Enum
import logging
from typing import Any, Optional

from sqlalchemy import (
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..database import Base

logger = logging.getLogger(__name__)


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    INVITED = "INVITED"
    PENDING = "PENDING"  # Awaiting external payment
    CONFIRMED = "CONFIRMED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    FORFEIT = "FORFEIT"


ACTIVE_BOOKING_STATUSES = (
    BookingStatus.INVITED.value,
    BookingStatus.PENDING.value,
    BookingStatus.CONFIRMED.value,
)

_ACTIVE_PREDICATE = "status IN ('INVITED', 'PENDING', 'CONFIRMED')"


class Booking(Base):
    """A student's seat in a session."""

    __tablename__ = "bookings"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    session_id = Column(String(26), ForeignKey("class_sessions.id"), nullable=False, index=True)
    student_id = Column(String(26), nullable=False, index=True)
    seat_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default=BookingStatus.CONFIRMED.value, index=True)

    # Credit payment (null for direct-payment bookings)
    student_package_id = Column(String(26), ForeignKey("student_packages.id"), nullable=True)
    package_use_id = Column(String(26), ForeignKey("package_uses.id"), nullable=True)
    credits_cost = Column(Integer, nullable=True)

    # Direct-payment reference, set when the booking is payment-driven
    payment_ref = Column(String(255), nullable=True)

    reschedule_count = Column(Integer, nullable=False, default=0)
    rescheduled_from_booking_id = Column(String(26), ForeignKey("bookings.id"), nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_by_id = Column(String(26), nullable=True)
    cancellation_reason = Column(Text, nullable=True)

    session = relationship("ClassSession", back_populates="bookings")
    package_use = relationship("PackageUse", foreign_keys=[package_use_id])
    student_package = relationship("StudentPackage")
    rescheduled_from = relationship("Booking", remote_side=[id], uselist=False)

    __table_args__ = (
        CheckConstraint(
            "status IN ('INVITED', 'PENDING', 'CONFIRMED', 'CANCELLED', 'NO_SHOW', 'FORFEIT')",
            name="ck_bookings_status",
        ),
        CheckConstraint("seat_number >= 1", name="ck_bookings_seat_positive"),
        CheckConstraint(
            "credits_cost IS NULL OR credits_cost > 0", name="ck_bookings_credits_cost_positive"
        ),
        CheckConstraint("reschedule_count >= 0", name="ck_bookings_reschedule_count"),
        Index(
            "uq_bookings_active_student",
            "session_id",
            "student_id",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
        Index(
            "uq_bookings_active_seat",
            "session_id",
            "seat_number",
            unique=True,
            postgresql_where=text(_ACTIVE_PREDICATE),
            sqlite_where=text(_ACTIVE_PREDICATE),
        ),
    )

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.status:
            self.status = BookingStatus.CONFIRMED.value
        if self.reschedule_count is None:
            self.reschedule_count = 0

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: session={self.session_id}, student={self.student_id}, "
            f"seat={self.seat_number}, status={self.status}>"
        )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_BOOKING_STATUSES

    @property
    def is_credit_paid(self) -> bool:
        return self.package_use_id is not None

    def cancel(self, cancelled_by_id: str, reason: Optional[str] = None) -> None:
        """Cancel this booking."""
        self.status = BookingStatus.CANCELLED.value
        self.cancelled_at = datetime.now(timezone.utc)
        self.cancelled_by_id = cancelled_by_id
        self.cancellation_reason = reason
        logger.info("Booking %s cancelled by %s", self.id, cancelled_by_id)
