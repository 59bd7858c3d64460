# backend/classbook/models/class_session.py
"""
Scheduled class session.

A session is a concrete time block owned by the scheduling side of the
platform. The ledger only reads it, except for the status transitions a
cancellation cascade triggers.
"""

from enum import Enum
import logging
from typing import Any

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.enums import ServiceType
from ..core.timezone_utils import ensure_utc
from ..database import Base

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    """Session lifecycle statuses."""

    SCHEDULED = "SCHEDULED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


class ClassSession(Base):
    """A bookable time block with a seat capacity."""

    __tablename__ = "class_sessions"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    service_type = Column(String(20), nullable=False, default=ServiceType.PRIVATE.value)
    teacher_id = Column(String(26), nullable=False)
    # Snapshot of the teacher's tier when the session was scheduled
    teacher_tier = Column(Integer, nullable=False, default=0)

    start_at = Column(DateTime(timezone=True), nullable=False)
    end_at = Column(DateTime(timezone=True), nullable=False)
    capacity_max = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default=SessionStatus.SCHEDULED.value, index=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    bookings = relationship("Booking", back_populates="session")
    waitlist_entries = relationship(
        "WaitlistEntry", back_populates="session", order_by="WaitlistEntry.position"
    )

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_class_sessions_time_order"),
        CheckConstraint("capacity_max >= 1", name="ck_class_sessions_capacity_positive"),
        CheckConstraint("teacher_tier >= 0", name="ck_class_sessions_teacher_tier"),
        CheckConstraint(
            "status IN ('SCHEDULED', 'CANCELLED', 'COMPLETED')",
            name="ck_class_sessions_status",
        ),
        CheckConstraint(
            "service_type IN ('PRIVATE', 'GROUP', 'COURSE')",
            name="ck_class_sessions_service_type",
        ),
        Index("ix_class_sessions_teacher_start", "teacher_id", "start_at"),
    )

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if not self.status:
            self.status = SessionStatus.SCHEDULED.value

    def __repr__(self) -> str:
        return (
            f"<ClassSession {self.id}: teacher={self.teacher_id}, "
            f"{self.start_at}-{self.end_at}, capacity={self.capacity_max}, status={self.status}>"
        )

    @property
    def starts_at_utc(self):
        return ensure_utc(self.start_at)

    @property
    def ends_at_utc(self):
        return ensure_utc(self.end_at)

    @property
    def duration_minutes(self) -> int:
        delta = self.ends_at_utc - self.starts_at_utc
        return int(round(delta.total_seconds() / 60))

    def is_scheduled(self) -> bool:
        return self.status == SessionStatus.SCHEDULED.value

    def cancel(self) -> None:
        """Mark the session cancelled (cascade from its last booking going away)."""
        self.status = SessionStatus.CANCELLED.value
        logger.info("Session %s cancelled", self.id)
