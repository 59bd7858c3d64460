# backend/classbook/models/waitlist.py
"""
Waitlist queue entries for full sessions.

Positions order the queue per session. Voluntary leaves renumber the entries
behind the leaver; promotions may leave gaps since position only orders.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import Column, DateTime, ForeignKey, Index, Integer, String, UniqueConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base


class WaitlistEntry(Base):
    """One student's place in the queue of a session."""

    __tablename__ = "waitlist_entries"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    session_id = Column(String(26), ForeignKey("class_sessions.id"), nullable=False)
    student_id = Column(String(26), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    # Package the student asked to pay with on promotion, if any
    student_package_id = Column(String(26), ForeignKey("student_packages.id"), nullable=True)

    notified_at = Column(DateTime(timezone=True), nullable=True)
    notification_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    session = relationship("ClassSession", back_populates="waitlist_entries")

    __table_args__ = (
        UniqueConstraint("session_id", "student_id", name="uq_waitlist_session_student"),
        Index("ix_waitlist_session_position", "session_id", "position"),
    )

    def __repr__(self) -> str:
        return (
            f"<WaitlistEntry {self.id}: session={self.session_id}, "
            f"student={self.student_id}, position={self.position}>"
        )

    def is_expired(self, as_of: datetime) -> bool:
        expires = ensure_utc(self.notification_expires_at)
        return expires is not None and expires <= ensure_utc(as_of)

    def mark_notified(self, expires_in_hours: int, now: Optional[datetime] = None) -> None:
        notified = now or datetime.now(timezone.utc)
        self.notified_at = notified
        self.notification_expires_at = notified + timedelta(hours=expires_in_hours)
