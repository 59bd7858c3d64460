# backend/classbook/models/cancellation_policy.py
"""
Cancellation policy versions.

Policies are append-and-supersede: a new active row is inserted and every
previous row is flipped inactive in the same transaction. A partial unique
index keeps at most one row active.
"""

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, Index, Integer, String, text
from sqlalchemy.sql import func
import ulid

from ..database import Base


class CancellationPolicy(Base):
    """Rules governing student cancellation and rescheduling."""

    __tablename__ = "cancellation_policies"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    policy_name = Column(String(255), nullable=True)

    allow_cancellation = Column(Boolean, nullable=False, default=True)
    cancellation_deadline_hours = Column(Integer, nullable=False, default=24)
    allow_rescheduling = Column(Boolean, nullable=False, default=True)
    rescheduling_deadline_hours = Column(Integer, nullable=False, default=24)
    max_reschedules_per_booking = Column(Integer, nullable=False, default=2)
    refund_credits_on_cancel = Column(Boolean, nullable=False, default=True)

    is_active = Column(Boolean, nullable=False, default=True)
    created_by = Column(String(26), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    superseded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("cancellation_deadline_hours >= 0", name="ck_policy_cancel_deadline"),
        CheckConstraint("rescheduling_deadline_hours >= 0", name="ck_policy_reschedule_deadline"),
        CheckConstraint("max_reschedules_per_booking >= 0", name="ck_policy_max_reschedules"),
        Index(
            "uq_cancellation_policies_single_active",
            "is_active",
            unique=True,
            postgresql_where=text("is_active"),
            sqlite_where=text("is_active = 1"),
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CancellationPolicy {self.id}: active={self.is_active}, "
            f"deadline={self.cancellation_deadline_hours}h, refund={self.refund_credits_on_cancel}>"
        )
