# backend/classbook/models/package.py
"""
Entitlement models: purchased packages, their allowances and the usage ledger.

Remaining credits for an allowance are defined by the ledger:

    remaining = allowance.credits - SUM(credits_used of non-voided uses)

``PackageAllowance.credits_consumed`` materialises that sum. It is only
changed in the transaction that appends or voids a ``PackageUse`` row and is
what the guarded consume UPDATE checks against.
"""

from datetime import datetime, timezone
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
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from sqlalchemy.types import JSON
import ulid

from ..core.timezone_utils import ensure_utc
from ..database import Base

logger = logging.getLogger(__name__)


class StudentPackage(Base):
    """A purchased bundle; inert metadata around its allowances."""

    __tablename__ = "student_packages"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    student_id = Column(String(26), nullable=False, index=True)
    package_name = Column(String(255), nullable=False)
    purchased_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    # External payment confirmation this package was granted from
    source_payment_ref = Column(String(255), nullable=False, unique=True)
    package_metadata = Column(
        "metadata",
        JSONB().with_variant(JSON(), "sqlite"),
        nullable=True,
    )
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    allowances = relationship(
        "PackageAllowance",
        back_populates="student_package",
        order_by="PackageAllowance.created_at",
    )
    uses = relationship("PackageUse", back_populates="student_package")

    def __repr__(self) -> str:
        return f"<StudentPackage {self.id}: student={self.student_id}, name={self.package_name}>"

    def is_expired(self, as_of: datetime) -> bool:
        expires = ensure_utc(self.expires_at)
        return expires is not None and expires <= ensure_utc(as_of)


class PackageAllowance(Base):
    """A quota line of a package: service type, tier restriction and credits."""

    __tablename__ = "package_allowances"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    student_package_id = Column(
        String(26), ForeignKey("student_packages.id", ondelete="CASCADE"), nullable=False
    )
    service_type = Column(String(20), nullable=False, index=True)
    teacher_tier = Column(Integer, nullable=False, default=0)  # 0 = any tier
    credit_unit_minutes = Column(Integer, nullable=False)
    credits = Column(Integer, nullable=False)
    credits_consumed = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    student_package = relationship("StudentPackage", back_populates="allowances")

    __table_args__ = (
        CheckConstraint("credits >= 0", name="ck_package_allowances_credits"),
        CheckConstraint("teacher_tier >= 0", name="ck_package_allowances_teacher_tier"),
        CheckConstraint(
            "credit_unit_minutes IN (15, 30, 45, 60)",
            name="ck_package_allowances_credit_unit",
        ),
        CheckConstraint(
            "credits_consumed >= 0 AND credits_consumed <= credits",
            name="ck_package_allowances_consumed_within_credits",
        ),
        Index("ix_package_allowances_package", "student_package_id"),
    )

    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        if self.credits_consumed is None:
            self.credits_consumed = 0
        if self.teacher_tier is None:
            self.teacher_tier = 0

    def __repr__(self) -> str:
        return (
            f"<PackageAllowance {self.id}: {self.service_type} tier={self.teacher_tier} "
            f"credits={self.credits} consumed={self.credits_consumed}>"
        )


class PackageUse(Base):
    """
    Append-only ledger entry for one consumption of allowance credits.

    A refund voids the row; reversal rows with negative amounts are never written.
    """

    __tablename__ = "package_uses"

    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))
    student_package_id = Column(
        String(26), ForeignKey("student_packages.id", ondelete="CASCADE"), nullable=False
    )
    allowance_id = Column(
        String(26), ForeignKey("package_allowances.id", ondelete="CASCADE"), nullable=False
    )
    booking_id = Column(String(26), nullable=True, index=True)
    session_id = Column(String(26), nullable=True)
    credits_used = Column(Integer, nullable=False, default=1)
    used_at = Column(DateTime(timezone=True), nullable=False)
    used_by = Column(String(26), nullable=True)
    note = Column(String(500), nullable=True)

    voided_at = Column(DateTime(timezone=True), nullable=True)
    voided_by = Column(String(26), nullable=True)
    void_reason = Column(Text, nullable=True)

    student_package = relationship("StudentPackage", back_populates="uses")
    allowance = relationship("PackageAllowance")

    __table_args__ = (
        CheckConstraint("credits_used > 0", name="ck_package_uses_credits_positive"),
        Index("ix_package_uses_allowance_voided", "allowance_id", "voided_at"),
        Index("ix_package_uses_package", "student_package_id"),
    )

    def __repr__(self) -> str:
        state = "voided" if self.voided_at else "active"
        return f"<PackageUse {self.id}: allowance={self.allowance_id} credits={self.credits_used} {state}>"

    @property
    def is_voided(self) -> bool:
        return self.voided_at is not None

    def void(self, actor_id: Optional[str], reason: Optional[str] = None) -> None:
        self.voided_at = datetime.now(timezone.utc)
        self.voided_by = actor_id
        self.void_reason = reason
