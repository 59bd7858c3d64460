# backend/classbook/repositories/package_repository.py
"""
Package Repository for the classbook ledger

Data access for packages, allowances and the append-only PackageUse ledger.

The credit guard lives here: ``try_reserve_credits`` is a single UPDATE whose
WHERE clause re-checks the balance, so two transactions cannot both spend the
last credit no matter what either of them read earlier.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import and_, func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload

from ..core.enums import ANY_TEACHER_TIER
from ..core.exceptions import RepositoryException
from ..models.package import PackageAllowance, PackageUse, StudentPackage
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PackageRepository(BaseRepository[StudentPackage]):
    """Repository for entitlement queries and ledger writes."""

    def __init__(self, db: Session):
        super().__init__(db, StudentPackage)
        self.logger = logging.getLogger(__name__)

    # Packages

    def get_by_payment_ref(self, source_payment_ref: str) -> Optional[StudentPackage]:
        """Return the package granted for an external payment, if any."""
        try:
            return cast(
                Optional[StudentPackage],
                self.db.query(StudentPackage)
                .options(selectinload(StudentPackage.allowances))
                .filter(StudentPackage.source_payment_ref == source_payment_ref)
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error loading package by payment ref: %s", str(e))
            raise RepositoryException(f"Failed to load package: {str(e)}")

    def get_for_student(self, package_id: str, student_id: str) -> Optional[StudentPackage]:
        try:
            return cast(
                Optional[StudentPackage],
                self.db.query(StudentPackage)
                .options(selectinload(StudentPackage.allowances))
                .filter(StudentPackage.id == package_id, StudentPackage.student_id == student_id)
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error loading package %s: %s", package_id, str(e))
            raise RepositoryException(f"Failed to load package: {str(e)}")

    def list_for_student(self, student_id: str) -> List[StudentPackage]:
        """All packages of a student, oldest purchase first."""
        try:
            return cast(
                List[StudentPackage],
                self.db.query(StudentPackage)
                .options(selectinload(StudentPackage.allowances))
                .filter(StudentPackage.student_id == student_id)
                .order_by(StudentPackage.purchased_at.asc(), StudentPackage.id.asc())
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing packages for student %s: %s", student_id, str(e))
            raise RepositoryException(f"Failed to list packages: {str(e)}")

    def create_allowance(self, **kwargs) -> PackageAllowance:
        allowance = PackageAllowance(**kwargs)
        self.db.add(allowance)
        self.db.flush()
        return allowance

    # Allowances

    def get_allowance(self, allowance_id: str) -> Optional[PackageAllowance]:
        try:
            return cast(Optional[PackageAllowance], self.db.get(PackageAllowance, allowance_id))
        except SQLAlchemyError as e:
            self.logger.error("Error loading allowance %s: %s", allowance_id, str(e))
            raise RepositoryException(f"Failed to load allowance: {str(e)}")

    def find_candidate_allowances(
        self,
        *,
        student_id: str,
        service_type: str,
        session_tier: int,
        as_of: datetime,
        package_id: Optional[str] = None,
    ) -> List[PackageAllowance]:
        """
        Unexpired allowances of a student that may pay for a session.

        Only exact-tier and any-tier allowances qualify; ordering is left to
        the selection function. Packages expiring soonest come first so FIFO
        spending is the tie-break.
        """
        try:
            query = (
                self.db.query(PackageAllowance)
                .join(StudentPackage, PackageAllowance.student_package_id == StudentPackage.id)
                .filter(
                    StudentPackage.student_id == student_id,
                    PackageAllowance.service_type == service_type,
                    or_(
                        PackageAllowance.teacher_tier == session_tier,
                        PackageAllowance.teacher_tier == ANY_TEACHER_TIER,
                    ),
                    or_(StudentPackage.expires_at.is_(None), StudentPackage.expires_at > as_of),
                )
            )
            if package_id:
                query = query.filter(StudentPackage.id == package_id)
            query = query.order_by(
                StudentPackage.expires_at.asc().nullslast(),
                StudentPackage.purchased_at.asc(),
                PackageAllowance.id.asc(),
            )
            return cast(List[PackageAllowance], query.all())
        except SQLAlchemyError as e:
            self.logger.error("Error finding candidate allowances: %s", str(e))
            raise RepositoryException(f"Failed to find allowances: {str(e)}")

    def sum_active_credits_used(self, allowance_id: str) -> int:
        """Sum of credits of non-voided ledger rows for an allowance."""
        try:
            result = (
                self.db.query(func.coalesce(func.sum(PackageUse.credits_used), 0))
                .filter(
                    PackageUse.allowance_id == allowance_id,
                    PackageUse.voided_at.is_(None),
                )
                .scalar()
            )
            return int(result or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error summing usage for allowance %s: %s", allowance_id, str(e))
            raise RepositoryException(f"Failed to sum usage: {str(e)}")

    def try_reserve_credits(self, allowance_id: str, credits: int) -> bool:
        """
        Atomically move ``credits`` from remaining to consumed.

        Returns False, with nothing written, when the allowance cannot cover
        them. On PostgreSQL the UPDATE re-evaluates its WHERE clause after
        waiting for any concurrent writer of the same row.
        """
        try:
            result = self.db.execute(
                update(PackageAllowance)
                .where(
                    and_(
                        PackageAllowance.id == allowance_id,
                        PackageAllowance.credits - PackageAllowance.credits_consumed >= credits,
                    )
                )
                .values(credits_consumed=PackageAllowance.credits_consumed + credits)
                .execution_options(synchronize_session=False)
            )
            return bool(result.rowcount)
        except SQLAlchemyError as e:
            self.logger.error("Error reserving credits on %s: %s", allowance_id, str(e))
            raise RepositoryException(f"Failed to reserve credits: {str(e)}")

    def release_credits(self, allowance_id: str, credits: int) -> None:
        """Give voided credits back to the allowance counter."""
        try:
            self.db.execute(
                update(PackageAllowance)
                .where(PackageAllowance.id == allowance_id)
                .values(credits_consumed=PackageAllowance.credits_consumed - credits)
                .execution_options(synchronize_session=False)
            )
        except SQLAlchemyError as e:
            self.logger.error("Error releasing credits on %s: %s", allowance_id, str(e))
            raise RepositoryException(f"Failed to release credits: {str(e)}")

    def refresh_allowance(self, allowance: PackageAllowance) -> None:
        self.db.refresh(allowance)

    # Ledger rows

    def create_use(self, **kwargs) -> PackageUse:
        use = PackageUse(**kwargs)
        try:
            self.db.add(use)
            self.db.flush()
            return use
        except SQLAlchemyError as e:
            self.logger.error("Error appending package use: %s", str(e))
            raise RepositoryException(f"Failed to append package use: {str(e)}")

    def get_use(self, package_use_id: str, for_update: bool = False) -> Optional[PackageUse]:
        try:
            query = self.db.query(PackageUse).filter(PackageUse.id == package_use_id)
            if for_update:
                query = self._lock(query.populate_existing())
            return cast(Optional[PackageUse], query.first())
        except SQLAlchemyError as e:
            self.logger.error("Error loading package use %s: %s", package_use_id, str(e))
            raise RepositoryException(f"Failed to load package use: {str(e)}")
