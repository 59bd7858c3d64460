# backend/classbook/services/entitlement_ledger.py
"""
Entitlement Ledger Service for the classbook ledger

Owns "remaining credits per allowance". Balances are read from the
append-only PackageUse log; consumption goes through a guarded UPDATE on the
allowance counter so concurrent spenders cannot both pass a stale check.

Methods that write accept ``use_transaction``: the booking orchestrator runs
them inside its own transaction so a booking and the credits it spends commit
or roll back together.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.exceptions import (
    AllowanceNotEligibleException,
    AlreadyVoidedException,
    DuplicateException,
    InsufficientCreditsException,
    NotFoundException,
    OwnershipException,
    PackageExpiredException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..events.booking_events import PackageGranted
from ..events.publisher import EventPublisher
from ..models.class_session import ClassSession
from ..models.package import PackageAllowance, PackageUse, StudentPackage
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..repositories.package_repository import PackageRepository
from ..schemas.package import AllowanceBalance, AllowanceSpec, PackageBalance
from .allowance_selection import (
    AllowanceCandidate,
    TierMatch,
    check_explicit_choice,
    classify_tier,
    credits_required,
    select_allowance,
)
from .base import BaseService

logger = logging.getLogger(__name__)


class EntitlementLedger(BaseService):
    """Credit balances, consumption, refunds and package grants."""

    def __init__(
        self,
        db: Session,
        package_repository: Optional[PackageRepository] = None,
        event_publisher: Optional[EventPublisher] = None,
    ):
        super().__init__(db)
        self.package_repository = package_repository or RepositoryFactory.create_package_repository(db)
        self.event_publisher = event_publisher or EventPublisher(
            RepositoryFactory.create_event_outbox_repository(db)
        )

    # ------------------------------------------------------------------ reads

    def _get_allowance_or_404(self, allowance_id: str) -> PackageAllowance:
        allowance = self.package_repository.get_allowance(allowance_id)
        if allowance is None:
            raise NotFoundException("Allowance", allowance_id)
        return allowance

    @BaseService.measure_operation("remaining_credits")
    def remaining_credits(self, allowance_id: str) -> int:
        """
        Credits left on an allowance: credits minus non-voided uses.

        Computed in the current transaction, so it includes this
        transaction's own flushed consumption and nobody else's uncommitted work.
        """
        allowance = self._get_allowance_or_404(allowance_id)
        used = self.package_repository.sum_active_credits_used(allowance_id)
        return max(0, int(allowance.credits) - used)

    def _candidate(
        self,
        allowance: PackageAllowance,
        session: ClassSession,
    ) -> AllowanceCandidate:
        package = allowance.student_package
        return AllowanceCandidate(
            allowance=allowance,
            match=classify_tier(allowance.teacher_tier, session.teacher_tier),
            remaining=self.remaining_credits(allowance.id),
            required=credits_required(session.duration_minutes, allowance.credit_unit_minutes),
            expires_at=package.expires_at if package is not None else None,
            purchased_at=package.purchased_at if package is not None else None,
        )

    def _ensure_not_expired(self, package: StudentPackage, as_of: datetime) -> None:
        if package.is_expired(as_of):
            raise PackageExpiredException(package.id, ensure_utc(package.expires_at))

    @BaseService.measure_operation("resolve_allowance")
    def resolve_allowance(
        self,
        student_id: str,
        session: ClassSession,
        *,
        package_id: Optional[str] = None,
        allowance_id: Optional[str] = None,
        confirm_cross_tier: bool = False,
        as_of: Optional[datetime] = None,
    ) -> AllowanceCandidate:
        """
        Pick the allowance that will pay for ``session``.

        An explicit allowance is validated as chosen. Otherwise the ranked
        selection runs over the student's unexpired allowances (optionally
        limited to one package).

        Raises:
            NotFoundException: Unknown package or allowance
            OwnershipException: The package belongs to another student
            PackageExpiredException: The chosen package has expired
            AllowanceNotEligibleException: Nothing the student holds covers the session
            CrossTierConfirmationRequiredException: Only a higher-tier credit fits
            InsufficientCreditsException: Eligible allowances lack credits
        """
        now = ensure_utc(as_of) or utc_now()

        if allowance_id:
            allowance = self._get_allowance_or_404(allowance_id)
            package = allowance.student_package
            if package.student_id != student_id:
                raise OwnershipException("Package", package.id)
            if package_id and package.id != package_id:
                raise AllowanceNotEligibleException(
                    "This allowance is not part of the selected package",
                    details={"allowance_id": allowance_id, "package_id": package_id},
                )
            self._ensure_not_expired(package, now)
            candidate = self._candidate(allowance, session)
            check_explicit_choice(
                candidate, session.service_type, session.teacher_tier, confirm_cross_tier
            )
            if not candidate.sufficient:
                raise InsufficientCreditsException(
                    candidate.required, candidate.remaining, allowance.id
                )
            return candidate

        if package_id:
            package = self.package_repository.get_by_id(package_id)
            if package is None:
                raise NotFoundException("Package", package_id)
            if package.student_id != student_id:
                raise OwnershipException("Package", package_id)
            self._ensure_not_expired(package, now)
            candidates = [
                self._candidate(allowance, session)
                for allowance in package.allowances
                if allowance.service_type == session.service_type
            ]
        else:
            candidates = [
                self._candidate(allowance, session)
                for allowance in self.package_repository.find_candidate_allowances(
                    student_id=student_id,
                    service_type=session.service_type,
                    session_tier=session.teacher_tier,
                    as_of=now,
                )
            ]

        chosen = select_allowance(candidates)
        if chosen is not None:
            return chosen

        if package_id:
            # Within a package the student picked, a higher tier may be spent once confirmed
            higher = sorted(
                (c for c in candidates if c.match == TierMatch.HIGHER_TIER and c.sufficient),
                key=lambda c: (c.allowance.teacher_tier, c.rank_key()),
            )
            if higher:
                check_explicit_choice(
                    higher[0], session.service_type, session.teacher_tier, confirm_cross_tier
                )
                return higher[0]

        automatic = [c for c in candidates if c.automatic]
        if not automatic:
            raise AllowanceNotEligibleException(
                "None of your packages cover this session",
                details={
                    "student_id": student_id,
                    "service_type": session.service_type,
                    "session_tier": session.teacher_tier,
                    "package_id": package_id,
                },
            )
        best = max(automatic, key=lambda c: c.remaining)
        raise InsufficientCreditsException(best.required, best.remaining, best.allowance.id)

    # ----------------------------------------------------------------- writes

    @BaseService.measure_operation("consume_credits")
    def consume(
        self,
        package_id: str,
        allowance_id: str,
        booking_id: Optional[str],
        credits: int,
        actor_id: Optional[str],
        *,
        session_id: Optional[str] = None,
        note: Optional[str] = None,
        as_of: Optional[datetime] = None,
        use_transaction: bool = True,
    ) -> PackageUse:
        """
        Spend ``credits`` from an allowance and append the ledger row.

        The balance check and the counter increment are one UPDATE, so a
        concurrent consumer that read the same balance fails here instead of
        overdrawing. On failure nothing is written.

        Raises:
            ValidationException: Non-positive credit amount
            NotFoundException: Unknown allowance
            AllowanceNotEligibleException: Allowance is not part of the package
            PackageExpiredException: Package expired
            InsufficientCreditsException: Not enough credits left
        """
        if credits <= 0:
            raise ValidationException("Credits to consume must be positive", code="INVALID_CREDITS")
        now = ensure_utc(as_of) or utc_now()

        def _consume() -> PackageUse:
            allowance = self._get_allowance_or_404(allowance_id)
            if allowance.student_package_id != package_id:
                raise AllowanceNotEligibleException(
                    "This allowance is not part of the selected package",
                    details={"allowance_id": allowance_id, "package_id": package_id},
                )
            self._ensure_not_expired(allowance.student_package, now)

            if not self.package_repository.try_reserve_credits(allowance_id, credits):
                available = self.remaining_credits(allowance_id)
                self.logger.info(
                    "Insufficient credits on allowance %s: required=%s available=%s",
                    allowance_id,
                    credits,
                    available,
                )
                raise InsufficientCreditsException(credits, available, allowance_id)

            use = self.package_repository.create_use(
                student_package_id=package_id,
                allowance_id=allowance_id,
                booking_id=booking_id,
                session_id=session_id,
                credits_used=credits,
                used_at=now,
                used_by=actor_id,
                note=note,
            )
            prometheus_metrics.inc_credits_consumed(allowance.service_type, credits)
            self.logger.info(
                "Consumed %s credits from allowance %s",
                credits,
                allowance_id,
                extra={
                    "package_use_id": use.id,
                    "booking_id": booking_id,
                    "package_id": package_id,
                },
            )
            return use

        if use_transaction:
            with self.transaction():
                return _consume()
        return _consume()

    def void_use(self, use: PackageUse, actor_id: Optional[str], reason: Optional[str]) -> int:
        """
        Void one ledger row and return its credits to the allowance.

        Raises:
            AlreadyVoidedException: The row is already void
        """
        if use.is_voided:
            raise AlreadyVoidedException(use.id)
        use.void(actor_id, reason)
        self.package_repository.flush()
        self.package_repository.release_credits(use.allowance_id, use.credits_used)
        return int(use.credits_used)

    @BaseService.measure_operation("refund_credits")
    def refund(
        self,
        package_use_id: str,
        actor_id: Optional[str],
        reason: Optional[str] = None,
        *,
        use_transaction: bool = True,
    ) -> int:
        """
        Void a ledger row. Idempotent: a second refund is a no-op.

        Returns:
            Credits returned by this call (0 when the row was already void)
        """

        def _refund() -> int:
            use = self.package_repository.get_use(package_use_id, for_update=True)
            if use is None:
                raise NotFoundException("PackageUse", package_use_id)
            try:
                refunded = self.void_use(use, actor_id, reason)
            except AlreadyVoidedException:
                self.logger.info("Package use %s already voided; refund is a no-op", package_use_id)
                return 0

            allowance = use.allowance
            prometheus_metrics.inc_credits_refunded(
                allowance.service_type if allowance is not None else "unknown", refunded
            )
            self.logger.info(
                "Refunded %s credits to allowance %s",
                refunded,
                use.allowance_id,
                extra={"package_use_id": use.id, "booking_id": use.booking_id},
            )
            return refunded

        if use_transaction:
            with self.transaction():
                return _refund()
        return _refund()

    @BaseService.measure_operation("grant_package")
    def grant_package(
        self,
        student_id: str,
        allowance_specs: Sequence[AllowanceSpec],
        source_payment_ref: str,
        *,
        package_name: Optional[str] = None,
        purchased_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> StudentPackage:
        """
        Turn a confirmed external payment into a package of credits.

        Idempotent on ``source_payment_ref``: a repeated confirmation returns
        the package granted the first time, including when two deliveries
        race and one loses on the unique constraint.
        """
        if not source_payment_ref:
            raise ValidationException("A source payment reference is required", code="MISSING_PAYMENT_REF")
        if not allowance_specs:
            raise ValidationException("A package needs at least one allowance", code="EMPTY_PACKAGE")

        existing = self.package_repository.get_by_payment_ref(source_payment_ref)
        if existing is not None:
            if existing.student_id != student_id:
                raise DuplicateException(
                    "This payment was already granted to another student",
                    details={"source_payment_ref": source_payment_ref},
                )
            self.logger.info("Package for payment %s already granted", source_payment_ref)
            return existing

        specs = [
            spec if isinstance(spec, AllowanceSpec) else AllowanceSpec.model_validate(spec)
            for spec in allowance_specs
        ]
        granted_at = utc_now()

        try:
            with self.transaction():
                try:
                    package = self.package_repository.create(
                        student_id=student_id,
                        package_name=package_name or "Class package",
                        purchased_at=ensure_utc(purchased_at) or granted_at,
                        expires_at=ensure_utc(expires_at),
                        source_payment_ref=source_payment_ref,
                        package_metadata=metadata,
                    )
                    for spec in specs:
                        self.package_repository.create_allowance(
                            student_package_id=package.id,
                            service_type=spec.service_type.value,
                            teacher_tier=spec.teacher_tier,
                            credit_unit_minutes=spec.credit_unit_minutes,
                            credits=spec.credits,
                            credits_consumed=0,
                        )
                except IntegrityError as exc:
                    raise DuplicateException(
                        "Package for this payment already exists",
                        details={"source_payment_ref": source_payment_ref},
                    ) from exc
                self.event_publisher.publish(
                    PackageGranted(
                        package_id=package.id,
                        student_id=student_id,
                        source_payment_ref=source_payment_ref,
                        total_credits=sum(spec.credits for spec in specs),
                        granted_at=granted_at,
                    )
                )
        except DuplicateException:
            winner = self.package_repository.get_by_payment_ref(source_payment_ref)
            if winner is None or winner.student_id != student_id:
                raise
            self.logger.info("Concurrent grant for payment %s resolved to %s", source_payment_ref, winner.id)
            return winner

        self.db.refresh(package)
        self.logger.info(
            "Granted package %s to student %s",
            package.id,
            student_id,
            extra={"source_payment_ref": source_payment_ref, "allowances": len(specs)},
        )
        return package

    # --------------------------------------------------------------- listings

    @BaseService.measure_operation("get_student_packages")
    def get_student_packages(
        self, student_id: str, as_of: Optional[datetime] = None
    ) -> List[PackageBalance]:
        """Packages of a student with remaining credits per allowance."""
        now = ensure_utc(as_of) or utc_now()
        balances = []
        for package in self.package_repository.list_for_student(student_id):
            allowances = [
                AllowanceBalance(
                    allowance_id=allowance.id,
                    service_type=allowance.service_type,
                    teacher_tier=allowance.teacher_tier,
                    credit_unit_minutes=allowance.credit_unit_minutes,
                    credits=allowance.credits,
                    remaining_credits=self.remaining_credits(allowance.id),
                )
                for allowance in package.allowances
            ]
            balances.append(
                PackageBalance(
                    package_id=package.id,
                    package_name=package.package_name,
                    purchased_at=ensure_utc(package.purchased_at),
                    expires_at=ensure_utc(package.expires_at),
                    is_expired=package.is_expired(now),
                    source_payment_ref=package.source_payment_ref,
                    allowances=allowances,
                )
            )
        return balances

    def reconcile_allowance(self, allowance_id: str) -> bool:
        """
        Check the materialised counter against the ledger sum.

        Returns True when they agree; a mismatch is logged as an error and
        left for an operator.
        """
        allowance = self._get_allowance_or_404(allowance_id)
        self.package_repository.refresh_allowance(allowance)
        ledger_sum = self.package_repository.sum_active_credits_used(allowance_id)
        if int(allowance.credits_consumed) != ledger_sum:
            self.logger.error(
                "Allowance %s counter drift: counter=%s ledger=%s",
                allowance_id,
                allowance.credits_consumed,
                ledger_sum,
            )
            return False
        return True
