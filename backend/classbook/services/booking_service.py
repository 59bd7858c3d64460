# backend/classbook/services/booking_service.py
"""
Booking Service for the classbook ledger

The transactional entry point for creating, cancelling, rescheduling and
inspecting bookings. It composes the conflict checker, the entitlement
ledger and the cancellation policy evaluator, and hands freed seats to the
waitlist.

Seat accounting: every active booking holds a seat number in
1..capacity_max. The session row is locked while a seat is picked, and the
partial unique index on (session_id, seat_number) turns any race that slips
past the lock into a clean SessionFullException.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import TYPE_CHECKING, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import ServiceType
from ..core.exceptions import (
    DomainException,
    DuplicateException,
    NotFoundException,
    OwnershipException,
    SessionFullException,
    SessionNotBookableException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, hours_between, utc_now
from ..core.ulid_helper import generate_ulid
from ..events.booking_events import (
    BookingCancelled,
    BookingCreated,
    SessionCancelled,
    SessionRescheduled,
    SessionScheduled,
)
from ..events.publisher import EventPublisher
from ..models.booking import Booking, BookingStatus
from ..models.cancellation_policy import CancellationPolicy
from ..models.class_session import ClassSession, SessionStatus
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..schemas.booking import (
    BookingResult,
    ModificationCheck,
    NewSessionSpec,
    StudentBookingView,
)
from ..schemas.cancellation import CancellationResult, PromotionResult
from .base import BaseService
from .cancellation_policy import (
    CancellationPolicyService,
    evaluate_cancellation,
    evaluate_reschedule,
)
from .conflict_checker import ConflictChecker, validate_interval
from .entitlement_ledger import EntitlementLedger

if TYPE_CHECKING:
    from .waitlist_service import WaitlistService

logger = logging.getLogger(__name__)

RESCHEDULE_REASON = "rescheduled"


def _lowest_free_seat(taken: set[int], capacity: int) -> Optional[int]:
    for seat in range(1, capacity + 1):
        if seat not in taken:
            return seat
    return None


class BookingService(BaseService):
    """
    Orchestrates bookings against sessions, credits and policy.

    Public methods each own one transaction. The ``_resolve_session`` and
    ``_book_seat`` steps never commit; the waitlist reuses them inside its
    own promotion transaction.
    """

    def __init__(
        self,
        db: Session,
        conflict_checker: Optional[ConflictChecker] = None,
        ledger: Optional[EntitlementLedger] = None,
        policy_service: Optional[CancellationPolicyService] = None,
        event_publisher: Optional[EventPublisher] = None,
    ):
        super().__init__(db)
        self.session_repository = RepositoryFactory.create_class_session_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.waitlist_repository = RepositoryFactory.create_waitlist_repository(db)
        self.conflict_checker = conflict_checker or ConflictChecker(db)
        self.event_publisher = event_publisher or EventPublisher(
            RepositoryFactory.create_event_outbox_repository(db)
        )
        self.ledger = ledger or EntitlementLedger(db, event_publisher=self.event_publisher)
        self.policy_service = policy_service or CancellationPolicyService(db)
        self._waitlist_service: Optional["WaitlistService"] = None

    @property
    def waitlist_service(self) -> "WaitlistService":
        if self._waitlist_service is None:
            from .waitlist_service import WaitlistService

            self._waitlist_service = WaitlistService(self.db, booking_service=self)
        return self._waitlist_service

    # ---------------------------------------------------------------- helpers

    def _get_owned_booking(self, booking_id: str, student_id: str, for_update: bool = False) -> Booking:
        booking = self.booking_repository.get_with_session(booking_id, for_update=for_update)
        if booking is None:
            raise NotFoundException("Booking", booking_id)
        if booking.student_id != student_id:
            raise OwnershipException("Booking", booking_id)
        return booking

    def _resolve_session(
        self,
        session_id: Optional[str],
        new_session: Optional[NewSessionSpec],
    ) -> Tuple[ClassSession, bool]:
        """
        Lock an existing session or create one from a spec.

        Returns the session and whether it was created here.
        """
        if bool(session_id) == bool(new_session):
            raise ValidationException(
                "Provide either an existing session or the data for a new one",
                code="SESSION_REFERENCE_REQUIRED",
            )

        if new_session is not None:
            validate_interval(new_session.start_at, new_session.end_at)
            self.session_repository.lock_teacher_schedule(new_session.teacher_id)
            self.conflict_checker.check_teacher_available(
                new_session.teacher_id, new_session.start_at, new_session.end_at
            )
            session = self.session_repository.create(
                service_type=new_session.service_type.value,
                teacher_id=new_session.teacher_id,
                teacher_tier=new_session.teacher_tier,
                start_at=ensure_utc(new_session.start_at),
                end_at=ensure_utc(new_session.end_at),
                capacity_max=new_session.capacity_max,
                status=SessionStatus.SCHEDULED.value,
            )
            self.logger.info("Created session %s for teacher %s", session.id, session.teacher_id)
            return session, True

        session = self.session_repository.lock_for_seat_change(session_id)
        if session is None:
            raise NotFoundException("Session", session_id)
        return session, False

    def _book_seat(
        self,
        student_id: str,
        session: ClassSession,
        *,
        session_created: bool = False,
        package_id: Optional[str] = None,
        allowance_id: Optional[str] = None,
        confirm_cross_tier: bool = False,
        payment_ref: Optional[str] = None,
        direct_status: str = BookingStatus.PENDING.value,
        actor_id: Optional[str] = None,
        now: Optional[datetime] = None,
        reschedule_count: int = 0,
        rescheduled_from_booking_id: Optional[str] = None,
        from_waitlist: bool = False,
    ) -> Tuple[Booking, Optional[str]]:
        """
        Seat a student in a locked session, paying with credits or a payment ref.

        Runs availability, capacity and credit checks in the caller's
        transaction. Returns the booking and the allowance that paid for it.
        A seated student leaves the session's waitlist; promotions leave a gap,
        a direct booking closes it.
        """
        now = now or utc_now()
        if not session.is_scheduled():
            raise SessionNotBookableException(session.id, session.status)

        if self.booking_repository.get_active_for_student(session.id, student_id) is not None:
            raise DuplicateException(
                "You already have a booking for this session",
                details={"session_id": session.id, "student_id": student_id},
            )

        start, end = session.starts_at_utc, session.ends_at_utc
        if not session_created:
            self.conflict_checker.check_teacher_available(
                session.teacher_id, start, end, exclude_session_id=session.id
            )
        if settings.student_conflict_check_enabled:
            self.conflict_checker.check_student_available(student_id, start, end)

        seat = _lowest_free_seat(self.booking_repository.get_taken_seats(session.id), session.capacity_max)
        if seat is None:
            raise SessionFullException(session.id, session.capacity_max)

        booking_id = generate_ulid()
        used_allowance_id: Optional[str] = None
        package_use_id: Optional[str] = None
        student_package_id: Optional[str] = None
        credits_cost: Optional[int] = None

        if payment_ref:
            status = direct_status
        else:
            candidate = self.ledger.resolve_allowance(
                student_id,
                session,
                package_id=package_id,
                allowance_id=allowance_id,
                confirm_cross_tier=confirm_cross_tier,
                as_of=now,
            )
            allowance = candidate.allowance
            use = self.ledger.consume(
                allowance.student_package_id,
                allowance.id,
                booking_id,
                candidate.required,
                actor_id or student_id,
                session_id=session.id,
                as_of=now,
                use_transaction=False,
            )
            used_allowance_id = allowance.id
            package_use_id = use.id
            student_package_id = allowance.student_package_id
            credits_cost = candidate.required
            status = BookingStatus.CONFIRMED.value

        try:
            booking = self.booking_repository.create(
                id=booking_id,
                session_id=session.id,
                student_id=student_id,
                seat_number=seat,
                status=status,
                student_package_id=student_package_id,
                package_use_id=package_use_id,
                credits_cost=credits_cost,
                payment_ref=payment_ref,
                reschedule_count=reschedule_count,
                rescheduled_from_booking_id=rescheduled_from_booking_id,
            )
        except IntegrityError as exc:
            message = str(getattr(exc, "orig", exc))
            if "seat_number" in message or "uq_bookings_active_seat" in message:
                self.logger.info("Seat race lost on session %s", session.id)
                raise SessionFullException(session.id, session.capacity_max) from exc
            if "student_id" in message or "uq_bookings_active_student" in message:
                raise DuplicateException(
                    "You already have a booking for this session",
                    details={"session_id": session.id, "student_id": student_id},
                ) from exc
            raise

        self._drop_waitlist_entry(session.id, student_id, renumber=not from_waitlist)

        if session_created:
            self.event_publisher.publish(
                SessionScheduled(
                    session_id=session.id,
                    teacher_id=session.teacher_id,
                    service_type=session.service_type,
                    start_at=start,
                    end_at=end,
                    booking_id=booking.id,
                )
            )
        self.event_publisher.publish(
            BookingCreated(
                booking_id=booking.id,
                session_id=session.id,
                student_id=student_id,
                teacher_id=session.teacher_id,
                status=booking.status,
                created_at=now,
                credits_cost=credits_cost,
            )
        )
        self.logger.info(
            "Booked seat %s of session %s for student %s",
            seat,
            session.id,
            student_id,
            extra={"booking_id": booking.id, "package_use_id": package_use_id},
        )
        return booking, used_allowance_id

    def _drop_waitlist_entry(self, session_id: str, student_id: str, *, renumber: bool) -> None:
        entry = self.waitlist_repository.get_for_student(session_id, student_id)
        if entry is None:
            return
        entry_id, position = entry.id, entry.position
        self.waitlist_repository.delete(entry)
        if renumber:
            self.waitlist_repository.shift_positions_after(session_id, position)
        self.logger.info(
            "Removed waitlist entry %s of student %s from session %s",
            entry_id,
            student_id,
            session_id,
        )

    def _cascade_private_session(self, session: ClassSession, now: datetime) -> bool:
        """Cancel a private session once its last active booking is gone."""
        if session.service_type != ServiceType.PRIVATE.value or not session.is_scheduled():
            return False
        if self.booking_repository.count_active_for_session(session.id) > 0:
            return False
        session.cancel()
        self.session_repository.flush()
        self.event_publisher.publish(
            SessionCancelled(session_id=session.id, teacher_id=session.teacher_id, cancelled_at=now)
        )
        return True

    def _promote_after_release(self, session_id: str, now: datetime) -> Optional[PromotionResult]:
        session = self.session_repository.get_by_id(session_id)
        if session is None or not session.is_scheduled():
            return None
        return self.waitlist_service.promote_next(session_id, as_of=now)

    # ------------------------------------------------------------- operations

    @BaseService.measure_operation("create_booking")
    def create_booking(
        self,
        student_id: str,
        session_id: Optional[str] = None,
        new_session: Optional[NewSessionSpec] = None,
        package_id: Optional[str] = None,
        allowance_id: Optional[str] = None,
        *,
        confirm_cross_tier: bool = False,
        payment_ref: Optional[str] = None,
        actor_id: Optional[str] = None,
        as_of: Optional[datetime] = None,
    ) -> BookingResult:
        """
        Book a seat for a student.

        Credit-paid bookings are CONFIRMED and consume from the ledger in the
        same transaction as the booking insert. Passing ``payment_ref`` makes
        it a direct-payment booking: PENDING and the ledger is not touched.

        Raises:
            ValidationException / InvalidIntervalException: Bad session reference or window
            NotFoundException: Unknown session, package or allowance
            SessionNotBookableException: Session is not scheduled
            DuplicateException: Student already holds a seat in the session
            BookingConflictException: Teacher or student overlap
            SessionFullException: No free seat
            InsufficientCreditsException, PackageExpiredException,
            AllowanceNotEligibleException, CrossTierConfirmationRequiredException:
                the credits cannot pay for it
        """
        now = ensure_utc(as_of) or utc_now()
        try:
            with self.transaction():
                session, created = self._resolve_session(session_id, new_session)
                booking, used_allowance_id = self._book_seat(
                    student_id,
                    session,
                    session_created=created,
                    package_id=package_id,
                    allowance_id=allowance_id,
                    confirm_cross_tier=confirm_cross_tier,
                    payment_ref=payment_ref,
                    actor_id=actor_id,
                    now=now,
                )
        except DomainException as exc:
            prometheus_metrics.record_booking_outcome("create", exc.code)
            raise

        prometheus_metrics.record_booking_outcome("create", "success")
        return BookingResult.from_booking(
            booking, allowance_id=used_allowance_id, session_created=created
        )

    @BaseService.measure_operation("cancel_booking")
    def cancel_booking(
        self,
        booking_id: str,
        student_id: str,
        reason: Optional[str] = None,
        *,
        as_of: Optional[datetime] = None,
    ) -> CancellationResult:
        """
        Cancel a booking under the active policy.

        The cancel, its refund and any private-session cascade commit
        together. Waitlist promotion runs afterwards in its own transaction,
        so a failed promotion never undoes the cancellation; its outcome is
        reported in the result.

        Raises:
            NotFoundException: Unknown booking
            OwnershipException: Booking belongs to someone else
            PolicyDeniedException: Policy forbids it; nothing is changed
        """
        now = ensure_utc(as_of) or utc_now()
        policy = self.policy_service.ensure_active_policy()

        try:
            with self.transaction():
                booking = self._get_owned_booking(booking_id, student_id, for_update=True)
                session = booking.session
                decision = evaluate_cancellation(policy, session, booking, now)
                decision.raise_if_denied(booking_id=booking_id)

                booking.cancel(student_id, reason)
                booking.cancelled_at = now
                self.booking_repository.flush()

                refunded = 0
                if decision.refund_eligible and booking.package_use_id:
                    refunded = self.ledger.refund(
                        booking.package_use_id,
                        student_id,
                        reason or "booking cancelled",
                        use_transaction=False,
                    )

                session_cancelled = self._cascade_private_session(session, now)
                self.event_publisher.publish(
                    BookingCancelled(
                        booking_id=booking.id,
                        session_id=session.id,
                        student_id=booking.student_id,
                        cancelled_by=student_id,
                        cancelled_at=now,
                        reason=reason,
                        refunded_credits=refunded,
                    )
                )
                session_id = session.id
        except DomainException as exc:
            prometheus_metrics.record_booking_outcome("cancel", exc.code)
            raise

        prometheus_metrics.record_booking_outcome("cancel", "success")
        self.logger.info(
            "Cancelled booking %s",
            booking_id,
            extra={
                "student_id": student_id,
                "refunded_credits": refunded,
                "session_cancelled": session_cancelled,
            },
        )

        promotion = None if session_cancelled else self._promote_after_release(session_id, now)
        return CancellationResult(
            booking_id=booking.id,
            session_id=session_id,
            status=booking.status,
            cancelled_at=now,
            refund_eligible=decision.refund_eligible,
            refunded_credits=refunded,
            session_cancelled=session_cancelled,
            promotion=promotion,
        )

    def _modification_check(
        self, booking: Booking, policy: CancellationPolicy, now: datetime
    ) -> ModificationCheck:
        session = booking.session
        cancel = evaluate_cancellation(policy, session, booking, now)
        reschedule = evaluate_reschedule(policy, session, booking, now)
        return ModificationCheck(
            booking_id=booking.id,
            can_cancel=cancel.allowed,
            can_reschedule=reschedule.allowed,
            refund_eligible=cancel.refund_eligible and booking.is_credit_paid,
            cancel_denial_reason=cancel.reason,
            reschedule_denial_reason=reschedule.reason,
            hours_until_session=round(hours_between(now, session.starts_at_utc), 2),
            cancellation_deadline=cancel.deadline,
            rescheduling_deadline=reschedule.deadline,
        )

    @BaseService.measure_operation("can_modify_booking")
    def can_modify_booking(
        self, booking_id: str, student_id: str, *, as_of: Optional[datetime] = None
    ) -> ModificationCheck:
        """Report whether the owner could cancel or reschedule right now. Read-only."""
        now = ensure_utc(as_of) or utc_now()
        policy = self.policy_service.ensure_active_policy()
        booking = self._get_owned_booking(booking_id, student_id)
        return self._modification_check(booking, policy, now)

    @BaseService.measure_operation("reschedule_booking")
    def reschedule_booking(
        self,
        booking_id: str,
        student_id: str,
        new_session_id: Optional[str] = None,
        new_session: Optional[NewSessionSpec] = None,
        *,
        package_id: Optional[str] = None,
        allowance_id: Optional[str] = None,
        confirm_cross_tier: bool = False,
        as_of: Optional[datetime] = None,
    ) -> BookingResult:
        """
        Move a booking to another session in one transaction.

        The old booking is cancelled with reason "rescheduled" and its credits
        are returned; the new booking goes through the normal create path with
        the reschedule counter carried forward. If the new booking cannot be
        made, nothing changes.

        Raises:
            PolicyDeniedException: Past the reschedule deadline, rescheduling
                disabled, or the reschedule limit reached
            plus everything create_booking raises
        """
        now = ensure_utc(as_of) or utc_now()
        policy = self.policy_service.ensure_active_policy()

        try:
            with self.transaction():
                booking = self._get_owned_booking(booking_id, student_id, for_update=True)
                old_session = booking.session
                if new_session_id and new_session_id == old_session.id:
                    raise ValidationException(
                        "Choose a different session to reschedule into",
                        code="SAME_SESSION",
                    )
                decision = evaluate_reschedule(policy, old_session, booking, now)
                decision.raise_if_denied(booking_id=booking_id)

                previous_status = booking.status
                booking.cancel(student_id, RESCHEDULE_REASON)
                booking.cancelled_at = now
                self.booking_repository.flush()
                if booking.package_use_id:
                    self.ledger.refund(
                        booking.package_use_id, student_id, RESCHEDULE_REASON, use_transaction=False
                    )

                session, created = self._resolve_session(new_session_id, new_session)
                new_booking, used_allowance_id = self._book_seat(
                    student_id,
                    session,
                    session_created=created,
                    package_id=package_id,
                    allowance_id=allowance_id,
                    confirm_cross_tier=confirm_cross_tier,
                    payment_ref=booking.payment_ref,
                    direct_status=previous_status,
                    actor_id=student_id,
                    now=now,
                    reschedule_count=(booking.reschedule_count or 0) + 1,
                    rescheduled_from_booking_id=booking.id,
                )

                old_session_cancelled = self._cascade_private_session(old_session, now)
                self.event_publisher.publish(
                    SessionRescheduled(
                        student_id=student_id,
                        old_booking_id=booking.id,
                        new_booking_id=new_booking.id,
                        old_session_id=old_session.id,
                        new_session_id=session.id,
                        rescheduled_at=now,
                    )
                )
                old_session_id = old_session.id
        except DomainException as exc:
            prometheus_metrics.record_booking_outcome("reschedule", exc.code)
            raise

        prometheus_metrics.record_booking_outcome("reschedule", "success")
        self.logger.info(
            "Rescheduled booking %s to %s",
            booking_id,
            new_booking.id,
            extra={"old_session_id": old_session_id, "new_session_id": new_booking.session_id},
        )
        if not old_session_cancelled:
            self._promote_after_release(old_session_id, now)
        return BookingResult.from_booking(
            new_booking, allowance_id=used_allowance_id, session_created=created
        )

    @BaseService.measure_operation("get_student_bookings")
    def get_student_bookings(
        self, student_id: str, *, as_of: Optional[datetime] = None
    ) -> List[StudentBookingView]:
        """Active bookings of a student with what they may still change."""
        now = ensure_utc(as_of) or utc_now()
        policy = self.policy_service.ensure_active_policy()
        views = []
        for booking in self.booking_repository.list_active_for_student(student_id):
            check = self._modification_check(booking, policy, now)
            views.append(
                StudentBookingView(
                    booking_id=booking.id,
                    session_id=booking.session_id,
                    service_type=booking.session.service_type,
                    start_at=booking.session.starts_at_utc,
                    end_at=booking.session.ends_at_utc,
                    status=booking.status,
                    seat_number=booking.seat_number,
                    credits_cost=booking.credits_cost,
                    reschedule_count=booking.reschedule_count or 0,
                    can_cancel=check.can_cancel,
                    can_reschedule=check.can_reschedule,
                    cancellation_deadline=check.cancellation_deadline,
                )
            )
        return views
