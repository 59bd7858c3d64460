# backend/classbook/services/waitlist_service.py
"""
Waitlist Service for the classbook ledger

FIFO queue per full session. Joining takes the next position; leaving, or
booking a seat directly, renumbers the entries behind so the queue stays
dense. Promotion seats the first eligible entry through the booking
service's own seat and credit checks and leaves a gap, since position only
orders the queue.
"""

from __future__ import annotations

from datetime import datetime
import logging
from typing import TYPE_CHECKING, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..core.enums import PromotionOutcome
from ..core.exceptions import (
    DomainException,
    DuplicateException,
    NotFoundException,
    OwnershipException,
    SessionNotBookableException,
    SessionNotFullException,
    ValidationException,
)
from ..core.timezone_utils import ensure_utc, utc_now
from ..events.booking_events import WaitlistNotified, WaitlistPromoted
from ..events.publisher import EventPublisher
from ..models.class_session import ClassSession
from ..models.waitlist import WaitlistEntry
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories import RepositoryFactory
from ..schemas.booking import BookingResult
from ..schemas.cancellation import PromotionResult
from ..schemas.waitlist import WaitlistEntryView
from .base import BaseService

if TYPE_CHECKING:
    from .booking_service import BookingService

logger = logging.getLogger(__name__)


class WaitlistService(BaseService):
    """Queue management and promotion into freed seats."""

    def __init__(
        self,
        db: Session,
        booking_service: Optional["BookingService"] = None,
        event_publisher: Optional[EventPublisher] = None,
    ):
        super().__init__(db)
        self.repository = RepositoryFactory.create_waitlist_repository(db)
        self.session_repository = RepositoryFactory.create_class_session_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.package_repository = RepositoryFactory.create_package_repository(db)
        if booking_service is None:
            from .booking_service import BookingService

            booking_service = BookingService(db, event_publisher=event_publisher)
            booking_service._waitlist_service = self
        self.booking_service = booking_service
        self.event_publisher = event_publisher or booking_service.event_publisher

    def _lock_session(self, session_id: str) -> ClassSession:
        session = self.session_repository.lock_for_seat_change(session_id)
        if session is None:
            raise NotFoundException("Session", session_id)
        return session

    def _get_entry(self, entry_id: str) -> WaitlistEntry:
        entry = self.repository.get_by_id(entry_id)
        if entry is None:
            raise NotFoundException("WaitlistEntry", entry_id)
        return entry

    @BaseService.measure_operation("join_waitlist")
    def join(
        self, session_id: str, student_id: str, package_id: Optional[str] = None
    ) -> WaitlistEntry:
        """
        Queue a student for a full session.

        Raises:
            NotFoundException: Unknown session or package
            SessionNotBookableException: Session is not scheduled
            DuplicateException: Already queued or already booked
            SessionNotFullException: A seat is free; book it instead
        """
        with self.transaction():
            session = self._lock_session(session_id)
            if not session.is_scheduled():
                raise SessionNotBookableException(session.id, session.status)
            if package_id and self.package_repository.get_for_student(package_id, student_id) is None:
                raise NotFoundException("StudentPackage", package_id)

            if self.booking_repository.get_active_for_student(session_id, student_id) is not None:
                raise DuplicateException(
                    "You are already booked into this session",
                    details={"session_id": session_id, "student_id": student_id},
                )
            if self.repository.get_for_student(session_id, student_id) is not None:
                raise DuplicateException(
                    "You are already on the waitlist for this session",
                    details={"session_id": session_id, "student_id": student_id},
                )
            if self.booking_repository.count_active_for_session(session_id) < session.capacity_max:
                raise SessionNotFullException(session_id)

            position = self.repository.get_max_position(session_id) + 1
            try:
                entry = self.repository.create(
                    session_id=session_id,
                    student_id=student_id,
                    position=position,
                    student_package_id=package_id,
                )
            except IntegrityError as exc:
                raise DuplicateException(
                    "You are already on the waitlist for this session",
                    details={"session_id": session_id, "student_id": student_id},
                ) from exc

        self.logger.info(
            "Student %s joined waitlist of session %s at position %s",
            student_id,
            session_id,
            position,
        )
        return entry

    @BaseService.measure_operation("leave_waitlist")
    def leave(self, entry_id: str, student_id: str) -> None:
        """Remove an entry and close the gap behind it."""
        with self.transaction():
            entry = self._get_entry(entry_id)
            if entry.student_id != student_id:
                raise OwnershipException("WaitlistEntry", entry_id)
            session_id, position = entry.session_id, entry.position
            self._lock_session(session_id)
            self.repository.delete(entry)
            shifted = self.repository.shift_positions_after(session_id, position)
        self.logger.info(
            "Student %s left waitlist of session %s (%s entries moved up)",
            student_id,
            session_id,
            shifted,
        )

    @BaseService.measure_operation("notify_waitlist_entry")
    def notify(
        self,
        entry_id: str,
        expires_in_hours: Optional[int] = None,
        *,
        as_of: Optional[datetime] = None,
    ) -> WaitlistEntry:
        """Offer a seat to an entry; it stops being promotable once the window lapses."""
        hours = expires_in_hours if expires_in_hours is not None else settings.waitlist_notification_hours
        if hours <= 0:
            raise ValidationException(
                "Notification window must be at least one hour",
                code="INVALID_NOTIFICATION_WINDOW",
                details={"expires_in_hours": hours},
            )
        now = ensure_utc(as_of) or utc_now()
        with self.transaction():
            entry = self._get_entry(entry_id)
            entry.mark_notified(hours, now)
            self.repository.flush()
            self.event_publisher.publish(
                WaitlistNotified(
                    entry_id=entry.id,
                    session_id=entry.session_id,
                    student_id=entry.student_id,
                    notified_at=now,
                    expires_at=entry.notification_expires_at,
                )
            )
        return entry

    @BaseService.measure_operation("promote_next")
    def promote_next(self, session_id: str, *, as_of: Optional[datetime] = None) -> PromotionResult:
        """
        Try to seat the first eligible entry of a session.

        Runs in its own transaction. A failure rolls back only this attempt,
        leaves the entry in place and is returned, not raised; the next entry
        is not tried.
        """
        now = ensure_utc(as_of) or utc_now()
        entry_id: Optional[str] = None
        student_id: Optional[str] = None
        try:
            with self.transaction():
                session = self._lock_session(session_id)
                if not session.is_scheduled():
                    outcome = PromotionOutcome.SKIPPED
                elif self.booking_repository.count_active_for_session(session_id) >= session.capacity_max:
                    outcome = PromotionOutcome.SKIPPED
                else:
                    entry = self.repository.get_first_eligible(session_id, now)
                    if entry is None:
                        outcome = PromotionOutcome.EMPTY
                    else:
                        entry_id, student_id = entry.id, entry.student_id
                        booking, allowance_id = self.booking_service._book_seat(
                            entry.student_id,
                            session,
                            package_id=entry.student_package_id,
                            now=now,
                            from_waitlist=True,
                        )
                        self.event_publisher.publish(
                            WaitlistPromoted(
                                entry_id=entry_id,
                                session_id=session_id,
                                student_id=student_id,
                                booking_id=booking.id,
                                promoted_at=now,
                            )
                        )
                        outcome = PromotionOutcome.PROMOTED
        except DomainException as exc:
            self.logger.warning(
                "Waitlist promotion failed for session %s: %s",
                session_id,
                exc.message,
                extra={"entry_id": entry_id, "student_id": student_id, "code": exc.code},
            )
            prometheus_metrics.record_promotion_outcome(PromotionOutcome.FAILED.value)
            return PromotionResult(
                session_id=session_id,
                outcome=PromotionOutcome.FAILED,
                entry_id=entry_id,
                student_id=student_id,
                error_code=exc.code,
                error_message=exc.message,
            )

        prometheus_metrics.record_promotion_outcome(outcome.value)
        if outcome != PromotionOutcome.PROMOTED:
            return PromotionResult(session_id=session_id, outcome=outcome)

        self.logger.info(
            "Promoted waitlist entry %s into session %s",
            entry_id,
            session_id,
            extra={"student_id": student_id, "booking_id": booking.id},
        )
        return PromotionResult(
            session_id=session_id,
            outcome=outcome,
            entry_id=entry_id,
            student_id=student_id,
            booking=BookingResult.from_booking(booking, allowance_id=allowance_id),
        )

    @BaseService.measure_operation("promote_waitlist_entry")
    def promote_entry(
        self,
        entry_id: str,
        package_id: Optional[str] = None,
        *,
        as_of: Optional[datetime] = None,
    ) -> BookingResult:
        """
        Admin promotion of a specific entry, out of queue order.

        Errors propagate; the entry stays queued if the booking fails.
        """
        now = ensure_utc(as_of) or utc_now()
        with self.transaction():
            entry = self._get_entry(entry_id)
            session = self._lock_session(entry.session_id)
            booking, allowance_id = self.booking_service._book_seat(
                entry.student_id,
                session,
                package_id=package_id or entry.student_package_id,
                now=now,
                from_waitlist=True,
            )
            self.event_publisher.publish(
                WaitlistPromoted(
                    entry_id=entry_id,
                    session_id=session.id,
                    student_id=booking.student_id,
                    booking_id=booking.id,
                    promoted_at=now,
                )
            )
        prometheus_metrics.record_promotion_outcome(PromotionOutcome.PROMOTED.value)
        return BookingResult.from_booking(booking, allowance_id=allowance_id)

    def get_waitlist_for_session(self, session_id: str) -> List[WaitlistEntryView]:
        if self.session_repository.get_by_id(session_id) is None:
            raise NotFoundException("Session", session_id)
        return [WaitlistEntryView.model_validate(e) for e in self.repository.list_for_session(session_id)]

    def get_student_waitlists(self, student_id: str) -> List[WaitlistEntryView]:
        return [WaitlistEntryView.model_validate(e) for e in self.repository.list_for_student(student_id)]
