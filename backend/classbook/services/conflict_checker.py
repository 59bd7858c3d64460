# backend/classbook/services/conflict_checker.py
"""
Conflict Checker Service for the classbook ledger

Decides whether a teacher or student already holds an active commitment
overlapping a requested window. Read-only: it runs inside the caller's
transaction so it sees that transaction's snapshot, including its own
uncommitted bookings.
"""

from datetime import datetime
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from ..core.exceptions import BookingConflictException, InvalidIntervalException
from ..core.timezone_utils import ensure_utc
from ..models.booking import Booking
from ..repositories import RepositoryFactory
from ..repositories.conflict_checker_repository import ConflictCheckerRepository
from .base import BaseService

logger = logging.getLogger(__name__)


def validate_interval(start: datetime, end: datetime) -> None:
    """Reject zero-length and inverted windows."""
    if start is None or end is None or ensure_utc(end) <= ensure_utc(start):
        raise InvalidIntervalException(start, end)


def _describe(bookings: List[Booking]) -> List[Dict[str, Any]]:
    return [
        {
            "booking_id": booking.id,
            "session_id": booking.session_id,
            "start_at": ensure_utc(booking.session.start_at).isoformat(),
            "end_at": ensure_utc(booking.session.end_at).isoformat(),
            "status": booking.status,
        }
        for booking in bookings
    ]


class ConflictChecker(BaseService):
    """
    Service for teacher and student overlap detection.

    Overlap is half-open: a session ending at 10:00 does not conflict with
    one starting at 10:00.
    """

    def __init__(self, db: Session, repository: Optional[ConflictCheckerRepository] = None):
        """
        Initialize conflict checker service.

        Args:
            db: Database session
            repository: Optional ConflictCheckerRepository instance
        """
        super().__init__(db)
        self.logger = logging.getLogger(__name__)
        self.repository = repository or RepositoryFactory.create_conflict_checker_repository(db)

    @BaseService.measure_operation("find_teacher_conflicts")
    def find_teacher_conflicts(
        self,
        teacher_id: str,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> List[Booking]:
        """
        Active bookings on the teacher's other sessions overlapping [start, end).

        Seats already taken in ``exclude_session_id`` are not conflicts: they
        are the session being booked.
        """
        validate_interval(start, end)
        return self.repository.get_teacher_conflicts(
            teacher_id, ensure_utc(start), ensure_utc(end), exclude_session_id
        )

    @BaseService.measure_operation("find_student_conflicts")
    def find_student_conflicts(
        self,
        student_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        validate_interval(start, end)
        return self.repository.get_student_conflicts(
            student_id, ensure_utc(start), ensure_utc(end), exclude_booking_id
        )

    def check_teacher_available(
        self,
        teacher_id: str,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> None:
        """
        Raise BookingConflictException if the teacher is busy in the window.

        Raises:
            InvalidIntervalException: If end is not after start
            BookingConflictException: If an overlapping booking exists
        """
        conflicts = self.find_teacher_conflicts(teacher_id, start, end, exclude_session_id)
        if conflicts:
            self.logger.warning(
                "Teacher %s has %s conflicting bookings between %s and %s",
                teacher_id,
                len(conflicts),
                start,
                end,
            )
            raise BookingConflictException(
                "The teacher already has a class at this time",
                details={
                    "scope": "teacher",
                    "participant_id": teacher_id,
                    "conflicting_booking_ids": [booking.id for booking in conflicts],
                    "conflicts": _describe(conflicts),
                },
            )

    def check_student_available(
        self,
        student_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> None:
        """
        Raise BookingConflictException if the student is busy in the window.

        Raises:
            InvalidIntervalException: If end is not after start
            BookingConflictException: If an overlapping booking exists
        """
        conflicts = self.find_student_conflicts(student_id, start, end, exclude_booking_id)
        if conflicts:
            self.logger.info(
                "Student %s has %s conflicting bookings between %s and %s",
                student_id,
                len(conflicts),
                start,
                end,
            )
            raise BookingConflictException(
                "You already have a booking at this time",
                details={
                    "scope": "student",
                    "participant_id": student_id,
                    "conflicting_booking_ids": [booking.id for booking in conflicts],
                    "conflicts": _describe(conflicts),
                },
            )

    def is_teacher_available(self, teacher_id: str, start: datetime, end: datetime) -> bool:
        return not self.find_teacher_conflicts(teacher_id, start, end)
