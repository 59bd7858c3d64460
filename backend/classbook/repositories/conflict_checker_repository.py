# backend/classbook/repositories/conflict_checker_repository.py
"""
ConflictChecker Repository for the classbook ledger

Finds active bookings whose session overlaps a requested window, either for
the teacher running the session or for the student attending it. Overlap is
the half-open test ``existing.start < requested.end AND existing.end > requested.start``,
pushed into SQL so only real conflicts are loaded.
"""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, contains_eager

from ..core.exceptions import RepositoryException
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking
from ..models.class_session import ClassSession
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ConflictCheckerRepository(BaseRepository[Booking]):
    """Read-only queries used by the availability checker."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def _overlapping(self, start: datetime, end: datetime):
        return (
            self.db.query(Booking)
            .join(ClassSession, Booking.session_id == ClassSession.id)
            .options(contains_eager(Booking.session))
            .filter(
                Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                ClassSession.start_at < end,
                ClassSession.end_at > start,
            )
        )

    def get_teacher_conflicts(
        self,
        teacher_id: str,
        start: datetime,
        end: datetime,
        exclude_session_id: Optional[str] = None,
    ) -> List[Booking]:
        """
        Active bookings on the teacher's other sessions that overlap the window.

        Bookings on ``exclude_session_id`` are seats of the session being
        booked, not conflicts.
        """
        try:
            query = self._overlapping(start, end).filter(ClassSession.teacher_id == teacher_id)
            if exclude_session_id:
                query = query.filter(ClassSession.id != exclude_session_id)
            return cast(List[Booking], query.order_by(ClassSession.start_at).all())
        except SQLAlchemyError as e:
            self.logger.error("Error getting teacher conflicts: %s", str(e))
            raise RepositoryException(f"Failed to get teacher conflicts: {str(e)}")

    def get_student_conflicts(
        self,
        student_id: str,
        start: datetime,
        end: datetime,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        """Active bookings of the student whose session overlaps the window."""
        try:
            query = self._overlapping(start, end).filter(Booking.student_id == student_id)
            if exclude_booking_id:
                query = query.filter(Booking.id != exclude_booking_id)
            return cast(List[Booking], query.order_by(ClassSession.start_at).all())
        except SQLAlchemyError as e:
            self.logger.error("Error getting student conflicts: %s", str(e))
            raise RepositoryException(f"Failed to get student conflicts: {str(e)}")
