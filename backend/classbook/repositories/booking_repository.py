# backend/classbook/repositories/booking_repository.py
"""
Booking Repository for the classbook ledger

Seat accounting and booking lookups used by the orchestrator and the
waitlist manager.
"""

import logging
from typing import List, Optional, Set, cast

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..core.exceptions import RepositoryException
from ..models.booking import ACTIVE_BOOKING_STATUSES, Booking
from ..models.class_session import ClassSession
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking rows."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)
        self.logger = logging.getLogger(__name__)

    def get_with_session(self, booking_id: str, for_update: bool = False) -> Optional[Booking]:
        """Load a booking with its session eagerly joined."""
        try:
            query = (
                self.db.query(Booking)
                .options(joinedload(Booking.session))
                .filter(Booking.id == booking_id)
            )
            if for_update:
                # Lock only the booking row; joined session rows stay unlocked.
                # Refresh the cached row so policy checks see the committed status.
                query = self._lock(
                    self.db.query(Booking)
                    .filter(Booking.id == booking_id)
                    .populate_existing()
                )
            return cast(Optional[Booking], query.first())
        except SQLAlchemyError as e:
            self.logger.error("Error loading booking %s: %s", booking_id, str(e))
            raise RepositoryException(f"Failed to load booking: {str(e)}")

    def count_active_for_session(self, session_id: str) -> int:
        """Number of seats currently held in a session."""
        try:
            result = (
                self.db.query(func.count(Booking.id))
                .filter(
                    Booking.session_id == session_id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                )
                .scalar()
            )
            return int(result or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error counting bookings for session %s: %s", session_id, str(e))
            raise RepositoryException(f"Failed to count bookings: {str(e)}")

    def get_taken_seats(self, session_id: str) -> Set[int]:
        """Seat numbers held by active bookings of a session."""
        try:
            rows = (
                self.db.query(Booking.seat_number)
                .filter(
                    Booking.session_id == session_id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                )
                .all()
            )
            return {int(row[0]) for row in rows}
        except SQLAlchemyError as e:
            self.logger.error("Error loading seats for session %s: %s", session_id, str(e))
            raise RepositoryException(f"Failed to load seats: {str(e)}")

    def get_active_for_student(self, session_id: str, student_id: str) -> Optional[Booking]:
        """The student's active booking in a session, if any."""
        try:
            return cast(
                Optional[Booking],
                self.db.query(Booking)
                .filter(
                    Booking.session_id == session_id,
                    Booking.student_id == student_id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                )
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error loading student booking: %s", str(e))
            raise RepositoryException(f"Failed to load booking: {str(e)}")

    def list_active_for_student(self, student_id: str) -> List[Booking]:
        """Active bookings of a student, soonest session first."""
        try:
            return cast(
                List[Booking],
                self.db.query(Booking)
                .join(ClassSession, Booking.session_id == ClassSession.id)
                .options(joinedload(Booking.session))
                .filter(
                    Booking.student_id == student_id,
                    Booking.status.in_(ACTIVE_BOOKING_STATUSES),
                )
                .order_by(ClassSession.start_at.asc(), Booking.id.asc())
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing bookings for student %s: %s", student_id, str(e))
            raise RepositoryException(f"Failed to list bookings: {str(e)}")
