# backend/classbook/repositories/waitlist_repository.py
"""
Waitlist Repository for the classbook ledger

Position bookkeeping for session waitlists. Callers hold the session row
lock (see ClassSessionRepository.lock_for_seat_change) around any write.
"""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import func, or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from ..core.exceptions import RepositoryException
from ..models.class_session import ClassSession
from ..models.waitlist import WaitlistEntry
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class WaitlistRepository(BaseRepository[WaitlistEntry]):
    """Repository for waitlist entries."""

    def __init__(self, db: Session):
        super().__init__(db, WaitlistEntry)
        self.logger = logging.getLogger(__name__)

    def get_max_position(self, session_id: str) -> int:
        """Highest position in a session's queue, 0 when empty."""
        try:
            result = (
                self.db.query(func.max(WaitlistEntry.position))
                .filter(WaitlistEntry.session_id == session_id)
                .scalar()
            )
            return int(result or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error reading waitlist tail for %s: %s", session_id, str(e))
            raise RepositoryException(f"Failed to read waitlist: {str(e)}")

    def get_for_student(self, session_id: str, student_id: str) -> Optional[WaitlistEntry]:
        try:
            return cast(
                Optional[WaitlistEntry],
                self.db.query(WaitlistEntry)
                .filter(
                    WaitlistEntry.session_id == session_id,
                    WaitlistEntry.student_id == student_id,
                )
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error loading waitlist entry: %s", str(e))
            raise RepositoryException(f"Failed to load waitlist entry: {str(e)}")

    def list_for_session(self, session_id: str) -> List[WaitlistEntry]:
        """Queue of a session in position order."""
        try:
            return cast(
                List[WaitlistEntry],
                self.db.query(WaitlistEntry)
                .filter(WaitlistEntry.session_id == session_id)
                .order_by(WaitlistEntry.position.asc())
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing waitlist for %s: %s", session_id, str(e))
            raise RepositoryException(f"Failed to list waitlist: {str(e)}")

    def list_for_student(self, student_id: str) -> List[WaitlistEntry]:
        """Entries of a student across sessions, soonest session first."""
        try:
            return cast(
                List[WaitlistEntry],
                self.db.query(WaitlistEntry)
                .join(ClassSession, WaitlistEntry.session_id == ClassSession.id)
                .options(joinedload(WaitlistEntry.session))
                .filter(WaitlistEntry.student_id == student_id)
                .order_by(ClassSession.start_at.asc(), WaitlistEntry.id.asc())
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing waitlists of student %s: %s", student_id, str(e))
            raise RepositoryException(f"Failed to list waitlists: {str(e)}")

    def get_first_eligible(self, session_id: str, as_of: datetime) -> Optional[WaitlistEntry]:
        """Lowest-position entry whose notification window has not lapsed."""
        try:
            return cast(
                Optional[WaitlistEntry],
                self.db.query(WaitlistEntry)
                .filter(
                    WaitlistEntry.session_id == session_id,
                    or_(
                        WaitlistEntry.notification_expires_at.is_(None),
                        WaitlistEntry.notification_expires_at > as_of,
                    ),
                )
                .order_by(WaitlistEntry.position.asc())
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error finding next waitlist entry for %s: %s", session_id, str(e))
            raise RepositoryException(f"Failed to read waitlist: {str(e)}")

    def shift_positions_after(self, session_id: str, position: int) -> int:
        """Move every entry behind ``position`` one place forward."""
        try:
            result = self.db.execute(
                update(WaitlistEntry)
                .where(
                    WaitlistEntry.session_id == session_id,
                    WaitlistEntry.position > position,
                )
                .values(position=WaitlistEntry.position - 1)
                .execution_options(synchronize_session="fetch")
            )
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error renumbering waitlist for %s: %s", session_id, str(e))
            raise RepositoryException(f"Failed to renumber waitlist: {str(e)}")

    def delete(self, entry: WaitlistEntry) -> None:
        try:
            self.db.delete(entry)
            self.db.flush()
        except SQLAlchemyError as e:
            self.logger.error("Error deleting waitlist entry %s: %s", entry.id, str(e))
            raise RepositoryException(f"Failed to delete waitlist entry: {str(e)}")
