# backend/classbook/repositories/class_session_repository.py
"""Repository for scheduled class sessions."""

import logging
from typing import Optional, cast

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..database.session_utils import supports_row_locks
from ..models.class_session import ClassSession
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class ClassSessionRepository(BaseRepository[ClassSession]):
    """Data access for ClassSession rows."""

    def __init__(self, db: Session):
        super().__init__(db, ClassSession)

    def lock_for_seat_change(self, session_id: str) -> Optional[ClassSession]:
        """
        Load a session and hold its row lock until commit.

        Serialises seat counting, seat assignment and waitlist position
        assignment for one session across concurrent transactions.
        """
        try:
            query = self._lock(
                self.db.query(ClassSession)
                .populate_existing()
                .filter(ClassSession.id == session_id)
            )
            return cast(Optional[ClassSession], query.first())
        except SQLAlchemyError as e:
            self.logger.error("Error locking session %s: %s", session_id, str(e))
            raise RepositoryException(f"Failed to lock session: {str(e)}")

    def lock_teacher_schedule(self, teacher_id: str) -> bool:
        """
        Serialise new-session scheduling for one teacher until commit.

        Transaction-scoped advisory lock keyed on the teacher; the session
        being created has no row to lock yet. Returns False on dialects
        without advisory locks.
        """
        if not supports_row_locks(self.db):
            return False
        try:
            self.db.execute(
                text("SELECT pg_advisory_xact_lock(hashtext(:key))"),
                {"key": f"teacher-schedule:{teacher_id}"},
            )
            return True
        except SQLAlchemyError as e:
            self.logger.error("Error locking schedule of teacher %s: %s", teacher_id, str(e))
            raise RepositoryException(f"Failed to lock teacher schedule: {str(e)}")
