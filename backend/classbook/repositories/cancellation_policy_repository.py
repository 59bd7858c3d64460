# backend/classbook/repositories/cancellation_policy_repository.py
"""Repository for cancellation policy versions."""

from datetime import datetime
import logging
from typing import List, Optional, cast

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.cancellation_policy import CancellationPolicy
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class CancellationPolicyRepository(BaseRepository[CancellationPolicy]):
    def __init__(self, db: Session):
        super().__init__(db, CancellationPolicy)

    def get_active(self) -> Optional[CancellationPolicy]:
        try:
            return cast(
                Optional[CancellationPolicy],
                self.db.query(CancellationPolicy)
                .filter(CancellationPolicy.is_active.is_(True))
                .order_by(CancellationPolicy.created_at.desc())
                .first(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error loading active policy: %s", str(e))
            raise RepositoryException(f"Failed to load policy: {str(e)}")

    def deactivate_all(self, superseded_at: datetime) -> int:
        """Flip every active policy inactive; returns the number superseded."""
        try:
            result = self.db.execute(
                update(CancellationPolicy)
                .where(CancellationPolicy.is_active.is_(True))
                .values(is_active=False, superseded_at=superseded_at)
                .execution_options(synchronize_session="fetch")
            )
            self.db.flush()
            return int(result.rowcount or 0)
        except SQLAlchemyError as e:
            self.logger.error("Error superseding policies: %s", str(e))
            raise RepositoryException(f"Failed to supersede policies: {str(e)}")

    def list_all(self) -> List[CancellationPolicy]:
        """Policy history, newest first."""
        try:
            return cast(
                List[CancellationPolicy],
                self.db.query(CancellationPolicy)
                .order_by(CancellationPolicy.created_at.desc(), CancellationPolicy.id.desc())
                .all(),
            )
        except SQLAlchemyError as e:
            self.logger.error("Error listing policies: %s", str(e))
            raise RepositoryException(f"Failed to list policies: {str(e)}")
