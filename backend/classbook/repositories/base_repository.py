# backend/classbook/repositories/base_repository.py
"""
Base Repository Pattern for the classbook ledger

Every repository wraps one model and one Session. Repositories flush but
never commit; the service layer owns the transaction. Row locks are taken
on PostgreSQL and skipped on SQLite, which serialises writers anyway.
"""

from abc import ABC, abstractmethod
import logging
from typing import Any, Generic, Optional, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Query, Session

from ..core.exceptions import RepositoryException
from ..database.session_utils import get_dialect_name, supports_row_locks

T = TypeVar("T")

logger = logging.getLogger(__name__)


class IRepository(ABC, Generic[T]):
    """Minimal data access contract shared by the ledger repositories."""

    @abstractmethod
    def get_by_id(self, id: str, for_update: bool = False) -> Optional[T]:
        """Retrieve an entity by its primary key."""

    @abstractmethod
    def create(self, **kwargs: Any) -> T:
        """Create and flush a new entity."""


class BaseRepository(IRepository[T]):
    """
    Shared lookups, inserts and locking for a single model.

    Attributes:
        db: SQLAlchemy session
        model: SQLAlchemy model class
    """

    def __init__(self, db: Session, model: Type[T]):
        self.db = db
        self.model = model
        self.logger = logging.getLogger(f"{__name__}.{model.__name__}")

    @property
    def dialect_name(self) -> str:
        return get_dialect_name(self.db)

    def get_by_id(self, id: str, for_update: bool = False) -> Optional[T]:
        """
        Retrieve an entity by its primary key.

        ``for_update`` holds a row lock until the transaction ends.
        """
        try:
            query = self.db.query(self.model).filter(self.model.id == id)
            if for_update:
                query = self._lock(query)
            return query.first()
        except SQLAlchemyError as e:
            self.logger.error("Error loading %s %s: %s", self.model.__name__, id, str(e))
            raise RepositoryException(f"Failed to retrieve {self.model.__name__}: {str(e)}")

    def create(self, **kwargs: Any) -> T:
        """
        Add and flush a new row.

        IntegrityError propagates unchanged so services can turn constraint
        violations into domain errors.
        """
        entity = self.model(**kwargs)
        try:
            self.db.add(entity)
            self.db.flush()
            return entity
        except IntegrityError:
            self.logger.warning("Constraint violation inserting %s", self.model.__name__)
            raise
        except SQLAlchemyError as e:
            self.logger.error("Error inserting %s: %s", self.model.__name__, str(e))
            raise RepositoryException(f"Failed to create {self.model.__name__}: {str(e)}")

    def flush(self) -> None:
        self.db.flush()

    def _lock(self, query: Query) -> Query:
        """Apply FOR UPDATE where the dialect supports row locks."""
        if supports_row_locks(self.db):
            return query.with_for_update()
        return query
