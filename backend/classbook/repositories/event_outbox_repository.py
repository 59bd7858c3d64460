# backend/classbook/repositories/event_outbox_repository.py
"""
Event Outbox Repository for the classbook ledger

Booking, session, waitlist and package events are appended here by the
publisher inside the ledger transaction that caused them. An event's
idempotency key makes a repeated publish a no-op. The dispatcher reads only
committed PENDING rows that are due, and records each delivery attempt.
"""

from __future__ import annotations

from datetime import datetime, timedelta
import logging
from typing import Any, List, Optional, cast

from sqlalchemy import insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..core.timezone_utils import utc_now
from ..core.ulid_helper import generate_ulid
from ..models.event_outbox import EventOutbox, EventOutboxStatus
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


class EventOutboxRepository(BaseRepository[EventOutbox]):
    """Append and delivery bookkeeping for ledger events."""

    def __init__(self, db: Session):
        super().__init__(db, EventOutbox)

    def _insert_once(self, values: dict[str, Any]) -> bool:
        """Insert unless the idempotency key exists; True when a row was written."""
        if self.dialect_name == "postgresql":
            stmt = (
                pg_insert(EventOutbox)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
                .returning(EventOutbox.id)
            )
            return self.db.execute(stmt).scalar_one_or_none() is not None
        result = self.db.execute(insert(EventOutbox).values(**values).prefix_with("OR IGNORE"))
        return bool(result.rowcount)

    def get_by_key(self, idempotency_key: str) -> Optional[EventOutbox]:
        return cast(
            Optional[EventOutbox],
            self.db.execute(
                select(EventOutbox).where(EventOutbox.idempotency_key == idempotency_key)
            ).scalar_one_or_none(),
        )

    def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        payload: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
        next_attempt_at: Optional[datetime] = None,
    ) -> EventOutbox:
        """
        Append an event for delivery after commit.

        Returns the stored row; when the key was already enqueued, the
        earlier row is returned untouched.
        """
        key = idempotency_key or f"{event_type}:{aggregate_id}"
        values = dict(
            id=generate_ulid(),
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload=payload or {},
            idempotency_key=key,
            status=EventOutboxStatus.PENDING.value,
            attempt_count=0,
            next_attempt_at=next_attempt_at or utc_now(),
        )
        try:
            if not self._insert_once(values):
                self.logger.debug("Event %s already enqueued", key)
            self.db.flush()
            row = self.get_by_key(key)
        except SQLAlchemyError as e:
            self.logger.error("Error enqueueing %s for %s: %s", event_type, aggregate_id, str(e))
            raise RepositoryException(f"Failed to enqueue event: {str(e)}")
        if row is None:
            raise RepositoryException(f"Event {key} missing after enqueue")
        return row

    def fetch_pending(self, limit: int = 200) -> List[EventOutbox]:
        """Due PENDING events, oldest schedule first; rows held by another dispatcher are skipped."""
        stmt = (
            select(EventOutbox)
            .where(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .where(EventOutbox.next_attempt_at <= utc_now())
            .order_by(EventOutbox.next_attempt_at.asc(), EventOutbox.id.asc())
            .limit(limit)
        )
        if self.dialect_name == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        return cast(List[EventOutbox], self.db.execute(stmt).scalars().all())

    def _set_state(self, event_id: str, **values: Any) -> None:
        self.db.execute(
            update(EventOutbox)
            .where(EventOutbox.id == event_id)
            .values(updated_at=utc_now(), **values)
            .execution_options(synchronize_session=False)
        )
        self.db.flush()

    def mark_sent(self, event_id: str, attempt_count: int) -> None:
        self._set_state(
            event_id,
            status=EventOutboxStatus.SENT.value,
            attempt_count=attempt_count,
            last_error=None,
        )

    def mark_failed(
        self,
        event_id: str,
        *,
        attempt_count: int,
        backoff_seconds: int,
        error: str | None = None,
        terminal: bool = False,
    ) -> None:
        """Record a failed delivery; a terminal failure is never retried."""
        if terminal:
            status, next_attempt = EventOutboxStatus.FAILED.value, None
        else:
            status = EventOutboxStatus.PENDING.value
            next_attempt = utc_now() + timedelta(seconds=max(backoff_seconds, 1))
        values: dict[str, Any] = {
            "status": status,
            "attempt_count": attempt_count,
            "last_error": error[:MAX_ERROR_LENGTH] if error else None,
        }
        if next_attempt is not None:
            values["next_attempt_at"] = next_attempt
        self._set_state(event_id, **values)
