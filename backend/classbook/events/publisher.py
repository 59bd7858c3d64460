"""Event publisher - writes domain events to the outbox in the caller's transaction."""
from datetime import datetime
import logging
from typing import Any, Dict, Protocol

from ..models.event_outbox import EventOutbox
from ..repositories.event_outbox_repository import EventOutboxRepository

logger = logging.getLogger(__name__)


class Event(Protocol):
    """Protocol for event types."""

    EVENT_TYPE: str

    @property
    def aggregate_id(self) -> str:
        ...

    @property
    def idempotency_key(self) -> str:
        ...

    def to_dict(self) -> Dict[str, Any]:
        ...


class EventPublisher:
    """Publishes domain events to the outbox for delivery after commit."""

    def __init__(self, outbox_repository: EventOutboxRepository):
        self.outbox_repo = outbox_repository

    def publish(self, event: Event) -> EventOutbox:
        """
        Enqueue an event.

        Nothing leaves the process here: the row becomes visible to the
        dispatcher only when the surrounding transaction commits, and a
        rollback discards it along with the ledger change.
        """
        payload = event.to_dict()

        # Convert datetime objects to ISO strings for JSON serialization
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()

        row = self.outbox_repo.enqueue(
            event_type=event.EVENT_TYPE,
            aggregate_id=event.aggregate_id,
            payload=payload,
            idempotency_key=event.idempotency_key,
        )
        logger.debug("Queued %s for %s", event.EVENT_TYPE, event.aggregate_id)
        return row
