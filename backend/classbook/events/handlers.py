"""
Event handlers - deliver committed outbox events to registered listeners.

Calendar provisioning and notification delivery live outside the ledger;
they subscribe here by event type. The dispatcher runs in its own session,
never inside a ledger transaction.
"""
from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from ..core.config import settings
from ..models.event_outbox import EventOutbox
from ..monitoring.prometheus_metrics import PrometheusMetrics
from ..repositories.event_outbox_repository import EventOutboxRepository

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]
ALL_EVENTS = "*"

EventHandler = Callable[[str, Dict[str, Any]], None]


def next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


def log_event(event_type: str, payload: Dict[str, Any]) -> None:
    logger.info("Booking event %s", event_type, extra={"event_type": event_type, "payload": payload})


class EventHandlerRegistry:
    """Maps event types to listener callables; ``*`` receives every event."""

    def __init__(self) -> None:
        self._handlers: Dict[str, List[EventHandler]] = {}

    def register(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unregister(self, event_type: str, handler: EventHandler) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def handlers_for(self, event_type: str) -> List[EventHandler]:
        return list(self._handlers.get(event_type, [])) + list(
            self._handlers.get(ALL_EVENTS, [])
        )


def build_default_registry() -> EventHandlerRegistry:
    registry = EventHandlerRegistry()
    registry.register(ALL_EVENTS, log_event)
    return registry


default_registry = build_default_registry()


@dataclass
class DispatchStats:
    sent: int = 0
    retrying: int = 0
    failed: int = 0

    @property
    def processed(self) -> int:
        return self.sent + self.retrying + self.failed


class OutboxDispatcher:
    """
    Delivers pending outbox rows to the registry's handlers.

    A handler exception re-schedules the row with backoff; after
    ``max_attempts`` deliveries the row is marked FAILED and left for an
    operator.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] | sessionmaker,
        registry: Optional[EventHandlerRegistry] = None,
        *,
        batch_size: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ) -> None:
        self.session_factory = session_factory
        self.registry = registry or default_registry
        self.batch_size = batch_size or settings.outbox_batch_size
        self.max_attempts = max_attempts or settings.outbox_max_attempts

    def dispatch_pending(self) -> DispatchStats:
        """Deliver one batch of due events and commit their new states."""
        stats = DispatchStats()
        session = self.session_factory()
        try:
            repo = EventOutboxRepository(session)
            for event in repo.fetch_pending(limit=self.batch_size):
                outcome = self._deliver(repo, event)
                setattr(stats, outcome, getattr(stats, outcome) + 1)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        if stats.processed:
            logger.info(
                "Outbox dispatch: sent=%s retrying=%s failed=%s",
                stats.sent,
                stats.retrying,
                stats.failed,
            )
        return stats

    def deliver(self, event_id: str) -> Optional[str]:
        """Deliver a single event by id; returns the outcome or None if missing."""
        session = self.session_factory()
        try:
            repo = EventOutboxRepository(session)
            event = repo.get_by_id(event_id)
            if event is None:
                logger.warning("Outbox event %s missing; skipping", event_id)
                return None
            outcome = self._deliver(repo, event)
            session.commit()
            return outcome
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _deliver(self, repo: EventOutboxRepository, event: EventOutbox) -> str:
        attempt_number = (event.attempt_count or 0) + 1
        PrometheusMetrics.record_outbox_attempt(event.event_type)
        try:
            for handler in self.registry.handlers_for(event.event_type):
                handler(event.event_type, dict(event.payload or {}))
        except Exception as exc:
            backoff = next_backoff(attempt_number)
            terminal = attempt_number >= self.max_attempts
            repo.mark_failed(
                event.id,
                attempt_count=attempt_number,
                backoff_seconds=backoff,
                error=str(exc),
                terminal=terminal,
            )
            if terminal:
                PrometheusMetrics.record_outbox_outcome(event.event_type, "failed")
                logger.error(
                    "Outbox event %s failed permanently after %s attempts",
                    event.id,
                    attempt_number,
                    exc_info=True,
                )
                return "failed"
            PrometheusMetrics.record_outbox_outcome(event.event_type, "retrying")
            logger.warning(
                "Error delivering outbox event %s; retrying in %ss",
                event.id,
                backoff,
                exc_info=True,
            )
            return "retrying"

        repo.mark_sent(event.id, attempt_number)
        PrometheusMetrics.record_outbox_outcome(event.event_type, "sent")
        logger.info(
            "Delivered outbox event %s type=%s attempts=%s",
            event.id,
            event.event_type,
            attempt_number,
        )
        return "sent"
