# backend/classbook/tasks/outbox_tasks.py
"""
Celery tasks draining the booking event outbox.

1. `outbox.dispatch_pending` delivers every due event in one batch.
2. `outbox.deliver_event` re-delivers a single event by id.

Delivery state (attempts, backoff, terminal failure) lives on the outbox
row, so the tasks themselves never retry.
"""

from __future__ import annotations

from typing import Dict, Optional

from celery.utils.log import get_task_logger

from ..database import SessionLocal
from ..events.handlers import OutboxDispatcher
from .celery_app import celery_app

logger = get_task_logger(__name__)


def build_dispatcher() -> OutboxDispatcher:
    return OutboxDispatcher(SessionLocal)


@celery_app.task(name="outbox.dispatch_pending", max_retries=0)
def dispatch_pending() -> Dict[str, int]:
    """Deliver due outbox events; returns counts per outcome."""
    stats = build_dispatcher().dispatch_pending()
    if stats.failed:
        logger.warning("%s outbox events failed permanently", stats.failed)
    return {"sent": stats.sent, "retrying": stats.retrying, "failed": stats.failed}


@celery_app.task(name="outbox.deliver_event", max_retries=0)
def deliver_event(event_id: str) -> Optional[str]:
    """Deliver a single outbox event."""
    outcome = build_dispatcher().deliver(event_id)
    logger.info("Outbox event %s delivery outcome: %s", event_id, outcome)
    return outcome
