"""Unit tests for the Celery outbox tasks, run eagerly in-process."""

import pytest

from classbook.events.booking_events import SessionCancelled
from classbook.events.handlers import EventHandlerRegistry, OutboxDispatcher
from classbook.events.publisher import EventPublisher
from classbook.models.event_outbox import EventOutbox, EventOutboxStatus
from classbook.repositories.event_outbox_repository import EventOutboxRepository
from classbook.tasks import outbox_tasks
from classbook.tasks.celery_app import celery_app


@pytest.fixture
def received(monkeypatch, session_factory):
    seen = []
    registry = EventHandlerRegistry()
    registry.register("session.cancelled", lambda event_type, payload: seen.append(payload))
    monkeypatch.setattr(
        outbox_tasks, "build_dispatcher", lambda: OutboxDispatcher(session_factory, registry)
    )
    return seen


def _publish(db, now):
    row = EventPublisher(EventOutboxRepository(db)).publish(
        SessionCancelled(session_id="s1", teacher_id="t1", cancelled_at=now)
    )
    db.commit()
    return row.id


def test_tasks_are_registered_and_scheduled():
    assert "outbox.dispatch_pending" in celery_app.tasks
    assert "outbox.deliver_event" in celery_app.tasks
    assert celery_app.conf.beat_schedule["dispatch-outbox"]["task"] == "outbox.dispatch_pending"
    assert celery_app.conf.task_serializer == "json"


def test_dispatch_pending_task_reports_counts(db, now, received):
    _publish(db, now)

    assert outbox_tasks.dispatch_pending() == {"sent": 1, "retrying": 0, "failed": 0}
    assert received[0]["session_id"] == "s1"


def test_deliver_event_task(db, now, received):
    event_id = _publish(db, now)

    assert outbox_tasks.deliver_event(event_id) == "sent"
    db.expire_all()
    assert db.get(EventOutbox, event_id).status == EventOutboxStatus.SENT.value
