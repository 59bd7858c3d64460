"""Unit tests for the event publisher and outbox dispatcher."""

from datetime import timedelta

import pytest

from classbook.core.timezone_utils import ensure_utc, utc_now
from classbook.events.booking_events import BookingCreated, WaitlistNotified
from classbook.events.handlers import (
    ALL_EVENTS,
    EventHandlerRegistry,
    OutboxDispatcher,
    next_backoff,
)
from classbook.events.publisher import EventPublisher
from classbook.models.event_outbox import EventOutbox, EventOutboxStatus
from classbook.repositories.event_outbox_repository import EventOutboxRepository


@pytest.fixture
def publisher(db):
    return EventPublisher(EventOutboxRepository(db))


def _created(booking_id="b1", now=None):
    return BookingCreated(
        booking_id=booking_id,
        session_id="s1",
        student_id="st1",
        teacher_id="t1",
        status="CONFIRMED",
        created_at=now or utc_now(),
        credits_cost=1,
    )


class TestPublisher:
    def test_publish_serialises_datetimes(self, db, publisher, now):
        row = publisher.publish(_created(now=now))

        assert row.event_type == "booking.created"
        assert row.aggregate_id == "b1"
        assert row.idempotency_key == "booking.created:b1"
        assert row.payload["created_at"] == now.isoformat()
        assert row.status == EventOutboxStatus.PENDING.value

    def test_publish_is_idempotent_per_key(self, db, publisher):
        first = publisher.publish(_created())
        second = publisher.publish(_created())

        assert first.id == second.id
        assert db.query(EventOutbox).count() == 1

    def test_repeated_notifications_are_distinct_events(self, db, publisher, now):
        for offset in (0, 1):
            notified_at = now + timedelta(hours=offset)
            publisher.publish(
                WaitlistNotified(
                    entry_id="e1",
                    session_id="s1",
                    student_id="st1",
                    notified_at=notified_at,
                    expires_at=notified_at + timedelta(hours=24),
                )
            )

        assert db.query(EventOutbox).count() == 2

    def test_rollback_discards_event(self, db, publisher):
        publisher.publish(_created())
        db.rollback()

        assert db.query(EventOutbox).count() == 0


def test_registry_wildcard_and_unregister():
    registry = EventHandlerRegistry()
    seen = []

    def specific(event_type, payload):
        seen.append(("specific", event_type))

    def catch_all(event_type, payload):
        seen.append(("all", event_type))

    registry.register("booking.created", specific)
    registry.register("booking.created", specific)
    registry.register(ALL_EVENTS, catch_all)

    assert registry.handlers_for("booking.created") == [specific, catch_all]
    assert registry.handlers_for("session.cancelled") == [catch_all]

    registry.unregister("booking.created", specific)
    assert registry.handlers_for("booking.created") == [catch_all]


@pytest.mark.parametrize("attempt, expected", [(1, 30), (2, 120), (5, 7200), (9, 7200), (0, 30)])
def test_next_backoff(attempt, expected):
    assert next_backoff(attempt) == expected


class TestDispatcher:
    def _publish(self, db, booking_id="b1"):
        row = EventPublisher(EventOutboxRepository(db)).publish(_created(booking_id))
        db.commit()
        return row.id

    def test_delivers_to_handlers_and_marks_sent(self, db, session_factory):
        event_id = self._publish(db)
        received = []
        registry = EventHandlerRegistry()
        registry.register("booking.created", lambda t, p: received.append(p["booking_id"]))

        stats = OutboxDispatcher(session_factory, registry).dispatch_pending()

        assert (stats.sent, stats.retrying, stats.failed) == (1, 0, 0)
        assert received == ["b1"]
        db.expire_all()
        row = db.get(EventOutbox, event_id)
        assert row.status == EventOutboxStatus.SENT.value
        assert row.attempt_count == 1

    def test_handler_error_schedules_retry(self, db, session_factory):
        event_id = self._publish(db)
        registry = EventHandlerRegistry()

        def broken(event_type, payload):
            raise RuntimeError("calendar down")

        registry.register(ALL_EVENTS, broken)
        before = utc_now()

        stats = OutboxDispatcher(session_factory, registry, max_attempts=3).dispatch_pending()

        assert stats.retrying == 1
        db.expire_all()
        row = db.get(EventOutbox, event_id)
        assert row.status == EventOutboxStatus.PENDING.value
        assert row.attempt_count == 1
        assert row.last_error == "calendar down"
        assert ensure_utc(row.next_attempt_at) >= before + timedelta(seconds=30)
        # Not due yet, so a second pass delivers nothing
        assert OutboxDispatcher(session_factory, registry).dispatch_pending().processed == 0

    def test_last_attempt_marks_failed(self, db, session_factory):
        event_id = self._publish(db)
        registry = EventHandlerRegistry()

        def broken(event_type, payload):
            raise RuntimeError("still down")

        registry.register(ALL_EVENTS, broken)

        stats = OutboxDispatcher(session_factory, registry, max_attempts=1).dispatch_pending()

        assert stats.failed == 1
        db.expire_all()
        assert db.get(EventOutbox, event_id).status == EventOutboxStatus.FAILED.value

    def test_deliver_single_event(self, db, session_factory):
        event_id = self._publish(db)
        dispatcher = OutboxDispatcher(session_factory, EventHandlerRegistry())

        assert dispatcher.deliver(event_id) == "sent"
        assert dispatcher.deliver("missing") is None
