"""Unit tests for WaitlistService queueing and promotion."""

from datetime import timedelta

import pytest

from classbook.core.enums import PromotionOutcome, ServiceType
from classbook.core.exceptions import (
    DuplicateException,
    InsufficientCreditsException,
    NotFoundException,
    OwnershipException,
    SessionNotFullException,
    ValidationException,
)
from classbook.core.ulid_helper import generate_ulid
from classbook.models.booking import Booking, BookingStatus
from classbook.models.event_outbox import EventOutbox
from classbook.models.waitlist import WaitlistEntry
from classbook.services.booking_service import BookingService
from classbook.services.waitlist_service import WaitlistService


@pytest.fixture
def waitlist(db):
    return WaitlistService(db)


@pytest.fixture
def full_session(db, make_session, grant):
    """A one-seat group session already taken by someone else."""
    session = make_session(capacity_max=1, service_type=ServiceType.GROUP)
    holder = generate_ulid()
    grant(holder, service_type=ServiceType.GROUP)
    BookingService(db).create_booking(holder, session_id=session.id)
    return session


def _holder(db, session):
    return db.query(Booking).filter(Booking.session_id == session.id).one()


def _free_seat(db, session):
    _holder(db, session).status = BookingStatus.CANCELLED.value
    db.commit()


def _positions(db, session):
    entries = (
        db.query(WaitlistEntry)
        .filter(WaitlistEntry.session_id == session.id)
        .order_by(WaitlistEntry.position)
        .all()
    )
    return [(e.student_id, e.position) for e in entries]


class TestJoinAndLeave:
    def test_join_assigns_increasing_positions(self, db, waitlist, full_session):
        students = [generate_ulid() for _ in range(3)]

        entries = [waitlist.join(full_session.id, s) for s in students]

        assert [e.position for e in entries] == [1, 2, 3]

    def test_join_twice_rejected(self, waitlist, full_session, student_id):
        waitlist.join(full_session.id, student_id)

        with pytest.raises(DuplicateException):
            waitlist.join(full_session.id, student_id)

    def test_booked_student_cannot_join(self, db, waitlist, full_session):
        holder = _holder(db, full_session).student_id

        with pytest.raises(DuplicateException):
            waitlist.join(full_session.id, holder)

    def test_session_with_free_seats_rejected(self, waitlist, make_session, student_id):
        session = make_session(capacity_max=2, service_type=ServiceType.GROUP)

        with pytest.raises(SessionNotFullException):
            waitlist.join(session.id, student_id)

    def test_unknown_session(self, waitlist, student_id):
        with pytest.raises(NotFoundException):
            waitlist.join(generate_ulid(), student_id)

    def test_package_must_belong_to_student(self, waitlist, full_session, grant, student_id):
        foreign = grant(generate_ulid(), service_type=ServiceType.GROUP)

        with pytest.raises(NotFoundException):
            waitlist.join(full_session.id, student_id, package_id=foreign.id)

    def test_leave_renumbers_entries_behind(self, db, waitlist, full_session):
        a, b, c = (generate_ulid() for _ in range(3))
        waitlist.join(full_session.id, a)
        entry_b = waitlist.join(full_session.id, b)
        waitlist.join(full_session.id, c)

        waitlist.leave(entry_b.id, b)

        db.expire_all()
        assert _positions(db, full_session) == [(a, 1), (c, 2)]

    def test_leave_requires_ownership(self, waitlist, full_session, student_id):
        entry = waitlist.join(full_session.id, student_id)

        with pytest.raises(OwnershipException):
            waitlist.leave(entry.id, generate_ulid())

    def test_join_after_leave_goes_to_the_back(self, db, waitlist, full_session):
        a, b = generate_ulid(), generate_ulid()
        entry_a = waitlist.join(full_session.id, a)
        waitlist.join(full_session.id, b)
        waitlist.leave(entry_a.id, a)

        rejoined = waitlist.join(full_session.id, a)

        assert rejoined.position == 2


class TestDirectBooking:
    def test_direct_booking_removes_entry_and_closes_gap(self, db, waitlist, full_session, grant):
        a, b, c = (generate_ulid() for _ in range(3))
        grant(b, service_type=ServiceType.GROUP)
        for student in (a, b, c):
            waitlist.join(full_session.id, student)
        _free_seat(db, full_session)

        BookingService(db).create_booking(b, session_id=full_session.id)

        db.expire_all()
        assert _positions(db, full_session) == [(a, 1), (c, 2)]
        assert waitlist.get_student_waitlists(b) == []

    def test_cancelling_direct_booking_does_not_promote_same_student(
        self, db, waitlist, full_session, grant, default_policy
    ):
        queued, next_in_line = generate_ulid(), generate_ulid()
        grant(queued, service_type=ServiceType.GROUP)
        grant(next_in_line, service_type=ServiceType.GROUP)
        waitlist.join(full_session.id, queued)
        waitlist.join(full_session.id, next_in_line)
        _free_seat(db, full_session)
        bookings = BookingService(db)
        booking = bookings.create_booking(queued, session_id=full_session.id)

        result = bookings.cancel_booking(booking.booking_id, queued)

        assert result.promotion.outcome == PromotionOutcome.PROMOTED
        assert result.promotion.student_id == next_in_line
        assert bookings.get_student_bookings(queued) == []
        assert _positions(db, full_session) == []


class TestNotify:
    def test_notify_sets_window_and_publishes(self, db, waitlist, full_session, student_id, now):
        entry = waitlist.join(full_session.id, student_id)

        notified = waitlist.notify(entry.id, 6, as_of=now)

        assert notified.notification_expires_at == now + timedelta(hours=6)
        event = db.query(EventOutbox).filter(EventOutbox.event_type == "waitlist.notified").one()
        assert event.payload["entry_id"] == entry.id

    def test_notify_rejects_non_positive_window(self, waitlist, full_session, student_id):
        entry = waitlist.join(full_session.id, student_id)

        with pytest.raises(ValidationException):
            waitlist.notify(entry.id, 0)


class TestPromoteNext:
    def test_promotes_first_entry_and_leaves_gap(self, db, waitlist, full_session, grant):
        first, second = generate_ulid(), generate_ulid()
        grant(first, service_type=ServiceType.GROUP)
        grant(second, service_type=ServiceType.GROUP)
        waitlist.join(full_session.id, first)
        waitlist.join(full_session.id, second)
        _free_seat(db, full_session)

        result = waitlist.promote_next(full_session.id)

        assert result.outcome == PromotionOutcome.PROMOTED
        assert result.student_id == first
        assert result.booking.status == BookingStatus.CONFIRMED.value
        assert result.booking.seat_number == 1
        assert _positions(db, full_session) == [(second, 2)]
        assert db.query(EventOutbox).filter(EventOutbox.event_type == "waitlist.promoted").count() == 1

    def test_failure_keeps_entry_and_does_not_cascade(self, db, waitlist, full_session, grant):
        broke, funded = generate_ulid(), generate_ulid()
        grant(funded, service_type=ServiceType.GROUP)
        waitlist.join(full_session.id, broke)
        waitlist.join(full_session.id, funded)
        _free_seat(db, full_session)

        result = waitlist.promote_next(full_session.id)

        assert result.outcome == PromotionOutcome.FAILED
        assert result.student_id == broke
        assert result.error_code == "ALLOWANCE_NOT_ELIGIBLE"
        assert _positions(db, full_session) == [(broke, 1), (funded, 2)]
        assert db.query(Booking).filter(Booking.session_id == full_session.id, Booking.status == "CONFIRMED").count() == 0

    def test_expired_notification_is_skipped(self, db, waitlist, full_session, grant, now):
        lapsed, next_in_line = generate_ulid(), generate_ulid()
        grant(next_in_line, service_type=ServiceType.GROUP)
        entry = waitlist.join(full_session.id, lapsed)
        waitlist.join(full_session.id, next_in_line)
        waitlist.notify(entry.id, 1, as_of=now - timedelta(hours=2))
        _free_seat(db, full_session)

        result = waitlist.promote_next(full_session.id, as_of=now)

        assert result.student_id == next_in_line
        # Lapsed entries stay queued at their position
        assert _positions(db, full_session) == [(lapsed, 1)]

    def test_full_session_is_skipped(self, waitlist, full_session, student_id):
        waitlist.join(full_session.id, student_id)

        assert waitlist.promote_next(full_session.id).outcome == PromotionOutcome.SKIPPED

    def test_empty_queue(self, db, waitlist, full_session):
        _free_seat(db, full_session)

        assert waitlist.promote_next(full_session.id).outcome == PromotionOutcome.EMPTY


class TestPromoteEntry:
    def test_admin_promotes_out_of_order(self, db, waitlist, full_session, grant):
        first, chosen = generate_ulid(), generate_ulid()
        package = grant(chosen, service_type=ServiceType.GROUP)
        waitlist.join(full_session.id, first)
        entry = waitlist.join(full_session.id, chosen)
        _free_seat(db, full_session)

        result = waitlist.promote_entry(entry.id, package_id=package.id)

        assert result.student_id == chosen
        assert result.student_package_id == package.id
        assert _positions(db, full_session) == [(first, 1)]

    def test_admin_promotion_errors_propagate(self, db, waitlist, full_session, grant):
        student = generate_ulid()
        grant(student, service_type=ServiceType.GROUP, credits=1, credit_unit_minutes=30)
        entry = waitlist.join(full_session.id, student)
        _free_seat(db, full_session)

        with pytest.raises(InsufficientCreditsException):
            waitlist.promote_entry(entry.id)

        assert db.get(WaitlistEntry, entry.id) is not None


def test_listings(waitlist, full_session, make_session, student_id):
    waitlist.join(full_session.id, student_id)
    waitlist.join(full_session.id, generate_ulid())

    assert [e.position for e in waitlist.get_waitlist_for_session(full_session.id)] == [1, 2]
    mine = waitlist.get_student_waitlists(student_id)
    assert [(e.session_id, e.position) for e in mine] == [(full_session.id, 1)]

    with pytest.raises(NotFoundException):
        waitlist.get_waitlist_for_session(generate_ulid())
