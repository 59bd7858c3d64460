"""
Races between two connections on a file-backed database.

SQLite serialises writers, so each race is staged: the second transaction
reads, the first commits, then the second writes on its stale read. The
constraint and guarded-update paths must reject the loser.
"""

from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from classbook.core.enums import ServiceType
from classbook.core.exceptions import (
    InsufficientCreditsException,
    PolicyDeniedException,
    SessionFullException,
)
from classbook.core.ulid_helper import generate_ulid
from classbook.models.booking import ACTIVE_BOOKING_STATUSES, Booking
from classbook.models.class_session import ClassSession
from classbook.models.package import PackageUse
from classbook.repositories.booking_repository import BookingRepository
from classbook.schemas.cancellation import CancellationPolicyConfig
from classbook.schemas.package import AllowanceSpec
from classbook.services.booking_service import BookingService
from classbook.services.cancellation_policy import CancellationPolicyService
from classbook.services.entitlement_ledger import EntitlementLedger


@pytest.fixture
def factory(file_engine) -> sessionmaker:
    return sessionmaker(bind=file_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def sessions(factory):
    first, second = factory(), factory()
    yield first, second
    first.close()
    second.close()


def _seed_session(factory, now, capacity_max=1, hours_ahead=48):
    start = now + timedelta(hours=hours_ahead)
    with factory() as setup:
        session = ClassSession(
            teacher_id=generate_ulid(),
            service_type=ServiceType.PRIVATE.value,
            teacher_tier=0,
            start_at=start,
            end_at=start + timedelta(hours=1),
            capacity_max=capacity_max,
        )
        setup.add(session)
        setup.commit()
        return session.id


def _seed_package(factory, student, credits):
    with factory() as setup:
        package = EntitlementLedger(setup).grant_package(
            student,
            [AllowanceSpec(service_type=ServiceType.PRIVATE, credits=credits)],
            source_payment_ref=f"pi_{generate_ulid()}",
        )
        return package.id, package.allowances[0].id


def test_two_students_racing_for_last_seat(monkeypatch, factory, sessions, now):
    session_id = _seed_session(factory, now, capacity_max=1)
    winner, loser = generate_ulid(), generate_ulid()
    _seed_package(factory, winner, 2)
    _, loser_allowance = _seed_package(factory, loser, 2)
    first, second = sessions

    BookingService(first).create_booking(winner, session_id=session_id)

    # The loser read the seat map before the winner committed
    monkeypatch.setattr(BookingRepository, "get_taken_seats", lambda self, sid: set())
    with pytest.raises(SessionFullException):
        BookingService(second).create_booking(loser, session_id=session_id)

    with factory() as check:
        active = (
            check.query(Booking)
            .filter(Booking.session_id == session_id, Booking.status.in_(ACTIVE_BOOKING_STATUSES))
            .all()
        )
        assert [b.student_id for b in active] == [winner]
        assert EntitlementLedger(check).remaining_credits(loser_allowance) == 2
        assert check.query(PackageUse).count() == 1


def test_two_consumers_racing_for_last_credit(factory, sessions):
    student = generate_ulid()
    package_id, allowance_id = _seed_package(factory, student, 1)
    first, second = sessions
    first_ledger, second_ledger = EntitlementLedger(first), EntitlementLedger(second)

    # Both see one credit left
    assert first_ledger.remaining_credits(allowance_id) == 1
    assert second_ledger.remaining_credits(allowance_id) == 1

    first_ledger.consume(package_id, allowance_id, generate_ulid(), 1, student)
    with pytest.raises(InsufficientCreditsException):
        second_ledger.consume(package_id, allowance_id, generate_ulid(), 1, student)

    with factory() as check:
        ledger = EntitlementLedger(check)
        assert ledger.remaining_credits(allowance_id) == 0
        assert ledger.reconcile_allowance(allowance_id) is True
        assert check.query(PackageUse).count() == 1


def test_two_bookings_racing_for_last_credit(factory, sessions, now):
    student = generate_ulid()
    _, allowance_id = _seed_package(factory, student, 1)
    morning = _seed_session(factory, now, hours_ahead=48)
    evening = _seed_session(factory, now, hours_ahead=56)
    first, second = sessions

    # The second request resolves its allowance before the first commits
    candidate = EntitlementLedger(second).resolve_allowance(student, second.get(ClassSession, evening))
    assert candidate.sufficient

    BookingService(first).create_booking(student, session_id=morning)
    with pytest.raises(InsufficientCreditsException):
        BookingService(second).create_booking(student, session_id=evening)

    with factory() as check:
        assert check.query(Booking).filter(Booking.student_id == student).count() == 1
        assert EntitlementLedger(check).remaining_credits(allowance_id) == 0


def test_cancel_sees_cancellation_committed_elsewhere(factory, sessions, now):
    student = generate_ulid()
    _, allowance_id = _seed_package(factory, student, 2)
    session_id = _seed_session(factory, now)
    with factory() as setup:
        CancellationPolicyService(setup).set_active(CancellationPolicyConfig(policy_name="Standard"))
    first, second = sessions

    booking = BookingService(first).create_booking(student, session_id=session_id)
    # Cached in the first session's identity map as CONFIRMED
    assert BookingRepository(first).get_with_session(booking.booking_id).is_active()

    BookingService(second).cancel_booking(booking.booking_id, student)

    with pytest.raises(PolicyDeniedException) as exc_info:
        BookingService(first).cancel_booking(booking.booking_id, student)

    assert exc_info.value.reason == "booking-not-active"
    with factory() as check:
        assert EntitlementLedger(check).remaining_credits(allowance_id) == 2
