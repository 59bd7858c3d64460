"""Unit tests for EntitlementLedger: grants, selection, consume and refund."""

from datetime import timedelta

import pytest
from sqlalchemy import update

from classbook.core.enums import ServiceType
from classbook.core.exceptions import (
    AllowanceNotEligibleException,
    AlreadyVoidedException,
    CrossTierConfirmationRequiredException,
    DuplicateException,
    InsufficientCreditsException,
    NotFoundException,
    OwnershipException,
    PackageExpiredException,
    ValidationException,
)
from classbook.core.ulid_helper import generate_ulid
from classbook.models.event_outbox import EventOutbox
from classbook.models.package import PackageAllowance, PackageUse
from classbook.schemas.package import AllowanceSpec
from classbook.services.allowance_selection import TierMatch
from classbook.services.entitlement_ledger import EntitlementLedger


@pytest.fixture
def ledger(db):
    return EntitlementLedger(db)


def _allowance(package):
    return package.allowances[0]


class TestGrantPackage:
    def test_grant_creates_allowances_and_event(self, db, ledger, student_id):
        package = ledger.grant_package(
            student_id,
            [
                AllowanceSpec(service_type=ServiceType.PRIVATE, teacher_tier=2, credits=4),
                AllowanceSpec(service_type=ServiceType.GROUP, credits=10, credit_unit_minutes=30),
            ],
            source_payment_ref="pi_bundle",
            package_name="Mixed bundle",
        )

        assert package.package_name == "Mixed bundle"
        assert {a.service_type for a in package.allowances} == {"PRIVATE", "GROUP"}
        assert all(a.credits_consumed == 0 for a in package.allowances)

        event = db.query(EventOutbox).filter(EventOutbox.aggregate_id == package.id).one()
        assert event.event_type == "package.granted"
        assert event.payload["total_credits"] == 14
        assert event.payload["source_payment_ref"] == "pi_bundle"

    def test_grant_is_idempotent_on_payment_ref(self, db, ledger, student_id):
        specs = [AllowanceSpec(service_type=ServiceType.PRIVATE, credits=3)]

        first = ledger.grant_package(student_id, specs, source_payment_ref="pi_same")
        second = ledger.grant_package(student_id, specs, source_payment_ref="pi_same")

        assert first.id == second.id
        assert db.query(PackageAllowance).count() == 1

    def test_grant_to_other_student_with_same_ref_rejected(self, ledger, student_id):
        specs = [AllowanceSpec(service_type=ServiceType.PRIVATE, credits=3)]
        ledger.grant_package(student_id, specs, source_payment_ref="pi_taken")

        with pytest.raises(DuplicateException):
            ledger.grant_package(generate_ulid(), specs, source_payment_ref="pi_taken")

    def test_grant_requires_allowances_and_ref(self, ledger, student_id):
        with pytest.raises(ValidationException):
            ledger.grant_package(student_id, [], source_payment_ref="pi_empty")
        with pytest.raises(ValidationException):
            ledger.grant_package(
                student_id, [AllowanceSpec(service_type=ServiceType.PRIVATE, credits=1)], ""
            )

    def test_allowance_spec_rejects_unknown_credit_unit(self):
        with pytest.raises(ValueError):
            AllowanceSpec(service_type=ServiceType.PRIVATE, credits=1, credit_unit_minutes=20)


class TestResolveAllowance:
    def test_exact_tier_preferred_over_any_tier(self, ledger, grant, make_session, student_id):
        grant(student_id, teacher_tier=0, credits=5)
        exact = grant(student_id, teacher_tier=2, credits=5)
        session = make_session(teacher_tier=2)

        candidate = ledger.resolve_allowance(student_id, session)

        assert candidate.allowance.id == _allowance(exact).id
        assert candidate.match == TierMatch.EXACT

    def test_soonest_expiring_package_spent_first(self, ledger, grant, make_session, student_id, now):
        grant(student_id, expires_at=now + timedelta(days=60))
        soon = grant(student_id, expires_at=now + timedelta(days=5))
        session = make_session()

        candidate = ledger.resolve_allowance(student_id, session, as_of=now)

        assert candidate.allowance.id == _allowance(soon).id

    def test_expired_packages_are_skipped(self, ledger, grant, make_session, student_id, now):
        grant(student_id, expires_at=now - timedelta(days=1))
        session = make_session()

        with pytest.raises(AllowanceNotEligibleException):
            ledger.resolve_allowance(student_id, session, as_of=now)

    def test_explicit_expired_package_raises(self, ledger, grant, make_session, student_id, now):
        expired = grant(student_id, expires_at=now - timedelta(days=1))
        session = make_session()

        with pytest.raises(PackageExpiredException):
            ledger.resolve_allowance(student_id, session, package_id=expired.id, as_of=now)

    def test_no_package_covers_service_type(self, ledger, grant, make_session, student_id):
        grant(student_id, service_type=ServiceType.GROUP)
        session = make_session(service_type=ServiceType.PRIVATE)

        with pytest.raises(AllowanceNotEligibleException):
            ledger.resolve_allowance(student_id, session)

    def test_exhausted_allowance_raises_insufficient(self, ledger, grant, make_session, student_id):
        package = grant(student_id, credits=1)
        session = make_session(duration_minutes=90)

        with pytest.raises(InsufficientCreditsException) as exc_info:
            ledger.resolve_allowance(student_id, session)

        assert exc_info.value.details == {
            "required": 2,
            "available": 1,
            "allowance_id": _allowance(package).id,
        }

    def test_higher_tier_within_chosen_package_needs_confirmation(
        self, ledger, grant, make_session, student_id
    ):
        premium = grant(student_id, teacher_tier=3)
        session = make_session(teacher_tier=1)

        with pytest.raises(CrossTierConfirmationRequiredException):
            ledger.resolve_allowance(student_id, session, package_id=premium.id)

        candidate = ledger.resolve_allowance(
            student_id, session, package_id=premium.id, confirm_cross_tier=True
        )
        assert candidate.match == TierMatch.HIGHER_TIER

    def test_higher_tier_never_chosen_automatically(self, ledger, grant, make_session, student_id):
        grant(student_id, teacher_tier=3)
        session = make_session(teacher_tier=1)

        with pytest.raises(AllowanceNotEligibleException):
            ledger.resolve_allowance(student_id, session, confirm_cross_tier=True)

    def test_explicit_lower_tier_allowance_rejected(self, ledger, grant, make_session, student_id):
        basic = grant(student_id, teacher_tier=1)
        session = make_session(teacher_tier=2)

        with pytest.raises(AllowanceNotEligibleException):
            ledger.resolve_allowance(student_id, session, allowance_id=_allowance(basic).id)

    def test_explicit_allowance_of_other_student(self, ledger, grant, make_session, student_id):
        other = grant(generate_ulid())
        session = make_session()

        with pytest.raises(OwnershipException):
            ledger.resolve_allowance(student_id, session, allowance_id=_allowance(other).id)

    def test_unknown_package(self, ledger, make_session, student_id):
        with pytest.raises(NotFoundException):
            ledger.resolve_allowance(student_id, make_session(), package_id=generate_ulid())


class TestConsumeAndRefund:
    def test_consume_appends_use_and_reduces_remaining(self, db, ledger, grant, student_id):
        package = grant(student_id, credits=3)
        allowance = _allowance(package)

        use = ledger.consume(package.id, allowance.id, generate_ulid(), 2, student_id)

        assert use.credits_used == 2
        assert use.voided_at is None
        assert ledger.remaining_credits(allowance.id) == 1
        assert ledger.reconcile_allowance(allowance.id) is True

    def test_consume_more_than_remaining_writes_nothing(self, db, ledger, grant, student_id):
        package = grant(student_id, credits=1)
        allowance = _allowance(package)

        with pytest.raises(InsufficientCreditsException):
            ledger.consume(package.id, allowance.id, generate_ulid(), 2, student_id)

        assert db.query(PackageUse).count() == 0
        assert ledger.remaining_credits(allowance.id) == 1
        assert ledger.reconcile_allowance(allowance.id) is True

    def test_consume_rejects_non_positive_credits(self, ledger, grant, student_id):
        package = grant(student_id)

        with pytest.raises(ValidationException):
            ledger.consume(package.id, _allowance(package).id, None, 0, student_id)

    def test_consume_with_mismatched_package(self, ledger, grant, student_id):
        first = grant(student_id)
        second = grant(student_id)

        with pytest.raises(AllowanceNotEligibleException):
            ledger.consume(second.id, _allowance(first).id, None, 1, student_id)

    def test_consume_from_expired_package(self, ledger, grant, student_id, now):
        package = grant(student_id, expires_at=now - timedelta(hours=1))

        with pytest.raises(PackageExpiredException):
            ledger.consume(package.id, _allowance(package).id, None, 1, student_id, as_of=now)

    def test_refund_voids_and_is_idempotent(self, db, ledger, grant, student_id):
        package = grant(student_id, credits=2)
        allowance = _allowance(package)
        use = ledger.consume(package.id, allowance.id, generate_ulid(), 2, student_id)
        assert ledger.remaining_credits(allowance.id) == 0

        assert ledger.refund(use.id, student_id, "changed plans") == 2
        assert ledger.refund(use.id, student_id, "changed plans") == 0

        db.refresh(use)
        assert use.voided_at is not None
        assert use.void_reason == "changed plans"
        assert ledger.remaining_credits(allowance.id) == 2
        assert ledger.reconcile_allowance(allowance.id) is True
        # Void style: no reversal rows
        assert db.query(PackageUse).count() == 1

    def test_void_use_twice_raises(self, ledger, grant, student_id):
        package = grant(student_id)
        use = ledger.consume(package.id, _allowance(package).id, None, 1, student_id)
        ledger.void_use(use, student_id, None)

        with pytest.raises(AlreadyVoidedException):
            ledger.void_use(use, student_id, None)

    def test_refund_unknown_use(self, ledger):
        with pytest.raises(NotFoundException):
            ledger.refund(generate_ulid(), None)

    def test_reconcile_detects_counter_drift(self, db, ledger, grant, student_id):
        package = grant(student_id, credits=5)
        allowance = _allowance(package)
        ledger.consume(package.id, allowance.id, None, 1, student_id)
        db.execute(
            update(PackageAllowance)
            .where(PackageAllowance.id == allowance.id)
            .values(credits_consumed=3)
        )
        db.commit()

        assert ledger.reconcile_allowance(allowance.id) is False


def test_get_student_packages_reports_balances(ledger, grant, student_id, now):
    active = grant(student_id, credits=4)
    grant(student_id, credits=2, expires_at=now - timedelta(days=1))
    ledger.consume(active.id, _allowance(active).id, None, 1, student_id)

    balances = {b.package_id: b for b in ledger.get_student_packages(student_id, as_of=now)}

    assert balances[active.id].total_remaining_credits == 3
    assert balances[active.id].is_expired is False
    assert sum(1 for b in balances.values() if b.is_expired) == 1
