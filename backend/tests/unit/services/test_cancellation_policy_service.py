"""Unit tests for the versioned cancellation policy store."""

import pytest

from classbook.core.exceptions import NotFoundException
from classbook.models.cancellation_policy import CancellationPolicy
from classbook.schemas.cancellation import CancellationPolicyConfig
from classbook.services.cancellation_policy import CancellationPolicyService


@pytest.fixture
def policies(db):
    return CancellationPolicyService(db)


def test_get_active_without_policy_raises(policies):
    with pytest.raises(NotFoundException):
        policies.get_active()


def test_set_active_supersedes_previous(db, policies):
    first = policies.set_active(CancellationPolicyConfig(policy_name="v1"))
    second = policies.set_active(
        CancellationPolicyConfig(policy_name="v2", cancellation_deadline_hours=48), actor_id="admin"
    )

    db.expire_all()
    assert policies.get_active().id == second.id
    assert db.get(CancellationPolicy, first.id).is_active is False
    assert db.get(CancellationPolicy, first.id).superseded_at is not None
    assert db.get(CancellationPolicy, second.id).created_by == "admin"
    assert [p.policy_name for p in policies.list_policies()] == ["v2", "v1"]


def test_exactly_one_active_after_many_updates(db, policies):
    for hours in (12, 24, 36):
        policies.set_active(CancellationPolicyConfig(cancellation_deadline_hours=hours))

    active = db.query(CancellationPolicy).filter(CancellationPolicy.is_active.is_(True)).all()
    assert [p.cancellation_deadline_hours for p in active] == [36]
    assert db.query(CancellationPolicy).count() == 3


def test_ensure_active_policy_seeds_once(db, policies):
    seeded = policies.ensure_active_policy()
    again = policies.ensure_active_policy()

    assert seeded.id == again.id
    assert db.query(CancellationPolicy).count() == 1


def test_config_bounds():
    with pytest.raises(ValueError):
        CancellationPolicyConfig(cancellation_deadline_hours=-1)
    with pytest.raises(ValueError):
        CancellationPolicyConfig(max_reschedules_per_booking=11)
