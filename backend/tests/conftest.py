# backend/tests/conftest.py
"""
Pytest configuration for the classbook ledger.

Every test gets a fresh in-memory SQLite database with the full schema,
including the partial unique indexes that back the seat invariants.
Concurrency tests that need two connections use the file-backed
``file_engine`` fixture instead.
"""

import os

# Point the module-level engine at SQLite BEFORE any classbook import
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENVIRONMENT", "test")

from datetime import datetime, timedelta
from typing import Callable, Iterator, Optional

import pytest
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from classbook.core.enums import ServiceType
from classbook.core.timezone_utils import utc_now
from classbook.core.ulid_helper import generate_ulid
from classbook.database import Base, build_engine
import classbook.models  # noqa: F401 - populate metadata
from classbook.models.class_session import ClassSession, SessionStatus
from classbook.models.package import StudentPackage
from classbook.schemas.cancellation import CancellationPolicyConfig
from classbook.schemas.package import AllowanceSpec
from classbook.services.cancellation_policy import CancellationPolicyService
from classbook.services.entitlement_ledger import EntitlementLedger


def _make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def engine() -> Iterator[Engine]:
    test_engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    Base.metadata.drop_all(bind=test_engine)
    test_engine.dispose()


@pytest.fixture
def session_factory(engine: Engine) -> sessionmaker:
    return _make_session_factory(engine)


@pytest.fixture
def db(session_factory: sessionmaker) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def file_engine(tmp_path) -> Iterator[Engine]:
    """File-backed SQLite so two Sessions really use two connections."""
    test_engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(bind=test_engine)
    yield test_engine
    test_engine.dispose()


@pytest.fixture
def now() -> datetime:
    return utc_now().replace(microsecond=0)


@pytest.fixture
def teacher_id() -> str:
    return generate_ulid()


@pytest.fixture
def student_id() -> str:
    return generate_ulid()


@pytest.fixture
def make_session(db: Session, now: datetime, teacher_id: str) -> Callable[..., ClassSession]:
    """Create and commit a scheduled session starting ``hours_ahead`` from now."""

    def _make(
        *,
        hours_ahead: float = 48,
        duration_minutes: int = 60,
        capacity_max: int = 1,
        service_type: ServiceType = ServiceType.PRIVATE,
        teacher_tier: int = 0,
        teacher: Optional[str] = None,
        status: SessionStatus = SessionStatus.SCHEDULED,
    ) -> ClassSession:
        start = now + timedelta(hours=hours_ahead)
        session = ClassSession(
            teacher_id=teacher or teacher_id,
            service_type=service_type.value,
            teacher_tier=teacher_tier,
            start_at=start,
            end_at=start + timedelta(minutes=duration_minutes),
            capacity_max=capacity_max,
            status=status.value,
        )
        db.add(session)
        db.commit()
        return session

    return _make


@pytest.fixture
def grant(db: Session) -> Callable[..., StudentPackage]:
    """Grant a single-allowance package and return it."""

    def _grant(
        student: str,
        *,
        credits: int = 5,
        service_type: ServiceType = ServiceType.PRIVATE,
        teacher_tier: int = 0,
        credit_unit_minutes: int = 60,
        expires_at: Optional[datetime] = None,
        purchased_at: Optional[datetime] = None,
    ) -> StudentPackage:
        return EntitlementLedger(db).grant_package(
            student,
            [
                AllowanceSpec(
                    service_type=service_type,
                    teacher_tier=teacher_tier,
                    credit_unit_minutes=credit_unit_minutes,
                    credits=credits,
                )
            ],
            source_payment_ref=f"pi_{generate_ulid()}",
            expires_at=expires_at,
            purchased_at=purchased_at,
        )

    return _grant


@pytest.fixture
def set_policy(db: Session) -> Callable[..., object]:
    def _set(**overrides):
        config = CancellationPolicyConfig(**{"policy_name": "Test policy", **overrides})
        return CancellationPolicyService(db).set_active(config)

    return _set


@pytest.fixture
def default_policy(set_policy):
    return set_policy()
