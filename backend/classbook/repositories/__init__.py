# backend/classbook/repositories/__init__.py
"""
Repository layer for the classbook ledger.

Repositories own queries and row locks; they flush but never commit.

Usage:
    from classbook.repositories import RepositoryFactory

    repository = RepositoryFactory.create_package_repository(db)
    allowances = repository.find_candidate_allowances(...)
"""

from .base_repository import BaseRepository, IRepository
from .booking_repository import BookingRepository
from .cancellation_policy_repository import CancellationPolicyRepository
from .class_session_repository import ClassSessionRepository
from .conflict_checker_repository import ConflictCheckerRepository
from .event_outbox_repository import EventOutboxRepository
from .factory import RepositoryFactory
from .package_repository import PackageRepository
from .waitlist_repository import WaitlistRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "CancellationPolicyRepository",
    "ClassSessionRepository",
    "ConflictCheckerRepository",
    "EventOutboxRepository",
    "IRepository",
    "PackageRepository",
    "RepositoryFactory",
    "WaitlistRepository",
]
