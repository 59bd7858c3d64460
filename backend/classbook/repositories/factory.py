# backend/classbook/repositories/factory.py
"""
Repository Factory for the classbook ledger

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from typing import TYPE_CHECKING

from sqlalchemy.orm import Session

from .base_repository import BaseRepository

# Avoid circular imports
if TYPE_CHECKING:
    from .booking_repository import BookingRepository
    from .cancellation_policy_repository import CancellationPolicyRepository
    from .class_session_repository import ClassSessionRepository
    from .conflict_checker_repository import ConflictCheckerRepository
    from .event_outbox_repository import EventOutboxRepository
    from .package_repository import PackageRepository
    from .waitlist_repository import WaitlistRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation to ensure consistent initialization
    and makes it easy to swap implementations in tests.
    """

    @staticmethod
    def create_base_repository(db: Session, model) -> BaseRepository:
        """Create a generic base repository for any model."""
        return BaseRepository(db, model)

    @staticmethod
    def create_class_session_repository(db: Session) -> "ClassSessionRepository":
        """Create repository for class sessions."""
        from .class_session_repository import ClassSessionRepository

        return ClassSessionRepository(db)

    @staticmethod
    def create_conflict_checker_repository(db: Session) -> "ConflictCheckerRepository":
        """Create repository for conflict checking queries."""
        from .conflict_checker_repository import ConflictCheckerRepository

        return ConflictCheckerRepository(db)

    @staticmethod
    def create_booking_repository(db: Session) -> "BookingRepository":
        """Create repository for booking operations."""
        from .booking_repository import BookingRepository

        return BookingRepository(db)

    @staticmethod
    def create_package_repository(db: Session) -> "PackageRepository":
        """Create repository for packages, allowances and the usage ledger."""
        from .package_repository import PackageRepository

        return PackageRepository(db)

    @staticmethod
    def create_waitlist_repository(db: Session) -> "WaitlistRepository":
        from .waitlist_repository import WaitlistRepository

        return WaitlistRepository(db)

    @staticmethod
    def create_cancellation_policy_repository(db: Session) -> "CancellationPolicyRepository":
        from .cancellation_policy_repository import CancellationPolicyRepository

        return CancellationPolicyRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> "EventOutboxRepository":
        """Create repository for the event outbox."""
        from .event_outbox_repository import EventOutboxRepository

        return EventOutboxRepository(db)
