"""
Database models for the classbook booking ledger.

- ClassSession: scheduled time blocks with seat capacity
- Booking: a student's seat in a session
- StudentPackage / PackageAllowance / PackageUse: entitlements and the usage ledger
- WaitlistEntry: queue for full sessions
- CancellationPolicy: versioned modification rules
- EventOutbox: commit-time lifecycle events
"""

from .booking import ACTIVE_BOOKING_STATUSES, Booking, BookingStatus
from .cancellation_policy import CancellationPolicy
from .class_session import ClassSession, SessionStatus
from .event_outbox import EventOutbox, EventOutboxStatus
from .package import PackageAllowance, PackageUse, StudentPackage
from .waitlist import WaitlistEntry

__all__ = [
    "ACTIVE_BOOKING_STATUSES",
    "Booking",
    "BookingStatus",
    "CancellationPolicy",
    "ClassSession",
    "EventOutbox",
    "EventOutboxStatus",
    "PackageAllowance",
    "PackageUse",
    "SessionStatus",
    "StudentPackage",
    "WaitlistEntry",
]
