"""Booking lifecycle events and their outbox delivery."""

from classbook.events.booking_events import (
    BookingCancelled,
    BookingCreated,
    PackageGranted,
    SessionCancelled,
    SessionRescheduled,
    SessionScheduled,
    WaitlistNotified,
    WaitlistPromoted,
)
from classbook.events.handlers import (
    DispatchStats,
    EventHandlerRegistry,
    OutboxDispatcher,
    default_registry,
)
from classbook.events.publisher import EventPublisher

__all__ = [
    "BookingCancelled",
    "BookingCreated",
    "DispatchStats",
    "EventHandlerRegistry",
    "EventPublisher",
    "OutboxDispatcher",
    "PackageGranted",
    "SessionCancelled",
    "SessionRescheduled",
    "SessionScheduled",
    "WaitlistNotified",
    "WaitlistPromoted",
    "default_registry",
]
