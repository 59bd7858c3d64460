# backend/classbook/core/enums.py
"""
Core enums shared by the booking ledger models and services.
"""

from enum import Enum


class ServiceType(str, Enum):
    """Kind of class a session delivers and an allowance pays for."""

    PRIVATE = "PRIVATE"
    GROUP = "GROUP"
    COURSE = "COURSE"


class PolicyDenialReason(str, Enum):
    """Machine-readable reasons a booking modification is refused."""

    CANCELLATION_DISABLED = "cancellation-disabled"
    RESCHEDULING_DISABLED = "rescheduling-disabled"
    PAST_DEADLINE = "past-deadline"
    RESCHEDULE_LIMIT_REACHED = "reschedule-limit-reached"
    BOOKING_NOT_ACTIVE = "booking-not-active"


class PromotionOutcome(str, Enum):
    """Result of a single waitlist promotion attempt."""

    PROMOTED = "promoted"
    EMPTY = "empty"
    FAILED = "failed"
    SKIPPED = "skipped"


ANY_TEACHER_TIER = 0
CREDIT_UNIT_MINUTES = (15, 30, 45, 60)
