"""
classbook - booking and entitlement ledger for a class-booking platform.

Prevents double-booking of teachers and students, tracks package credits,
consumes and refunds them with bookings, enforces the cancellation policy
and promotes waitlisted students into freed seats.
"""

__version__ = "1.0.0"
