"""
Timezone utilities for the booking ledger.

All instants are stored and compared in UTC.
"""

from datetime import datetime, timezone


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    """
    Normalise a datetime to aware UTC.

    SQLite hands back naive datetimes even for DateTime(timezone=True) columns;
    those are stored as UTC so we only attach the zone.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def hours_between(earlier: datetime, later: datetime) -> float:
    """Signed number of hours from ``earlier`` to ``later``."""
    delta = ensure_utc(later) - ensure_utc(earlier)
    return delta.total_seconds() / 3600
