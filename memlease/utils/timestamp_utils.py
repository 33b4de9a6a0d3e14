"""
Timestamp utilities for consistent time handling across the system.

All datetimes handed to the relational store and the ledger are naive UTC.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an aware datetime to naive UTC; naive values are assumed UTC already."""
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def seconds_until(moment: datetime, now: Optional[datetime] = None) -> int:
    """Whole seconds from now until moment, floored at zero."""
    now = now or utc_now()
    return max(0, int((to_naive_utc(moment) - now).total_seconds()))


def to_iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return to_naive_utc(value).isoformat()


def from_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    return to_naive_utc(datetime.fromisoformat(value))
