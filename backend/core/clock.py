"""
backend/core/clock.py

Authoritative time source. Every expiry and period comparison in the engines
is made against a `now` threaded in from here, never from a client clock.
"""

from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol


def utc_now() -> datetime:
    """Timezone-aware UTC now."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Normalize to aware UTC (naive values are read as UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def month_start(value: datetime) -> datetime:
    """Start of the calendar month (UTC) containing `value`."""
    current = ensure_utc(value)
    return datetime(current.year, current.month, 1, tzinfo=timezone.utc)


def next_month_start(value: datetime) -> datetime:
    """Start of the calendar month (UTC) after the one containing `value`."""
    start = month_start(value)
    if start.month == 12:
        return start.replace(year=start.year + 1, month=1)
    return start.replace(month=start.month + 1)


class Clock(Protocol):
    def now(self) -> datetime:
        ...


class SystemClock:
    def now(self) -> datetime:
        return utc_now()


class FixedClock:
    """Settable clock for tests and replays."""

    def __init__(self, start: Optional[datetime] = None):
        self._now = ensure_utc(start) if start else utc_now()

    def now(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = ensure_utc(value)

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency / module accessor for the process clock."""
    return _clock


def set_clock(clock: Clock) -> None:
    global _clock
    _clock = clock


def reset_clock() -> None:
    set_clock(SystemClock())
