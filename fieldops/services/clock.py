"""
Clock source.
Every component reads the current time through a Clock so that tests can
pin or advance it. All values are timezone-aware UTC datetimes.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional


class Clock:
    def now(self) -> datetime:
        raise NotImplementedError


class SystemClock(Clock):
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FixedClock(Clock):
    """
    Clock frozen at a given instant until moved with set() or advance().
    Naive datetimes are taken as UTC.
    """

    def __init__(self, at: Optional[datetime] = None):
        self._now = _as_utc(at or datetime.now(timezone.utc))

    def now(self) -> datetime:
        return self._now

    def set(self, at: datetime) -> None:
        self._now = _as_utc(at)

    def advance(self, **delta) -> datetime:
        self._now = self._now + timedelta(**delta)
        return self._now


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


_system_clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency; overridden in tests."""
    return _system_clock
