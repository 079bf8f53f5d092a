"""
Injectable time source for circulation.

Due dates, overdue detection and fine amounts all depend on "now". Components
never call datetime.now() directly; they ask the Clock they were given, so
tests can move time forward by whole days.

Datetimes are naive UTC, matching what the DateTime columns store.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime:
        """Return the current naive-UTC time."""
        ...  # pragma: no cover


class SystemClock:
    """Production clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """
    Test clock that only moves when told to.

    Usage:
        clock = FixedClock(datetime(2025, 1, 1))
        clock.advance(days=20)
    """

    def __init__(self, fixed_dt: datetime) -> None:
        if fixed_dt.tzinfo is not None:
            fixed_dt = fixed_dt.astimezone(timezone.utc).replace(tzinfo=None)
        self._fixed_dt = fixed_dt

    def now(self) -> datetime:
        return self._fixed_dt

    def set(self, dt: datetime) -> None:
        self._fixed_dt = dt

    def advance(self, days: float = 0, hours: float = 0, seconds: float = 0) -> None:
        self._fixed_dt = self._fixed_dt + timedelta(days=days, hours=hours, seconds=seconds)


_default_clock: Clock = SystemClock()


def get_clock() -> Clock:
    """FastAPI dependency; tests override it with a FixedClock."""
    return _default_clock
