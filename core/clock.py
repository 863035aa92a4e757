"""
core/clock.py -- Injected time source.

Token validation and login stamping never call datetime.now() themselves.
They take a Clock so tests can pin "now" to an exact instant and step it
forward (T0 + 4 minutes, T0 + 6 minutes) without sleeping.

All datetimes are timezone-aware UTC.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Protocol


class Clock(Protocol):
    def now(self) -> datetime: ...


class SystemClock:
    """Wall clock. The only place in the project that reads OS time for the core."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class FrozenClock:
    """Manually driven clock for tests and replay tooling.

    Usage:
        clock = FrozenClock(datetime(2026, 1, 1, tzinfo=timezone.utc))
        clock.advance(minutes=4)
    """

    def __init__(self, start: datetime | None = None) -> None:
        start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("FrozenClock requires a timezone-aware datetime")
        self._now = start.astimezone(timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def set(self, value: datetime) -> None:
        if value.tzinfo is None:
            raise ValueError("FrozenClock requires a timezone-aware datetime")
        with self._lock:
            self._now = value.astimezone(timezone.utc)

    def advance(self, **kwargs) -> datetime:
        """Move forward by timedelta(**kwargs) and return the new instant."""
        with self._lock:
            self._now = self._now + timedelta(**kwargs)
            return self._now
