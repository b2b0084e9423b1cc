"""Clocks. Background tasks read time only through a Clock so tests can drive them."""

import threading
from datetime import datetime, timedelta, timezone


class Clock:
    """Wall clock."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class SystemClock(Clock):
    pass


class ManualClock(Clock):
    """Virtual clock that only moves when advanced."""

    def __init__(self, start: datetime | None = None):
        self._now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def advance(self, delta: timedelta | float) -> datetime:
        if not isinstance(delta, timedelta):
            delta = timedelta(seconds=delta)
        with self._lock:
            self._now += delta
            return self._now

    def set(self, when: datetime) -> None:
        with self._lock:
            self._now = when
