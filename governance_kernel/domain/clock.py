"""
Injectable time source.

Every timestamp the governance core writes (instance, stage and task
creation, decisions, SLA due dates, lifecycle events) comes from the Clock
a service was constructed with.  ``SystemClock`` is the only place that
reads wall-clock time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

DEFAULT_TEST_EPOCH = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class Clock(ABC):
    """Returns timezone-aware UTC datetimes."""

    @abstractmethod
    def now(self) -> datetime: ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Frozen clock for tests.

    Time stands still until ``advance`` moves it.
    """

    def __init__(self, start: datetime | None = None):
        self._current = start or DEFAULT_TEST_EPOCH
        if self._current.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")

    def now(self) -> datetime:
        return self._current

    def advance(self, **delta: float) -> datetime:
        """Move forward by ``timedelta(**delta)``; returns the new time."""
        self._current += timedelta(**delta)
        return self._current
