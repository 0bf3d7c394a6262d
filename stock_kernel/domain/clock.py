"""
Injected time source.

The router stamps registrations and outcomes, the worker schedules retries
and audits default their timestamp, all through a ``Clock`` handed to them
at construction.  ``SystemClock`` is the only place that reads wall time.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """Source of the current time as an aware UTC datetime."""

    @abstractmethod
    def now(self) -> datetime: ...


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Clock that only moves when told to.

    Guarantees:
        - ``now()`` is stable between calls to ``advance``.
        - Rejects a naive start time, so every reading is comparable with
          stored timestamps.
    """

    def __init__(self, start: datetime | None = None):
        start = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)
        if start.tzinfo is None:
            raise ValueError("DeterministicClock needs a timezone-aware start time")
        self._current = start.astimezone(timezone.utc)

    def now(self) -> datetime:
        return self._current

    def advance(self, seconds: float = 1) -> datetime:
        """Move forward by ``seconds`` and return the new time."""
        self._current += timedelta(seconds=seconds)
        return self._current
