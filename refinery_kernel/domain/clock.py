"""
Clock -- Injectable time source.

Responsibility:
    Provides the clock interface through which services and the analytics
    calculator obtain "now".  Nothing in the kernel calls ``datetime.now()``
    directly; step timestamps, FTT arrival/export instants and event times
    all come from an injected Clock.

Architecture position:
    Kernel > Domain -- pure core, zero I/O (except SystemClock, the one
    sanctioned boundary for wall-clock time).

Failure modes:
    - DeterministicClock.set_time() rejects naive datetimes with ValueError.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone


class Clock(ABC):
    """
    Abstract clock interface.

    Contract:
        Every service that stamps time receives a Clock via its constructor.

    Guarantees:
        - ``now()`` returns a timezone-aware ``datetime``.
    """

    @abstractmethod
    def now(self) -> datetime:
        """Get the current time."""
        ...

    def now_utc(self) -> datetime:
        """Get the current time normalized to UTC."""
        return self.now().astimezone(timezone.utc)


class SystemClock(Clock):
    """Production clock returning actual UTC system time."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)


class DeterministicClock(Clock):
    """
    Test clock with controlled time.

    Guarantees:
        - ``now()`` returns the same value on repeated calls until
          ``advance()`` or ``set_time()`` is called.
        - Defaults to Monday 2024-01-01 08:00 UTC, the start of a working
          week, so business-hour arithmetic in tests reads naturally.
    """

    def __init__(self, fixed_time: datetime | None = None):
        self._current = fixed_time or datetime(
            2024, 1, 1, 8, 0, 0, tzinfo=timezone.utc
        )
        if self._current.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")

    def now(self) -> datetime:
        return self._current

    def set_time(self, time: datetime) -> None:
        """Set the clock to a specific time."""
        if time.tzinfo is None:
            raise ValueError("DeterministicClock requires a timezone-aware datetime")
        self._current = time

    def advance(self, seconds: int = 0, *, hours: int = 0, days: int = 0) -> datetime:
        """Move the clock forward and return the new time."""
        self._current = self._current + timedelta(
            seconds=seconds, hours=hours, days=days
        )
        return self._current
