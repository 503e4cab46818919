"""Injectable time sources.

All time-based thresholds (regime dwell, exit cooldowns, tranche spacing,
hold times) read the current time through a Clock so tests and replays
can drive them deterministically.
"""
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional


class Clock(ABC):
    """Source of the current wall-clock time."""

    @abstractmethod
    def now(self) -> datetime:
        """Return the current time."""
        pass


class SystemClock(Clock):
    """Clock backed by the system time."""

    def now(self) -> datetime:
        return datetime.now()


class ManualClock(Clock):
    """
    Clock that only moves when told to.

    Used by tests and by the replay driver, which pins it to the
    timestamp of each replayed cycle.
    """

    def __init__(self, start: Optional[datetime] = None):
        self._now = start or datetime(2024, 1, 1, 0, 0, 0)

    def now(self) -> datetime:
        return self._now

    def advance(self, delta: Optional[timedelta] = None, **kwargs: float) -> datetime:
        """
        Move the clock forward.

        Args:
            delta: Amount to advance
            **kwargs: Alternatively, timedelta keyword arguments (seconds=30)

        Returns:
            The new current time
        """
        step = delta if delta is not None else timedelta(**kwargs)
        if step < timedelta(0):
            raise ValueError(f"ManualClock cannot move backwards ({step})")
        self._now = self._now + step
        return self._now

    def set(self, moment: datetime) -> None:
        """Pin the clock to an absolute time (must not go backwards)."""
        if moment < self._now:
            raise ValueError(
                f"ManualClock cannot move backwards: {moment.isoformat()} < {self._now.isoformat()}"
            )
        self._now = moment
