"""Cooperative deadlines for long-running request work."""

import time
from typing import Callable

from services.ingestion_errors import ProcessingTimeoutError

Clock = Callable[[], float]


class Deadline:
    """A point in time after which cooperative work must stop.

    Work loops call :meth:`check` between iterations. A deadline can be
    narrowed with :meth:`child`, so a component with its own budget never
    outlives the deadline its caller passed in.

    Args:
        seconds: Budget from now, or None for no limit.
        clock: Monotonic clock returning seconds (tests pass a fake).
    """

    def __init__(self, seconds: float | None, clock: Clock = time.monotonic):
        self._clock = clock
        self._expires_at = None if seconds is None else clock() + seconds

    @classmethod
    def never(cls, clock: Clock = time.monotonic) -> "Deadline":
        return cls(None, clock)

    @property
    def clock(self) -> Clock:
        return self._clock

    def remaining(self) -> float | None:
        """Seconds left, or None if unbounded. Never negative."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self) -> None:
        """Raise ProcessingTimeoutError once the deadline has passed."""
        if self.expired():
            raise ProcessingTimeoutError()

    def child(self, seconds: float | None) -> "Deadline":
        """Return a deadline no later than this one, with its own budget."""
        child = Deadline(seconds, self._clock)
        if self._expires_at is not None and (
            child._expires_at is None or self._expires_at < child._expires_at
        ):
            child._expires_at = self._expires_at
        return child
