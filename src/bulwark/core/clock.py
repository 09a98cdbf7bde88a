"""
Clock sources used by time-dependent components.

Buckets and breakers only need elapsed time and use the monotonic clock.
Cache entries and idempotency records may be persisted to a shared store
and read by other processes, so they are stamped with wall-clock time.

Every component takes a ``clock`` argument; tests pass a
:class:`ManualClock` and advance it explicitly instead of sleeping.
"""

from __future__ import annotations

import threading
import time
from typing import Callable

Clock = Callable[[], float]

monotonic: Clock = time.monotonic
wall: Clock = time.time


class ManualClock:
    """A clock that only moves when told to.

    Example:
        >>> clock = ManualClock(start=100.0)
        >>> clock()
        100.0
        >>> clock.advance(0.25)
        >>> clock()
        100.25
    """

    def __init__(self, start: float = 0.0):
        self._now = start
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> None:
        """Move the clock forward by ``seconds``."""
        if seconds < 0:
            raise ValueError("ManualClock cannot move backwards")
        with self._lock:
            self._now += seconds

    def set(self, now: float) -> None:
        """Jump to an absolute time."""
        with self._lock:
            self._now = now


__all__ = ["Clock", "ManualClock", "monotonic", "wall"]
