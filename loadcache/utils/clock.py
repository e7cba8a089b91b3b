"""
Time sources for cache staleness checks.

The cache never reads the wall clock directly. A :class:`Clock` is passed in
at construction so tests can move time forward deterministically instead of
sleeping.
"""

from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):  # pylint: disable=too-few-public-methods
    """Anything with a ``now()`` returning seconds as a float."""

    def now(self) -> float:
        ...


class MonotonicClock:  # pylint: disable=too-few-public-methods
    """Default clock backed by :func:`time.monotonic`."""

    def now(self) -> float:
        return time.monotonic()


class ManualClock:
    """
    Clock that only moves when told to.

    Parameters
    ----------
    start : float
        Initial reading in seconds
    """

    def __init__(self, start: float = 0.0):
        self._now = float(start)
        self._lock = threading.Lock()

    def now(self) -> float:
        with self._lock:
            return self._now

    def advance(self, seconds: float) -> float:
        """Move the clock forward and return the new reading."""
        if seconds < 0:
            raise ValueError("Cannot move a clock backwards")
        with self._lock:
            self._now += seconds
            return self._now
