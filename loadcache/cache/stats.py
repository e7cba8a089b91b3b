"""Counters describing cache activity."""

from __future__ import annotations

import threading
from dataclasses import dataclass, fields


@dataclass(frozen=True)
class CacheStats:
    """
    Point-in-time view of cache counters.

    Attributes
    ----------
    hit_count : int
        Reads served from a fresh entry
    stale_hit_count : int
        Reads served from a stale entry while a refresh was scheduled or running
    miss_count : int
        Reads that had to wait for a load (absent key, or stale in blocking mode)
    load_success_count : int
        Loader calls that returned a value
    load_failure_count : int
        Synchronous loader calls that raised
    refresh_failure_count : int
        Background refreshes that raised
    eviction_count : int
        Entries dropped to stay within ``max_size``
    """

    hit_count: int = 0
    stale_hit_count: int = 0
    miss_count: int = 0
    load_success_count: int = 0
    load_failure_count: int = 0
    refresh_failure_count: int = 0
    eviction_count: int = 0

    @property
    def request_count(self) -> int:
        return self.hit_count + self.stale_hit_count + self.miss_count

    @property
    def hit_rate(self) -> float:
        """Share of reads answered without waiting (0.0-1.0)."""
        total = self.request_count
        if total == 0:
            return 1.0
        return (self.hit_count + self.stale_hit_count) / total


class StatsCounter:
    """Thread-safe mutable counterpart of :class:`CacheStats`."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts = {f.name: 0 for f in fields(CacheStats)}

    def record(self, counter: str, amount: int = 1) -> None:
        with self._lock:
            self._counts[counter] += amount

    def snapshot(self) -> CacheStats:
        with self._lock:
            return CacheStats(**self._counts)
