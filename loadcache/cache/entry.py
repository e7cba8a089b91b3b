"""Cache entry record and its derived state."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, TypeVar

V = TypeVar("V")


class EntryState(Enum):
    """Lifecycle states of a cached key."""

    FRESH = "fresh"  # Younger than the timeout
    STALE = "stale"  # Older than the timeout, still servable in refresh-ahead mode
    LOADING = "loading"  # A computation for the key is in flight


@dataclass(frozen=True)
class CacheEntry(Generic[V]):
    """
    A committed value plus the metadata used for staleness checks.

    Attributes
    ----------
    value : V
        The cached value
    created_at : float
        Clock reading when the key was first written
    last_written_at : float
        Clock reading of the most recent write
    write_id : int
        Store-wide sequence number identifying the write that produced
        this entry
    """

    value: V
    created_at: float
    last_written_at: float
    write_id: int

    def age(self, now: float) -> float:
        return now - self.last_written_at

    def is_stale(self, now: float, timeout: float) -> bool:
        return self.age(now) >= timeout

    def state(self, now: float, timeout: float, loading: bool = False) -> EntryState:
        if loading:
            return EntryState.LOADING
        if self.is_stale(now, timeout):
            return EntryState.STALE
        return EntryState.FRESH
