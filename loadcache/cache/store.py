"""
Bounded entry store.

This module wraps :class:`cachetools.LRUCache` with the bookkeeping the
loading cache needs: immutable entries with write timestamps, eviction that
skips keys whose value is being recomputed, and write tickets that let a
finished load detect whether the key was overwritten or the store cleared
while it was running.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from dataclasses import dataclass
from types import MappingProxyType
from typing import Callable, Generic, Iterator, Mapping, Optional, Tuple, TypeVar

from cachetools import Cache as _BaseCache  # type: ignore[import-untyped]
from cachetools import LRUCache  # type: ignore[import-untyped]

from ..utils.clock import Clock
from .entry import CacheEntry

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


class _PinnedLRUCache(LRUCache):
    """LRUCache whose eviction passes over pinned keys.

    Pinned keys are moved to the most recently used end instead of being
    evicted. When every key is pinned the least recently used one goes anyway
    so the size bound holds.
    """

    def __init__(
        self,
        maxsize: int,
        is_pinned: Callable[[Hashable], bool],
        on_evict: Callable[[Hashable, CacheEntry], None],
    ) -> None:
        super().__init__(maxsize=maxsize)
        self._is_pinned = is_pinned
        self._on_evict = on_evict

    def popitem(self) -> Tuple[Hashable, CacheEntry]:
        for _ in range(len(self)):
            key, entry = super().popitem()
            if not self._is_pinned(key):
                self._on_evict(key, entry)
                return key, entry
            self[key] = entry
        key, entry = super().popitem()
        logger.warning(
            "cache.store.evicted_loading_entry",
            extra={"key": repr(key), "maxsize": self.maxsize},
        )
        self._on_evict(key, entry)
        return key, entry

    def peek(self, key: Hashable) -> Optional[CacheEntry]:
        """Return the entry for `key` without touching recency."""
        try:
            return _BaseCache.__getitem__(self, key)
        except KeyError:
            return None

    def entries(self) -> Iterator[Tuple[Hashable, CacheEntry]]:
        for key in list(self):
            entry = self.peek(key)
            if entry is not None:
                yield key, entry


@dataclass(frozen=True)
class WriteTicket:
    """
    Store state captured when a load begins.

    Attributes
    ----------
    generation : int
        Number of ``clear()`` calls seen so far
    write_id : int or None
        Write sequence of the entry present at the time, if any
    """

    generation: int
    write_id: Optional[int]


class Store(Generic[K, V]):
    """
    Thread-safe bounded mapping from key to :class:`CacheEntry`.

    Parameters
    ----------
    max_size : int
        Maximum number of entries to retain
    clock : Clock
        Time source for write timestamps
    is_loading : callable, optional
        Predicate telling whether a key is being recomputed; such keys are
        skipped by eviction
    on_evict : callable, optional
        Called with ``(key, entry)`` for every entry evicted for capacity
    """

    def __init__(
        self,
        max_size: int,
        clock: Clock,
        is_loading: Optional[Callable[[K], bool]] = None,
        on_evict: Optional[Callable[[K, CacheEntry[V]], None]] = None,
    ) -> None:
        self._max_size = max_size
        self._clock = clock
        self._is_loading = is_loading or (lambda key: False)
        self._on_evict = on_evict
        self._lock = threading.RLock()
        self._generation = 0
        self._write_seq = 0
        self._data = self._new_data()

    @property
    def max_size(self) -> int:
        return self._max_size

    def _new_data(self) -> _PinnedLRUCache:
        return _PinnedLRUCache(self._max_size, self._is_loading, self._evicted)

    def _evicted(self, key: K, entry: CacheEntry[V]) -> None:
        logger.debug(
            "cache.store.evicted",
            extra={"key": repr(key), "write_id": entry.write_id},
        )
        if self._on_evict is not None:
            self._on_evict(key, entry)

    def lookup(self, key: K) -> Optional[CacheEntry[V]]:
        """Return the entry for `key` (marking it recently used) or None."""
        with self._lock:
            return self._data.get(key)

    def upsert(self, key: K, value: V) -> CacheEntry[V]:
        """Insert or replace `key`, stamping the entry with the current time."""
        with self._lock:
            return self._write(key, value)

    def _write(self, key: K, value: V) -> CacheEntry[V]:
        now = self._clock.now()
        self._write_seq += 1
        entry = CacheEntry(
            value=value,
            created_at=now,
            last_written_at=now,
            write_id=self._write_seq,
        )
        self._data[key] = entry
        return entry

    def begin_write(self, key: K) -> WriteTicket:
        """Capture the state a later :meth:`commit` for `key` is checked against."""
        with self._lock:
            current = self._data.peek(key)
            return WriteTicket(
                generation=self._generation,
                write_id=current.write_id if current is not None else None,
            )

    def commit(self, key: K, value: V, ticket: WriteTicket) -> Optional[CacheEntry[V]]:
        """
        Write a loaded value unless the store moved on since `ticket`.

        The write is dropped when ``clear()`` ran after the ticket was taken,
        or when `key` now holds an entry written after the ticket (an
        explicit put). A key that was evicted or invalidated in between is
        written normally.

        Returns
        -------
        CacheEntry or None
            The new entry, or None when the value was discarded
        """
        with self._lock:
            if ticket.generation != self._generation:
                return None
            current = self._data.peek(key)
            if current is not None and current.write_id != ticket.write_id:
                return None
            return self._write(key, value)

    def remove(self, key: K) -> None:
        with self._lock:
            self._data.pop(key, None)

    def clear(self) -> None:
        with self._lock:
            self._generation += 1
            self._data = self._new_data()

    def snapshot_all(self) -> Mapping[K, V]:
        """Return a read-only copy of every committed key and value."""
        with self._lock:
            return MappingProxyType({key: entry.value for key, entry in self._data.entries()})

    def approx_size(self) -> int:
        with self._lock:
            return len(self._data)

    def __contains__(self, key: object) -> bool:
        with self._lock:
            return key in self._data
