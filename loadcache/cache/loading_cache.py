"""
Loading cache with blocking and refresh-ahead staleness policies.

A :class:`LoadingCache` computes values on demand with a caller-supplied
loader, keeps at most ``max_size`` of them, and treats a value as stale once
it is older than ``timeout_seconds``. What a reader of a stale value gets
depends on ``blocking_on_get``:

- blocking: the reader waits while the value is reloaded, so it never sees
  a value older than the timeout.
- refresh-ahead (default): the reader gets the stale value at once and a
  single background refresh is scheduled; later reads see the new value
  once it lands.

Either way, concurrent readers of the same key share one loader call.

Race rules, both covered by tests:

- an explicit ``put`` made while a load for the same key is in flight wins;
  the load's value is returned to its waiters but not stored.
- ``clear()`` discards the results of loads that were in flight when it ran.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import timedelta
from typing import Callable, Generic, Mapping, Optional, TypeVar, Union

from ..config.models import CacheConfig
from ..exceptions import AsyncLoadFailure, ConfigurationError, LoadFailure
from ..utils.clock import Clock, MonotonicClock
from .entry import CacheEntry, EntryState
from .loader import LoadCoordinator
from .stats import CacheStats, StatsCounter
from .store import Store, WriteTicket

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

RefreshFailureHook = Callable[[AsyncLoadFailure], None]


class _LoadTask(Generic[K, V]):
    """One loader invocation and the store write that follows it.

    The write ticket is taken when the task is created, so a refresh that
    waits in an executor queue still loses to puts and clears made after it
    was requested.
    """

    def __init__(self, cache: "LoadingCache[K, V]", key: K, failure_counter: str):
        self._cache = cache
        self._failure_counter = failure_counter
        self._ticket: WriteTicket = cache._store.begin_write(key)

    def load(self, key: K) -> V:
        cache = self._cache
        try:
            value = cache._loader(key)
        except Exception:
            cache._stats.record(self._failure_counter)
            raise
        cache._stats.record("load_success_count")
        return value

    def commit(self, key: K, value: V) -> None:
        if self._cache._store.commit(key, value, self._ticket) is None:
            logger.info(
                f"cache.{self._cache.name}.load.discarded",
                extra={
                    "key": repr(key),
                    "reason": "cleared or overwritten while loading",
                },
            )


class LoadingCache(Generic[K, V]):  # pylint: disable=too-many-instance-attributes
    """
    In-memory cache that loads missing and stale values on demand.

    Parameters
    ----------
    loader : callable
        Function computing the value for a key. May raise; the error reaches
        callers as :class:`~loadcache.exceptions.LoadFailure`.
    config : CacheConfig, optional
        Size, timeout and policy settings, defaults if None
    clock : Clock, optional
        Time source for staleness, :class:`MonotonicClock` if None
    executor : Executor, optional
        Runs background refreshes. If None, the cache creates a thread pool
        on first use and shuts it down in :meth:`close`.
    on_refresh_failure : callable, optional
        Called with the :class:`~loadcache.exceptions.AsyncLoadFailure` of
        every failed background refresh

    Raises
    ------
    ConfigurationError
        If `loader` is missing or not callable
    """

    def __init__(
        self,
        loader: Callable[[K], V],
        config: Optional[CacheConfig] = None,
        *,
        clock: Optional[Clock] = None,
        executor: Optional[Executor] = None,
        on_refresh_failure: Optional[RefreshFailureHook] = None,
    ):
        if loader is None or not callable(loader):
            raise ConfigurationError("A callable loader is required to build a cache")
        self._loader = loader
        self._config = config or CacheConfig()
        self._clock: Clock = clock or MonotonicClock()
        self._executor = executor
        self._owns_executor = executor is None
        self._executor_lock = threading.Lock()
        self._closed = False
        self._on_refresh_failure = on_refresh_failure
        self._stats = StatsCounter()
        self._coordinator: LoadCoordinator[K, V] = LoadCoordinator(self._config.name)
        self._store: Store[K, V] = Store(
            self._config.max_size,
            self._clock,
            is_loading=self._coordinator.in_flight,
            on_evict=self._evicted,
        )
        logger.debug(
            f"cache.{self.name}.created",
            extra={
                "max_size": self._config.max_size,
                "timeout_seconds": self._config.timeout_seconds,
                "blocking_on_get": self._config.blocking_on_get,
            },
        )

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def config(self) -> CacheConfig:
        return self._config

    def get(self, key: K) -> V:
        """
        Return the value for `key`, loading it if absent or stale.

        Raises
        ------
        LoadFailure
            If a load this call had to wait for failed. The cached state for
            `key` is left as it was.
        """
        entry = self._store.lookup(key)
        if entry is not None:
            if not entry.is_stale(self._clock.now(), self._config.timeout_seconds):
                self._stats.record("hit_count")
                return entry.value
            if not self._config.blocking_on_get:
                self._stats.record("stale_hit_count")
                self._schedule_refresh(key)
                return entry.value
        self._stats.record("miss_count")
        task: _LoadTask[K, V] = _LoadTask(self, key, "load_failure_count")
        try:
            return self._coordinator.load_once(
                key, task.load, task.commit, recheck=self._fresh_entry
            )
        except AsyncLoadFailure as failure:
            # Joined a background refresh (key invalidated or evicted meanwhile)
            self._stats.record("load_failure_count")
            self._log_load_failure(key, failure)
            raise LoadFailure(key, failure.cause) from failure.cause
        except LoadFailure as failure:
            self._log_load_failure(key, failure)
            raise

    def state(self, key: K) -> Optional[EntryState]:
        """Return the current state of `key`, or None if absent and not loading."""
        loading = self._coordinator.in_flight(key)
        entry = self._store.lookup(key)
        if entry is None:
            return EntryState.LOADING if loading else None
        return entry.state(self._clock.now(), self._config.timeout_seconds, loading)

    def put(self, key: K, value: V) -> None:
        """Store `value` for `key`, replacing any previous value."""
        self._store.upsert(key, value)

    def put_all(self, mapping: Mapping[K, V]) -> None:
        """Store every key/value pair of `mapping`."""
        for key, value in mapping.items():
            self._store.upsert(key, value)

    def invalidate(self, key: K) -> None:
        """Drop `key`; the next ``get`` loads it again."""
        self._store.remove(key)

    def clear(self) -> None:
        """Drop every entry. Loads still in flight will not be stored."""
        self._store.clear()
        logger.info(
            f"cache.{self.name}.cleared",
            extra={"in_flight": self._coordinator.pending()},
        )

    def snapshot(self) -> Mapping[K, V]:
        """Read-only copy of every cached key and value, stale ones included."""
        return self._store.snapshot_all()

    def size(self) -> int:
        """Number of cached entries (approximate under concurrent writes)."""
        return self._store.approx_size()

    def stats(self) -> CacheStats:
        return self._stats.snapshot()

    def entry(self, key: K) -> Optional[CacheEntry[V]]:
        """Return the committed entry for `key` with its timestamps, or None."""
        return self._store.lookup(key)

    def __len__(self) -> int:
        return self.size()

    def __contains__(self, key: object) -> bool:
        return key in self._store

    def close(self, wait: bool = True) -> None:
        """Shut down the refresh pool this cache created, if any."""
        with self._executor_lock:
            self._closed = True
            executor = self._executor if self._owns_executor else None
            self._executor = None if self._owns_executor else self._executor
        if executor is not None:
            executor.shutdown(wait=wait)

    def __enter__(self) -> "LoadingCache[K, V]":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _refresh_executor(self) -> Optional[Executor]:
        with self._executor_lock:
            if self._closed and self._owns_executor:
                return None
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._config.refresh_workers,
                    thread_name_prefix=f"loadcache-{self.name}-refresh",
                )
            return self._executor

    def _schedule_refresh(self, key: K) -> None:
        if self._coordinator.in_flight(key):
            return
        executor = self._refresh_executor()
        if executor is None:
            logger.debug(
                f"cache.{self.name}.refresh.skipped",
                extra={"key": repr(key), "reason": "cache closed"},
            )
            return
        task: _LoadTask[K, V] = _LoadTask(self, key, "refresh_failure_count")
        try:
            future = self._coordinator.submit(key, task.load, task.commit, executor)
        except AsyncLoadFailure as failure:
            self._stats.record("refresh_failure_count")
            self._refresh_failed(failure)
            return
        if future is not None:
            logger.debug(f"cache.{self.name}.refresh.scheduled", extra={"key": repr(key)})
            future.add_done_callback(self._refresh_done)

    def _refresh_done(self, future: "Future[V]") -> None:
        exc = future.exception()
        if exc is None:
            return
        if isinstance(exc, AsyncLoadFailure):
            self._refresh_failed(exc)
        else:
            logger.error(
                f"cache.{self.name}.refresh.aborted",
                extra={"error": repr(exc)},
            )

    def _fresh_entry(self, key: K) -> Optional[CacheEntry[V]]:
        entry = self._store.lookup(key)
        if entry is None or entry.is_stale(self._clock.now(), self._config.timeout_seconds):
            return None
        return entry

    def _log_load_failure(self, key: K, failure: LoadFailure) -> None:
        logger.warning(
            f"cache.{self.name}.load.failed",
            extra={"key": repr(key), "error": str(failure.cause)},
        )

    def _refresh_failed(self, failure: AsyncLoadFailure) -> None:
        logger.warning(
            f"cache.{self.name}.refresh.failed",
            extra={"key": repr(failure.key), "error": str(failure.cause)},
        )
        if self._on_refresh_failure is not None:
            self._on_refresh_failure(failure)

    def _evicted(self, key: K, entry: CacheEntry[V]) -> None:
        self._stats.record("eviction_count")


def build_cache(
    loader: Callable[[K], V],
    *,
    max_size: int = 1000,
    timeout: Union[float, timedelta] = 5.0,
    blocking_on_get: bool = False,
    name: str = "default",
    refresh_workers: int = 4,
    clock: Optional[Clock] = None,
    executor: Optional[Executor] = None,
    on_refresh_failure: Optional[RefreshFailureHook] = None,
) -> LoadingCache[K, V]:
    """
    Validate settings and build a :class:`LoadingCache`.

    Parameters
    ----------
    loader : callable
        Function computing the value for a key
    max_size : int
        Maximum number of entries, must be positive
    timeout : float or timedelta
        Age after which a value is stale, seconds if a number; must be positive
    blocking_on_get : bool
        Block readers of stale values until they are reloaded

    Raises
    ------
    ConfigurationError
        On a missing loader or out-of-range settings

    Examples
    --------
    >>> cache = build_cache(len, max_size=2, timeout=0.05, blocking_on_get=True)
    >>> cache.get("abc")
    3
    """
    if loader is None or not callable(loader):
        raise ConfigurationError("A callable loader is required to build a cache")
    config = CacheConfig.create(
        name=name,
        max_size=max_size,
        timeout=timeout,
        blocking_on_get=blocking_on_get,
        refresh_workers=refresh_workers,
    )
    return LoadingCache(
        loader,
        config,
        clock=clock,
        executor=executor,
        on_refresh_failure=on_refresh_failure,
    )
