"""
Single-flight load coordination.

At most one computation per key runs at a time. The first caller for a key
runs the loader (or hands it to an executor); callers arriving while it is
in flight wait on the same :class:`concurrent.futures.Future` and receive
the same value or the same :class:`~loadcache.exceptions.LoadFailure`.

Only the in-flight bookkeeping is guarded by a lock; the loader itself runs
outside it, so loads for unrelated keys proceed in parallel.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Hashable
from concurrent.futures import Executor, Future
from typing import Callable, Dict, Generic, Optional, Tuple, Type, TypeVar

from ..exceptions import AsyncLoadFailure, LoadFailure
from .entry import CacheEntry

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")

Loader = Callable[[K], V]
OnLoaded = Callable[[K, V], None]
Recheck = Callable[[K], Optional[CacheEntry]]


class LoadCoordinator(Generic[K, V]):
    """
    Tracks in-flight computations and deduplicates them per key.

    Parameters
    ----------
    name : str
        Cache name used in log records
    """

    def __init__(self, name: str = "default"):
        self.name = name
        self._lock = threading.Lock()
        self._calls: Dict[K, "Future[V]"] = {}

    def in_flight(self, key: K) -> bool:
        with self._lock:
            return key in self._calls

    def pending(self) -> int:
        """Number of keys with a computation in flight."""
        with self._lock:
            return len(self._calls)

    def _begin(self, key: K) -> Tuple["Future[V]", bool]:
        with self._lock:
            future = self._calls.get(key)
            if future is not None:
                return future, False
            future = Future()
            self._calls[key] = future
            return future, True

    def _finish(self, key: K) -> None:
        with self._lock:
            self._calls.pop(key, None)

    def load_once(
        self,
        key: K,
        loader: Loader,
        on_loaded: OnLoaded,
        recheck: Optional[Recheck] = None,
    ) -> V:
        """
        Return the value for `key`, computing it in this thread if needed.

        If a computation for `key` is already in flight the caller waits for
        it instead of starting another one. A caller that becomes the owner
        first asks `recheck` for a usable entry, since a load that finished
        between the caller's own lookup and now has already stored one.

        Raises
        ------
        LoadFailure
            If the loader raised; every waiter gets the same instance
        """
        future, owner = self._begin(key)
        if owner:
            cached = recheck(key) if recheck is not None else None
            if cached is not None:
                self._finish(key)
                logger.debug(f"cache.{self.name}.load.skipped", extra={"key": repr(key)})
                future.set_result(cached.value)
            else:
                self._run(key, future, loader, on_loaded, LoadFailure)
        else:
            logger.debug(f"cache.{self.name}.load.joined", extra={"key": repr(key)})
        return future.result()

    def submit(
        self,
        key: K,
        loader: Loader,
        on_loaded: OnLoaded,
        executor: Executor,
    ) -> Optional["Future[V]"]:
        """
        Start computing `key` on `executor` unless a computation is in flight.

        Failures are reported through the returned future as
        :class:`~loadcache.exceptions.AsyncLoadFailure`.

        Returns
        -------
        Future or None
            The new computation's future, or None when one was already
            running for `key`

        Raises
        ------
        AsyncLoadFailure
            If the executor refused the task
        """
        future, owner = self._begin(key)
        if not owner:
            return None
        try:
            executor.submit(self._run, key, future, loader, on_loaded, AsyncLoadFailure)
        except RuntimeError as exc:
            # Executor already shut down; release the key
            self._finish(key)
            failure = AsyncLoadFailure(key, exc)
            future.set_exception(failure)
            raise failure from exc
        return future

    def _run(
        self,
        key: K,
        future: "Future[V]",
        loader: Loader,
        on_loaded: OnLoaded,
        failure_type: Type[LoadFailure],
    ) -> None:
        logger.debug(f"cache.{self.name}.load.started", extra={"key": repr(key)})
        try:
            value = loader(key)
            on_loaded(key, value)
        except Exception as exc:  # pylint: disable=broad-exception-caught
            self._finish(key)
            logger.debug(
                f"cache.{self.name}.load.failed",
                extra={"key": repr(key), "error": str(exc)},
            )
            future.set_exception(failure_type(key, exc))
            return
        except BaseException as exc:
            # Waiters must not hang on interpreter-level exits
            self._finish(key)
            future.set_exception(exc)
            raise
        self._finish(key)
        logger.debug(f"cache.{self.name}.load.completed", extra={"key": repr(key)})
        future.set_result(value)
