"""Pytest configuration for test suite.

Ensures the project root is on ``sys.path`` so ``import loadcache`` resolves
to the local sources regardless of the working directory pytest chooses, and
provides deterministic time and executor fixtures.
"""

from __future__ import annotations

import sys
import threading
import time
from concurrent.futures import Executor, Future
from pathlib import Path

import pytest


def _ensure_project_root_on_syspath() -> None:
    project_root = Path(__file__).resolve().parents[1]
    project_root_str = str(project_root)
    if project_root_str not in sys.path:
        # Prepend to prefer local sources over site-packages
        sys.path.insert(0, project_root_str)


_ensure_project_root_on_syspath()

from loadcache.utils.clock import ManualClock  # noqa: E402


class DeferredExecutor(Executor):
    """Executor that queues work until the test runs it."""

    def __init__(self):
        self._pending = []
        self._lock = threading.Lock()
        self.shut_down = False

    def submit(self, fn, /, *args, **kwargs):
        if self.shut_down:
            raise RuntimeError("cannot schedule new futures after shutdown")
        future = Future()
        with self._lock:
            self._pending.append((future, fn, args, kwargs))
        return future

    @property
    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def run_pending(self) -> int:
        with self._lock:
            work, self._pending = self._pending, []
        for future, fn, args, kwargs in work:
            try:
                future.set_result(fn(*args, **kwargs))
            except Exception as exc:  # pylint: disable=broad-exception-caught
                future.set_exception(exc)
        return len(work)

    def shutdown(self, wait=True, *, cancel_futures=False):
        self.shut_down = True


class CountingLoader:
    """Loader recording every call; returns ``len(key)`` unless told otherwise."""

    def __init__(self, func=len):
        self.func = func
        self.calls = []
        self._lock = threading.Lock()

    def __call__(self, key):
        with self._lock:
            self.calls.append(key)
        return self.func(key)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self.calls)


def wait_for(predicate, timeout: float = 5.0, interval: float = 0.005) -> bool:
    """Poll `predicate` until it is true or `timeout` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock(start=1000.0)


@pytest.fixture
def executor() -> DeferredExecutor:
    return DeferredExecutor()


@pytest.fixture
def loader() -> CountingLoader:
    return CountingLoader()
