"""
Tests for single-flight loading under concurrent access.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor

import pytest
from conftest import CountingLoader, wait_for

from loadcache import LoadFailure, build_cache
from loadcache.cache.entry import CacheEntry
from loadcache.cache.loader import LoadCoordinator

JOINED = "load.joined"


def _joined_count(caplog) -> int:
    return sum(1 for r in list(caplog.records) if r.getMessage().endswith(JOINED))


def _blocking_loader(started: threading.Event, release: threading.Event, result=None, error=None):
    def load(key):
        started.set()
        assert release.wait(5), "test never released the loader"
        if error is not None:
            raise error
        return result if result is not None else f"value-{key}"

    return CountingLoader(load)


def test_coordinator_runs_loader_once_for_joined_callers(caplog):
    """Test concurrent load_once calls for one key share a single call."""
    coordinator = LoadCoordinator()
    started, release = threading.Event(), threading.Event()
    loader = _blocking_loader(started, release)
    loaded = []

    def on_loaded(key, value):
        loaded.append((key, value))

    with caplog.at_level(logging.DEBUG, logger="loadcache.cache.loader"):
        with ThreadPoolExecutor(max_workers=6) as pool:
            owner = pool.submit(coordinator.load_once, "k", loader, on_loaded)
            assert started.wait(5)
            joiners = [
                pool.submit(coordinator.load_once, "k", loader, on_loaded)
                for _ in range(5)
            ]
            assert wait_for(lambda: _joined_count(caplog) == 5)
            assert coordinator.in_flight("k")
            release.set()
            results = [owner.result(5)] + [f.result(5) for f in joiners]

    assert loader.count == 1
    assert results == ["value-k"] * 6
    assert loaded == [("k", "value-k")]
    assert not coordinator.in_flight("k")
    assert coordinator.pending() == 0


def test_coordinator_delivers_same_failure_to_every_waiter(caplog):
    """Test joined callers all receive the identical LoadFailure."""
    coordinator = LoadCoordinator()
    started, release = threading.Event(), threading.Event()
    boom = ConnectionError("upstream down")
    loader = _blocking_loader(started, release, error=boom)

    def capture():
        try:
            coordinator.load_once("k", loader, lambda k, v: None)
        except LoadFailure as exc:
            return exc
        return None

    with caplog.at_level(logging.DEBUG, logger="loadcache.cache.loader"):
        with ThreadPoolExecutor(max_workers=4) as pool:
            owner = pool.submit(capture)
            assert started.wait(5)
            joiners = [pool.submit(capture) for _ in range(3)]
            assert wait_for(lambda: _joined_count(caplog) == 3)
            release.set()
            failures = [owner.result(5)] + [f.result(5) for f in joiners]

    assert loader.count == 1
    assert all(f is failures[0] for f in failures)
    assert failures[0].cause is boom
    assert failures[0].__cause__ is boom
    assert failures[0].key == "k"
    assert coordinator.pending() == 0


def test_coordinator_allows_new_load_after_failure():
    """Test bookkeeping is cleared so a later call retries the loader."""
    coordinator = LoadCoordinator()
    attempts = []

    def flaky(key):
        attempts.append(key)
        if len(attempts) == 1:
            raise TimeoutError("first call times out")
        return "ok"

    with pytest.raises(LoadFailure):
        coordinator.load_once("k", flaky, lambda k, v: None)
    assert coordinator.load_once("k", flaky, lambda k, v: None) == "ok"
    assert attempts == ["k", "k"]


def test_coordinator_submit_skips_key_already_in_flight(executor):
    """Test submit returns None while a computation for the key is pending."""
    coordinator = LoadCoordinator()
    loader = CountingLoader()

    first = coordinator.submit("abc", loader, lambda k, v: None, executor)
    second = coordinator.submit("abc", loader, lambda k, v: None, executor)

    assert first is not None
    assert second is None
    assert executor.pending == 1
    executor.run_pending()
    assert first.result(1) == 3
    assert loader.count == 1
    assert not coordinator.in_flight("abc")


def test_coordinator_submit_to_shut_down_executor_releases_key(executor):
    """Test a refused submission raises and leaves no bookkeeping behind."""
    coordinator = LoadCoordinator()
    executor.shutdown()

    with pytest.raises(LoadFailure):
        coordinator.submit("k", len, lambda k, v: None, executor)
    assert not coordinator.in_flight("k")


def test_cache_cold_key_loaded_once_for_concurrent_gets(clock, caplog):
    """Test n concurrent gets of a missing key call the loader once."""
    started, release = threading.Event(), threading.Event()
    loader = _blocking_loader(started, release)
    cache = build_cache(loader, clock=clock)

    with caplog.at_level(logging.DEBUG, logger="loadcache.cache.loader"):
        with ThreadPoolExecutor(max_workers=8) as pool:
            owner = pool.submit(cache.get, "cold")
            assert started.wait(5)
            others = [pool.submit(cache.get, "cold") for _ in range(7)]
            assert wait_for(lambda: _joined_count(caplog) == 7)
            release.set()
            results = [owner.result(5)] + [f.result(5) for f in others]

    assert loader.count == 1
    assert set(results) == {"value-cold"}
    assert cache.get("cold") == "value-cold"
    assert loader.count == 1


def test_cache_stale_key_reloaded_once_in_blocking_mode(clock, caplog):
    """Test concurrent readers of a stale key share one blocking reload."""
    started, release = threading.Event(), threading.Event()
    loader = _blocking_loader(started, release, result="fresh")
    cache = build_cache(loader, timeout=1.0, blocking_on_get=True, clock=clock)
    cache.put("k", "old")
    clock.advance(2.0)

    with caplog.at_level(logging.DEBUG, logger="loadcache.cache.loader"):
        with ThreadPoolExecutor(max_workers=4) as pool:
            owner = pool.submit(cache.get, "k")
            assert started.wait(5)
            others = [pool.submit(cache.get, "k") for _ in range(3)]
            assert wait_for(lambda: _joined_count(caplog) == 3)
            release.set()
            results = [owner.result(5)] + [f.result(5) for f in others]

    assert loader.count == 1
    assert results == ["fresh"] * 4


def test_loads_for_different_keys_run_in_parallel(clock):
    """Test a slow load for one key does not hold up another key."""
    b_loaded = threading.Event()

    def load(key):
        if key == "a":
            # Only returns True if "b" could load while "a" was in flight
            return b_loaded.wait(5)
        b_loaded.set()
        return True

    cache = build_cache(load, clock=clock)
    with ThreadPoolExecutor(max_workers=2) as pool:
        a = pool.submit(cache.get, "a")
        b = pool.submit(cache.get, "b")
        assert b.result(5) is True
        assert a.result(5) is True


def test_put_does_not_wait_for_in_flight_load(clock):
    """Test put on another key completes while a load is blocked."""
    started, release = threading.Event(), threading.Event()
    cache = build_cache(_blocking_loader(started, release), clock=clock)

    with ThreadPoolExecutor(max_workers=1) as pool:
        pending = pool.submit(cache.get, "slow")
        assert started.wait(5)
        cache.put("other", 1)
        assert cache.snapshot() == {"other": 1}
        assert cache.size() == 1
        release.set()
        assert pending.result(5) == "value-slow"


def test_coordinator_owner_uses_entry_stored_meanwhile():
    """Test an owner whose recheck finds a stored entry skips the loader."""
    coordinator = LoadCoordinator()
    loader = CountingLoader()
    stored = CacheEntry("already-there", 1.0, 1.0, write_id=7)

    value = coordinator.load_once("k", loader, lambda k, v: None, recheck=lambda k: stored)

    assert value == "already-there"
    assert loader.count == 0
    assert not coordinator.in_flight("k")


def test_reader_arriving_as_load_completes_does_not_reload(clock, monkeypatch):
    """Test a reader that missed before a load finished reuses its result."""
    started, release = threading.Event(), threading.Event()
    loader = _blocking_loader(started, release)
    cache = build_cache(loader, clock=clock)

    with ThreadPoolExecutor(max_workers=2) as pool:
        first = pool.submit(cache.get, "k")
        assert started.wait(5)

        # Hold the second reader after its miss but before it claims the key
        paused, resume = threading.Event(), threading.Event()
        begin_write = cache._store.begin_write

        def held_begin_write(key):
            paused.set()
            assert resume.wait(5), "test never resumed the reader"
            return begin_write(key)

        monkeypatch.setattr(cache._store, "begin_write", held_begin_write)
        second = pool.submit(cache.get, "k")
        assert paused.wait(5)

        release.set()
        assert first.result(5) == "value-k"
        assert not cache._coordinator.in_flight("k")
        resume.set()
        assert second.result(5) == "value-k"

    assert loader.count == 1
    assert cache.stats().load_success_count == 1
