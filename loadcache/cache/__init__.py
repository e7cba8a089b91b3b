"""
Loading cache internals and public entry points.

Modules
-------
entry
    Immutable cache entry and its derived fresh/stale/loading state
store
    Bounded LRU store with write tickets for load/put/clear races
loader
    Single-flight coordination of loader calls per key
stats
    Activity counters
loading_cache
    The cache itself and the ``build_cache`` factory
"""

from .entry import CacheEntry, EntryState
from .loading_cache import LoadingCache, build_cache
from .stats import CacheStats

__all__ = ["CacheEntry", "CacheStats", "EntryState", "LoadingCache", "build_cache"]
