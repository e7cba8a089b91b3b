"""
loadcache: an in-process loading cache.

Values are computed on demand by a caller-supplied loader, bounded by a
maximum entry count, and reloaded once older than a timeout, either
blocking the reader or in the background. See ``loadcache.cache``.
"""

from .__version__ import __version__
from .cache import CacheStats, EntryState, LoadingCache, build_cache
from .config.models import CacheConfig
from .exceptions import AsyncLoadFailure, CacheError, ConfigurationError, LoadFailure

__all__ = [
    "__version__",
    "AsyncLoadFailure",
    "CacheConfig",
    "CacheError",
    "CacheStats",
    "ConfigurationError",
    "EntryState",
    "LoadFailure",
    "LoadingCache",
    "build_cache",
]
