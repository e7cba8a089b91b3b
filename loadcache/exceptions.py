"""
Exception types raised by the loading cache.

All errors derive from :class:`CacheError` so callers can catch cache
problems without also catching unrelated failures.
"""

from __future__ import annotations

from typing import Any, Optional


class CacheError(Exception):
    """Base class for cache errors."""


class ConfigurationError(CacheError, ValueError):
    """Invalid cache configuration, raised at construction time."""


class LoadFailure(CacheError):
    """
    The loader raised while computing a value for a key.

    The loader's original exception is available as ``cause`` and is also
    chained as ``__cause__``.

    Attributes
    ----------
    key : Any
        Key whose load failed
    cause : BaseException or None
        Exception raised by the loader
    """

    def __init__(self, key: Any, cause: Optional[BaseException] = None):
        self.key = key
        self.cause = cause
        detail = f": {type(cause).__name__}: {cause}" if cause is not None else ""
        super().__init__(f"Failed to load value for key {key!r}{detail}")
        self.__cause__ = cause


class AsyncLoadFailure(LoadFailure):
    """A background refresh failed; the stale value remains cached."""
