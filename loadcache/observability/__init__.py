"""Observability utilities: logging setup.

This module configures standard logging and, if available, integrates
`structlog` for structured logs. The dependency on `structlog` is optional to
keep the base runtime lightweight.
"""

from __future__ import annotations

import importlib
import logging
from typing import Optional

from ..config.models import EnvSettings


def setup_logging(level: Optional[str] = None, verbose_cache: bool = False) -> None:
    """Configure application logging.

    Parameters
    ----------
    level: str, optional
        Logging level name (e.g., "DEBUG", "INFO"). If None, taken from
        ``LOADCACHE_LOG_LEVEL`` (or ``.env``), which defaults to "INFO".
    verbose_cache: bool
        Emit per-key load and eviction records from the cache internals.

    Behavior
    --------
    - Initializes Python's logging with the requested level.
    - If `structlog` is installed, configures it with a filtering bound logger.
    - Leaves the chatty ``loadcache.cache`` loggers at INFO unless
      `verbose_cache` is set.
    """
    if level is None:
        level = EnvSettings().log_level
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(
        level=numeric_level,
        format=("%(asctime)s %(levelname)s %(name)s - %(message)s"),
        datefmt="%Y-%m-%dT%H:%M:%S",
    )

    cache_loggers = [
        "loadcache.cache.loader",
        "loadcache.cache.store",
    ]
    for logger_name in cache_loggers:
        logging.getLogger(logger_name).setLevel(
            logging.DEBUG if verbose_cache else max(numeric_level, logging.INFO)
        )

    try:  # optional structlog
        structlog = importlib.import_module("structlog")
        structlog.configure(
            wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        )
    except ModuleNotFoundError:  # pragma: no cover
        pass
