"""Config models and loader.

This module defines the immutable Pydantic model describing a cache and the
environment-driven settings used to build one. JSON config files are parsed
with `orjson`.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path
from typing import Any, Optional, Union

import orjson
from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..exceptions import ConfigurationError


class CacheConfig(BaseModel):
    """Configuration for a single loading cache.

    Attributes
    ----------
    name: str
        Label used in log records.
    max_size: int
        Maximum number of entries to retain.
    timeout_seconds: float
        Age in seconds after which a cached value is stale.
    blocking_on_get: bool
        When True, reads of a stale value wait for the reload. When False,
        they get the stale value while a refresh runs in the background.
    refresh_workers: int
        Thread count of the refresh pool created when no executor is given.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    name: str = Field("default", min_length=1, description="Cache name for logs")
    max_size: int = Field(1000, gt=0, description="Maximum number of entries")
    timeout_seconds: float = Field(
        5.0, gt=0, description="Seconds after which a value is stale"
    )
    blocking_on_get: bool = Field(
        False, description="Block readers of stale values until reloaded"
    )
    refresh_workers: int = Field(
        4, gt=0, description="Background refresh threads when no executor is given"
    )

    @property
    def timeout(self) -> timedelta:
        return timedelta(seconds=self.timeout_seconds)

    @classmethod
    def create(cls, **values: Any) -> "CacheConfig":
        """Validate `values`, raising :class:`ConfigurationError` on bad input.

        ``timeout`` may be given instead of ``timeout_seconds``, either as
        seconds or as a :class:`datetime.timedelta`.
        """
        if "timeout" in values:
            values["timeout_seconds"] = _to_seconds(values.pop("timeout"))
        try:
            return cls.model_validate(values)
        except ValidationError as exc:
            raise ConfigurationError(_describe(exc)) from exc

    @classmethod
    def from_env(cls, settings: Optional["EnvSettings"] = None) -> "CacheConfig":
        """Build a config from ``LOADCACHE_*`` environment variables."""
        settings = settings or EnvSettings()
        return cls.create(
            name=settings.cache_name,
            max_size=settings.max_size,
            timeout_seconds=settings.timeout_seconds,
            blocking_on_get=settings.blocking_on_get,
            refresh_workers=settings.refresh_workers,
        )

    @staticmethod
    def load(path: Path) -> "CacheConfig":
        """Load a cache config from a JSON file."""
        try:
            data = orjson.loads(path.read_bytes())
        except orjson.JSONDecodeError as exc:
            raise ConfigurationError(f"Invalid JSON in {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigurationError(f"Expected a JSON object in {path}")
        return CacheConfig.create(**data)


class EnvSettings(BaseSettings):
    """Environment-driven settings and .env support.

    Attributes
    ----------
    log_level: str
        Logging level name (e.g., "DEBUG", "INFO"). Defaults to "INFO".
    cache_name: str
        Default cache name.
    max_size: int
        Default maximum entry count.
    timeout_seconds: float
        Default staleness timeout in seconds.
    blocking_on_get: bool
        Default staleness policy.
    refresh_workers: int
        Default background refresh pool size.
    """

    model_config = SettingsConfigDict(env_file=".env", env_prefix="LOADCACHE_")

    log_level: str = Field("INFO")
    cache_name: str = Field("default")
    max_size: int = Field(1000)
    timeout_seconds: float = Field(5.0)
    blocking_on_get: bool = Field(False)
    refresh_workers: int = Field(4)


def _to_seconds(timeout: Union[float, int, timedelta, None]) -> Any:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return timeout


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error.get("loc", ())) or "config"
        parts.append(f"{location}: {error.get('msg')}")
    return "Invalid cache configuration: " + "; ".join(parts)
