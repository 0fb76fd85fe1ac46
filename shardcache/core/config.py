"""
Configuration Management for shardcache

Provides validated configuration with sensible defaults and environment
variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field

from shardcache.core import constants as C
from shardcache.core.types import Err, Ok, Result
from shardcache.storage.config import StorageConfig


@dataclass(frozen=True)
class CounterSettings:
    """Sharded counter behaviour."""

    default_shards: int = C.DEFAULT_SHARDS
    total_ttl_seconds: int = C.TOTAL_TTL_SECONDS
    max_shards: int = C.MAX_SHARDS
    scan_batch_size: int = C.SHARD_SCAN_BATCH
    config_kind: str = C.COUNTER_CONFIG_KIND
    shard_kind: str = C.COUNTER_SHARD_KIND

    def __post_init__(self) -> None:
        if self.default_shards < 1:
            raise ValueError(f"default_shards must be >= 1, got {self.default_shards}")
        if self.max_shards < self.default_shards:
            raise ValueError(
                f"max_shards ({self.max_shards}) must be >= "
                f"default_shards ({self.default_shards})"
            )
        if self.total_ttl_seconds < 0:
            raise ValueError(f"total_ttl_seconds must be >= 0, got {self.total_ttl_seconds}")
        if self.scan_batch_size < 1:
            raise ValueError(f"scan_batch_size must be >= 1, got {self.scan_batch_size}")

    @classmethod
    def from_env(cls, prefix: str = "SHARDCACHE_COUNTER") -> CounterSettings:
        """
        Environment Variables:
        - {prefix}_DEFAULT_SHARDS (default: 5)
        - {prefix}_TOTAL_TTL_SECONDS (default: 60)
        - {prefix}_MAX_SHARDS (default: 1000)
        - {prefix}_SCAN_BATCH_SIZE (default: 100)
        """
        def _get_int(key: str, default: int) -> int:
            val = os.getenv(f"{prefix}_{key}", "")
            return int(val) if val else default

        return cls(
            default_shards=_get_int("DEFAULT_SHARDS", C.DEFAULT_SHARDS),
            total_ttl_seconds=_get_int("TOTAL_TTL_SECONDS", C.TOTAL_TTL_SECONDS),
            max_shards=_get_int("MAX_SHARDS", C.MAX_SHARDS),
            scan_batch_size=_get_int("SCAN_BATCH_SIZE", C.SHARD_SCAN_BATCH),
        )


@dataclass(frozen=True)
class SessionSettings:
    """Session record kind."""

    kind: str = C.SESSION_KIND

    def __post_init__(self) -> None:
        if not self.kind:
            raise ValueError("session kind must not be empty")

    @classmethod
    def from_env(cls, prefix: str = "SHARDCACHE_SESSION") -> SessionSettings:
        return cls(kind=os.getenv(f"{prefix}_KIND", C.SESSION_KIND))


@dataclass(frozen=True)
class ObservabilitySettings:
    """Logging and metrics switches."""

    log_level: str = "INFO"
    log_json: bool = True
    metrics_enabled: bool = True


@dataclass(frozen=True)
class ShardCacheConfig:
    """Root configuration."""

    counter: CounterSettings = field(default_factory=CounterSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    storage: StorageConfig = field(default_factory=StorageConfig)
    observability: ObservabilitySettings = field(default_factory=ObservabilitySettings)

    @classmethod
    def from_env(cls) -> Result[ShardCacheConfig, str]:
        """
        Load configuration from environment variables.

        Variables are prefixed with SHARDCACHE_ (plus REDIS_ for the
        Redis cache). Example: SHARDCACHE_COUNTER_MAX_SHARDS.
        """
        try:
            observability = ObservabilitySettings(
                log_level=os.getenv("SHARDCACHE_LOG_LEVEL", "INFO").upper(),
                log_json=os.getenv("SHARDCACHE_LOG_JSON", "true").lower()
                in ("true", "1", "yes"),
                metrics_enabled=os.getenv("SHARDCACHE_METRICS_ENABLED", "true").lower()
                in ("true", "1", "yes"),
            )
            return Ok(cls(
                counter=CounterSettings.from_env(),
                session=SessionSettings.from_env(),
                storage=StorageConfig.from_env(),
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Cross-field invariants."""
        if self.session.kind in (self.counter.config_kind, self.counter.shard_kind):
            return Err("Session kind must differ from counter kinds")
        if self.counter.config_kind == self.counter.shard_kind:
            return Err("Counter config and shard kinds must differ")
        if self.observability.log_level not in (
            "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL",
        ):
            return Err(f"Unknown log level {self.observability.log_level!r}")
        return Ok(None)
