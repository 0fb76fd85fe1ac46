"""
Backend Configuration Module
============================

Settings for the store tier (PostgreSQL) and the cache tier (Redis), and the
selection between those and the in-memory backends.

Design Principles:
------------------
1. **Frozen**: a config never changes after construction
2. **Fail early**: bad values raise ValueError in __post_init__
3. **Environment first**: every config has from_env(); unset variables keep
   the field default
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum, auto
from typing import Any, Callable, Dict, Optional

from shardcache.core import constants as C


# =============================================================================
# ENVIRONMENT HELPERS
# =============================================================================

def _env_reader(prefix: str) -> tuple[
    Callable[[str, str], str],
    Callable[[str, int], int],
    Callable[[str, bool], bool],
]:
    """Build `_get`, `_get_int` and `_get_bool` readers for one prefix."""

    def _get(key: str, default: str = "") -> str:
        return os.environ.get(f"{prefix}_{key}", default)

    def _get_int(key: str, default: int) -> int:
        val = _get(key)
        return int(val) if val else default

    def _get_bool(key: str, default: bool) -> bool:
        val = _get(key).lower()
        if val in ("true", "1", "yes"):
            return True
        if val in ("false", "0", "no"):
            return False
        return default

    return _get, _get_int, _get_bool


# =============================================================================
# ENUMERATIONS
# =============================================================================

class BackendType(Enum):
    """
    Storage backend type enumeration.

    Used for factory dispatch and configuration validation.
    """
    IN_MEMORY = auto()  # Development/testing only
    REDIS = auto()      # Cache tier
    POSTGRES = auto()   # Store tier


_BACKEND_NAMES = {
    "in_memory": BackendType.IN_MEMORY,
    "memory": BackendType.IN_MEMORY,
    "redis": BackendType.REDIS,
    "postgres": BackendType.POSTGRES,
    "postgresql": BackendType.POSTGRES,
}


# =============================================================================
# VALIDATION HELPERS
# =============================================================================

def _check_port(port: int) -> None:
    if not (1 <= port <= 65535):
        raise ValueError(f"port must be in [1, 65535], got {port}")


def _check_positive(config: Any, *names: str) -> None:
    for name in names:
        value = getattr(config, name)
        if value <= 0:
            raise ValueError(f"{name} must be > 0, got {value}")


# =============================================================================
# REDIS CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class RedisConfig:
    """
    Where the cache tier lives and how hard to try reaching it.

    The cache stores raw bytes, so responses are never decoded. Every key
    the library writes is namespaced by `key_prefix`, which lets several
    deployments share one Redis database.

    Example:
        >>> config = RedisConfig.from_env()
        >>> config = RedisConfig(host="cache.internal", key_prefix="staging:")
    """
    host: str = "localhost"
    port: int = 6379
    password: Optional[str] = None
    db: int = 0
    max_connections: int = 50
    connect_timeout_ms: int = 2000
    socket_timeout_ms: int = 5000
    ssl: bool = False
    key_prefix: str = "shardcache:"

    def __post_init__(self) -> None:
        _check_port(self.port)
        if not (0 <= self.db <= 15):
            raise ValueError(f"db must be in [0, 15], got {self.db}")
        _check_positive(self, "max_connections", "connect_timeout_ms", "socket_timeout_ms")

    @classmethod
    def from_env(cls, prefix: str = "REDIS") -> RedisConfig:
        """
        Read {prefix}_HOST, _PORT, _PASSWORD, _DB, _SSL, _MAX_CONNECTIONS,
        _CONNECT_TIMEOUT_MS, _SOCKET_TIMEOUT_MS and _KEY_PREFIX; unset
        variables keep the field default.
        """
        _get, _get_int, _get_bool = _env_reader(prefix)
        defaults = cls()
        return cls(
            host=_get("HOST", defaults.host),
            port=_get_int("PORT", defaults.port),
            password=_get("PASSWORD") or None,
            db=_get_int("DB", defaults.db),
            max_connections=_get_int("MAX_CONNECTIONS", defaults.max_connections),
            connect_timeout_ms=_get_int("CONNECT_TIMEOUT_MS", defaults.connect_timeout_ms),
            socket_timeout_ms=_get_int("SOCKET_TIMEOUT_MS", defaults.socket_timeout_ms),
            ssl=_get_bool("SSL", defaults.ssl),
            key_prefix=_get("KEY_PREFIX", defaults.key_prefix),
        )

    def client_kwargs(self) -> Dict[str, Any]:
        """Keyword arguments for redis.asyncio.Redis()."""
        kwargs: Dict[str, Any] = dict(
            host=self.host,
            port=self.port,
            db=self.db,
            ssl=self.ssl,
            max_connections=self.max_connections,
            socket_connect_timeout=self.connect_timeout_ms / C.SECOND_MS,
            socket_timeout=self.socket_timeout_ms / C.SECOND_MS,
            decode_responses=False,
        )
        if self.password:
            kwargs["password"] = self.password
        return kwargs


# =============================================================================
# POSTGRES CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class PostgresConfig:
    """
    PostgreSQL configuration for the store tier.

    Attributes:
        host, port, database, user, password: Connection target.
        pool_min, pool_max: asyncpg pool bounds.
        query_timeout_ms: Per-statement timeout.
        table: Table holding all records.
    """
    host: str = "localhost"
    port: int = 5432
    database: str = "shardcache"
    user: str = "shardcache"
    password: str = ""
    pool_min: int = C.PG_POOL_MIN
    pool_max: int = C.PG_POOL_MAX
    query_timeout_ms: int = C.PG_QUERY_TIMEOUT_MS
    table: str = "shardcache_records"

    def __post_init__(self) -> None:
        _check_port(self.port)
        if self.pool_min < 0 or self.pool_max < max(self.pool_min, 1):
            raise ValueError(
                f"need 0 <= pool_min <= pool_max and pool_max >= 1, "
                f"got {self.pool_min}..{self.pool_max}"
            )
        _check_positive(self, "query_timeout_ms")
        if not self.table.replace("_", "").isalnum():
            raise ValueError(f"table must be an identifier, got {self.table!r}")

    @classmethod
    def from_env(cls, prefix: str = "SHARDCACHE_PG") -> PostgresConfig:
        """
        Environment Variables:
        - {prefix}_HOST, {prefix}_PORT, {prefix}_DATABASE
        - {prefix}_USER, {prefix}_PASSWORD
        - {prefix}_POOL_MIN, {prefix}_POOL_MAX, {prefix}_QUERY_TIMEOUT_MS
        - {prefix}_TABLE
        """
        _get, _get_int, _ = _env_reader(prefix)
        return cls(
            host=_get("HOST", "localhost"),
            port=_get_int("PORT", 5432),
            database=_get("DATABASE", "shardcache"),
            user=_get("USER", "shardcache"),
            password=_get("PASSWORD"),
            pool_min=_get_int("POOL_MIN", C.PG_POOL_MIN),
            pool_max=_get_int("POOL_MAX", C.PG_POOL_MAX),
            query_timeout_ms=_get_int("QUERY_TIMEOUT_MS", C.PG_QUERY_TIMEOUT_MS),
            table=_get("TABLE", "shardcache_records"),
        )

    @property
    def dsn(self) -> str:
        """PostgreSQL connection string."""
        return (
            f"postgresql://{self.user}:{self.password}@"
            f"{self.host}:{self.port}/{self.database}"
        )


# =============================================================================
# UNIFIED STORAGE CONFIGURATION
# =============================================================================

@dataclass(frozen=True, slots=True)
class StorageConfig:
    """
    Backend selection for the store and the cache.

    Attributes:
        store_backend: IN_MEMORY or POSTGRES.
        cache_backend: IN_MEMORY or REDIS.
        redis_config: Required when cache_backend is REDIS.
        postgres_config: Required when store_backend is POSTGRES.
        cache_max_entries: Capacity of the in-memory cache.
    """
    store_backend: BackendType = BackendType.IN_MEMORY
    cache_backend: BackendType = BackendType.IN_MEMORY
    redis_config: Optional[RedisConfig] = None
    postgres_config: Optional[PostgresConfig] = None
    cache_max_entries: int = C.CACHE_MAX_ENTRIES

    def __post_init__(self) -> None:
        if self.store_backend not in (BackendType.IN_MEMORY, BackendType.POSTGRES):
            raise ValueError(f"unsupported store_backend={self.store_backend.name}")
        if self.cache_backend not in (BackendType.IN_MEMORY, BackendType.REDIS):
            raise ValueError(f"unsupported cache_backend={self.cache_backend.name}")
        if self.cache_backend == BackendType.REDIS and self.redis_config is None:
            raise ValueError("redis_config required when cache_backend=REDIS")
        if self.store_backend == BackendType.POSTGRES and self.postgres_config is None:
            raise ValueError("postgres_config required when store_backend=POSTGRES")
        if self.cache_max_entries <= 0:
            raise ValueError(f"cache_max_entries must be > 0, got {self.cache_max_entries}")

    @classmethod
    def for_testing(cls, redis_config: Optional[RedisConfig] = None) -> StorageConfig:
        """In-memory store; real Redis cache when a config is given."""
        return cls(
            store_backend=BackendType.IN_MEMORY,
            cache_backend=BackendType.REDIS if redis_config else BackendType.IN_MEMORY,
            redis_config=redis_config,
        )

    @classmethod
    def from_env(cls) -> StorageConfig:
        """
        Environment Variables:
        - SHARDCACHE_STORE_BACKEND: in_memory|postgres
        - SHARDCACHE_CACHE_BACKEND: in_memory|redis
        - SHARDCACHE_CACHE_MAX_ENTRIES: in-memory cache capacity

        Plus backend-specific variables (REDIS_*, SHARDCACHE_PG_*).

        Raises:
            ValueError: Unknown backend name or invalid backend settings.
        """
        _get, _get_int, _ = _env_reader("SHARDCACHE")

        def _backend(key: str) -> BackendType:
            name = _get(key, "in_memory").lower()
            if name not in _BACKEND_NAMES:
                raise ValueError(f"unknown backend {name!r} in SHARDCACHE_{key}")
            return _BACKEND_NAMES[name]

        store_backend = _backend("STORE_BACKEND")
        cache_backend = _backend("CACHE_BACKEND")

        return cls(
            store_backend=store_backend,
            cache_backend=cache_backend,
            redis_config=(
                RedisConfig.from_env() if cache_backend == BackendType.REDIS else None
            ),
            postgres_config=(
                PostgresConfig.from_env() if store_backend == BackendType.POSTGRES else None
            ),
            cache_max_entries=_get_int("CACHE_MAX_ENTRIES", C.CACHE_MAX_ENTRIES),
        )


# =============================================================================
# MODULE EXPORTS
# =============================================================================

__all__ = [
    "BackendType",
    "RedisConfig",
    "PostgresConfig",
    "StorageConfig",
]
