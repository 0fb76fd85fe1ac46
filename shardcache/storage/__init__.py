"""
Storage Module: Store and Cache Backends
========================================

Provides:
- Protocol definitions for the store and the cache
- In-memory implementations for development/testing
- Production backends (PostgreSQL store, Redis cache)
- Factory functions for backend selection

Design Principles:
-----------------
1. **Backend Agnostic**: Same interface for in-memory and production
2. **Factory Pattern**: Runtime backend selection via configuration
3. **Lazy Loading**: Production backends imported only when selected
4. **Result Monad**: No exceptions for control flow

Example:
    >>> store = create_store()
    >>> cache = create_cache()

    >>> config = StorageConfig.from_env()
    >>> cache = create_cache(config)
    >>> (await cache.connect()).unwrap()   # Redis only
"""

from __future__ import annotations

from typing import Optional

from shardcache.storage.protocols import (
    CacheProtocol,
    Filter,
    Record,
    ScanPage,
    StoreProtocol,
    TransactionProtocol,
)
from shardcache.storage.backends import (
    CacheStats,
    InMemoryCache,
    InMemoryStore,
)
from shardcache.storage.config import (
    BackendType,
    PostgresConfig,
    RedisConfig,
    StorageConfig,
)


# =============================================================================
# FACTORY FUNCTIONS
# =============================================================================

def create_store(config: Optional[StorageConfig] = None) -> StoreProtocol:
    """
    Create the durable store selected by `config`.

    Returns:
        InMemoryStore: If config is None or selects IN_MEMORY.
        PostgresStore: If config selects POSTGRES; call `connect()` first.

    Raises:
        ValueError: POSTGRES selected without a postgres_config.
    """
    if config is not None and config.store_backend == BackendType.POSTGRES:
        from shardcache.storage.postgres_store import PostgresStore

        if config.postgres_config is None:
            raise ValueError("postgres_config required when store_backend=POSTGRES")
        return PostgresStore(config.postgres_config)

    return InMemoryStore()


def create_cache(config: Optional[StorageConfig] = None) -> CacheProtocol:
    """
    Create the best-effort cache selected by `config`.

    Returns:
        InMemoryCache: If config is None or selects IN_MEMORY.
        RedisCache: If config selects REDIS; call `connect()` first.

    Raises:
        ValueError: REDIS selected without a redis_config.
    """
    if config is not None and config.cache_backend == BackendType.REDIS:
        from shardcache.storage.redis_cache import RedisCache

        if config.redis_config is None:
            raise ValueError("redis_config required when cache_backend=REDIS")
        return RedisCache(config.redis_config)

    if config is not None:
        return InMemoryCache(max_entries=config.cache_max_entries)
    return InMemoryCache()


__all__ = [
    # Protocols
    "CacheProtocol",
    "StoreProtocol",
    "TransactionProtocol",
    "Filter",
    "Record",
    "ScanPage",
    # In-memory backends
    "InMemoryStore",
    "InMemoryCache",
    "CacheStats",
    # Configuration
    "BackendType",
    "PostgresConfig",
    "RedisConfig",
    "StorageConfig",
    # Factories
    "create_store",
    "create_cache",
]
