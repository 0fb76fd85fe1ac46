"""
shardcache: Sharded Counters, Cache-Aside Entities and Sessions

Three components layered over a transactional store and a best-effort cache:
- ShardedCounter: high write-throughput named counters with cached totals
- EntityCache: cache-aside read/write/delete for validated records
- SessionStore: expiring bearer tokens checked against cache then store

Backends:
- Store: in-memory (OCC) or PostgreSQL (SERIALIZABLE, asyncpg)
- Cache: in-memory (TTL + LRU) or Redis (redis.asyncio)

Consistency:
- The store is authoritative; the cache is never required for correctness
- Counter totals may lag committed increments by up to the cache TTL
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from shardcache.core.types import (
    Result,
    Ok,
    Err,
    Key,
    DateTime,
)
from shardcache.core.errors import (
    ErrorCode,
    ShardCacheError,
    NotFoundError,
    ValidationError,
    MismatchError,
    NilError,
    DecodeError,
    StorageError,
    CacheError,
    is_not_found,
    is_validation_error,
    is_mismatch_error,
    is_nil_error,
    is_decode_error,
    is_transport_error,
)
from shardcache.core.config import (
    CounterSettings,
    SessionSettings,
    ShardCacheConfig,
)

from shardcache.storage import (
    CacheProtocol,
    StoreProtocol,
    InMemoryCache,
    InMemoryStore,
    StorageConfig,
    create_cache,
    create_store,
)
from shardcache.counter import ShardedCounter
from shardcache.entity import (
    Backfill,
    Entity,
    EntityCache,
    Model,
    Presaver,
    Updatable,
    apply_update,
    is_valid,
    read_id,
)
from shardcache.session import Session, SessionCookie, SessionStore

__all__ = [
    # Version
    "__version__",
    # Core types
    "Result",
    "Ok",
    "Err",
    "Key",
    "DateTime",
    # Errors
    "ErrorCode",
    "ShardCacheError",
    "NotFoundError",
    "ValidationError",
    "MismatchError",
    "NilError",
    "DecodeError",
    "StorageError",
    "CacheError",
    "is_not_found",
    "is_validation_error",
    "is_mismatch_error",
    "is_nil_error",
    "is_decode_error",
    "is_transport_error",
    # Configuration
    "CounterSettings",
    "SessionSettings",
    "ShardCacheConfig",
    "StorageConfig",
    # Storage
    "CacheProtocol",
    "StoreProtocol",
    "InMemoryCache",
    "InMemoryStore",
    "create_cache",
    "create_store",
    # Components
    "ShardedCounter",
    "Backfill",
    "Entity",
    "EntityCache",
    "Model",
    "Presaver",
    "Updatable",
    "apply_update",
    "is_valid",
    "read_id",
    "Session",
    "SessionCookie",
    "SessionStore",
]
