"""
Library-Wide Constants for shardcache

All magic numbers, record kinds and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024
MB: Final[int] = 1024 * KB

SECOND_MS: Final[int] = 1000
MINUTE_S: Final[int] = 60

# =============================================================================
# RECORD KINDS
# =============================================================================
COUNTER_CONFIG_KIND: Final[str] = "CounterConfig"
COUNTER_SHARD_KIND: Final[str] = "GeneralCounterShard"
SESSION_KIND: Final[str] = "ShardCacheSession"

# =============================================================================
# SHARDED COUNTER
# =============================================================================
DEFAULT_SHARDS: Final[int] = 5
MAX_SHARDS: Final[int] = 1000
TOTAL_TTL_SECONDS: Final[int] = 60
SHARD_SCAN_BATCH: Final[int] = 100

# =============================================================================
# CACHE
# =============================================================================
CACHE_MAX_ENTRIES: Final[int] = 10_000
COMPRESSION_THRESHOLD_BYTES: Final[int] = 1 * KB

# =============================================================================
# KEYS
# =============================================================================
MAX_ENCODED_KEY_LENGTH: Final[int] = 4 * KB

# =============================================================================
# STORE (PostgreSQL)
# =============================================================================
PG_POOL_MIN: Final[int] = 2
PG_POOL_MAX: Final[int] = 20
PG_QUERY_TIMEOUT_MS: Final[int] = 30 * SECOND_MS
MAX_SCAN_LIMIT: Final[int] = 10_000

# =============================================================================
# RELIABILITY
# =============================================================================
RETRY_BASE_MS: Final[int] = 50
RETRY_MAX_MS: Final[int] = 2 * SECOND_MS
RETRY_MAX_ATTEMPTS: Final[int] = 5
