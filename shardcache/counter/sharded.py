"""
Sharded Counter: Contention-Free Counting over a Transactional Store

A named counter is split across N shard records so concurrent increments
land on different records:

    CounterConfig(name)            {"shards": N}          N never decreases
    GeneralCounterShard(name-shardI)  {"name": name, "count": c}
    cache "GeneralCounterShard:<name>"  decimal total, short TTL

Increment:
    1. Transaction: read config, write the default if absent
    2. Pick I uniformly in [0, N)
    3. Transaction: read shard I (missing = 0), add 1, write
    4. Best-effort: add 1 to the cached total if one exists

Count:
    Cached total if present; otherwise sum every shard of the counter via a
    paged scan, cache the sum with the TTL and return it.

Consistency:
    Count is eventually consistent with in-flight increments and may be
    stale for up to the TTL. The shard scan is not a snapshot.

Complexity:
    increment: O(1) store round-trips (two transactions)
    count: O(1) on a cache hit, O(N) on a miss
"""

from __future__ import annotations

import logging
import random
from typing import Optional

from shardcache.core.config import CounterSettings
from shardcache.core.errors import (
    ShardCacheError,
    ValidationError,
    is_not_found,
)
from shardcache.core.types import Err, Key, Ok, Result
from shardcache.observability.metrics import LibraryMetrics
from shardcache.storage.best_effort import BestEffortCache
from shardcache.storage.protocols import (
    CacheProtocol,
    Filter,
    Record,
    StoreProtocol,
    TransactionProtocol,
)

logger = logging.getLogger(__name__)


def _shards_of(record: Record, default: int) -> int:
    shards = record.get("shards", default)
    return shards if isinstance(shards, int) and shards >= 1 else default


class ShardedCounter:
    """
    Named counters spread over shard records.

    Holds no counter state of its own; any number of instances may work on
    the same counters concurrently.

    Usage:
        counter = ShardedCounter(store, cache)
        await counter.increment("hits")
        total = (await counter.count("hits")).unwrap()
        await counter.increase_shards("hits", 20)
    """

    __slots__ = ("_store", "_cache", "_settings", "_metrics", "_rng")

    def __init__(
        self,
        store: StoreProtocol,
        cache: Optional[CacheProtocol],
        settings: Optional[CounterSettings] = None,
        metrics: Optional[LibraryMetrics] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        """
        Args:
            store: Durable store holding configs and shards
            cache: Best-effort cache for totals (None disables caching)
            settings: Shard defaults, limits and record kinds
            metrics: Metric set to record into
            rng: Shard picker; seed one for reproducible tests
        """
        self._store = store
        self._settings = settings or CounterSettings()
        self._metrics = metrics or LibraryMetrics()
        self._cache = BestEffortCache(cache, component="counter", metrics=self._metrics)
        self._rng = rng or random.Random()

    # -------------------------------------------------------------------------
    # Keys
    # -------------------------------------------------------------------------

    def config_key(self, name: str) -> Key:
        return Key.named(self._settings.config_kind, name)

    def shard_key(self, name: str, index: int) -> Key:
        return Key.named(self._settings.shard_kind, f"{name}-shard{index}")

    def total_cache_key(self, name: str) -> str:
        return f"{self._settings.shard_kind}:{name}"

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    async def increment(self, name: str) -> Result[None, ShardCacheError]:
        """
        Add one to the counter.

        Returns:
            Ok(None) after the shard write committed
            Err(ValidationError): empty name
            Err(StorageError): either transaction failed; safe to retry
        """
        if not name:
            return Err(ValidationError.missing("counter name"))

        shards = await self._store.run_in_transaction(
            lambda txn: self._ensure_config(txn, name)
        )
        if shards.is_err():
            return self._failed("increment", name, shards.error)

        index = self._rng.randrange(shards.value)
        shard_key = self.shard_key(name, index)

        async def bump(txn: TransactionProtocol) -> Result[None, ShardCacheError]:
            got = await txn.get(shard_key)
            if got.is_ok():
                count = int(got.value.get("count", 0))
            elif is_not_found(got.error):
                count = 0
            else:
                return Err(got.error)
            put = await txn.put(shard_key, {"name": name, "count": count + 1})
            return Err(put.error) if put.is_err() else Ok(None)

        bumped = await self._store.run_in_transaction(bump)
        if bumped.is_err():
            return self._failed("increment", name, bumped.error)

        await self._cache.try_increment(self.total_cache_key(name), 1)
        self._metrics.counter_ops.inc(operation="increment", outcome="ok")
        return Ok(None)

    async def count(self, name: str) -> Result[int, ShardCacheError]:
        """
        Current total, possibly stale by up to the cache TTL.

        Returns:
            Ok(total): cached or freshly aggregated total (0 for unknown names)
            Err(StorageError): the shard scan failed
        """
        if not name:
            return Err(ValidationError.missing("counter name"))

        total_key = self.total_cache_key(name)
        cached = await self._cache.try_get(total_key)
        if cached is not None:
            try:
                total = int(cached.decode("ascii"))
            except (UnicodeDecodeError, ValueError):
                logger.debug("Ignoring malformed cached total", extra={"counter": name})
            else:
                self._metrics.counter_ops.inc(operation="count", outcome="cached")
                return Ok(total)

        total = 0
        async for item in self._store.stream_scan(
            self._settings.shard_kind,
            (Filter("name", name),),
            batch_size=self._settings.scan_batch_size,
        ):
            if item.is_err():
                return self._failed("count", name, item.error)
            _, record = item.value
            total += int(record.get("count", 0))

        await self._cache.try_set(
            total_key,
            str(total).encode("ascii"),
            ttl_seconds=self._settings.total_ttl_seconds,
        )
        self._metrics.counter_ops.inc(operation="count", outcome="scanned")
        return Ok(total)

    async def increase_shards(self, name: str, n: int) -> Result[int, ShardCacheError]:
        """
        Grow the counter to at least `n` shards. Never shrinks.

        `n` is the total shard count wanted, not a delta.

        Returns:
            Ok(shards): shard count after the call
            Err(ValidationError): empty name, n < 1 or n above max_shards
            Err(StorageError): the transaction failed
        """
        if not name:
            return Err(ValidationError.missing("counter name"))
        if n < 1:
            return Err(ValidationError.invalid(f"shard count must be >= 1, got {n}"))
        if n > self._settings.max_shards:
            return Err(ValidationError.invalid(
                f"shard count {n} exceeds the limit of {self._settings.max_shards}"
            ))

        key = self.config_key(name)
        default = self._settings.default_shards

        async def grow(txn: TransactionProtocol) -> Result[int, ShardCacheError]:
            got = await txn.get(key)
            if got.is_ok():
                current, created = _shards_of(got.value, default), False
            elif is_not_found(got.error):
                current, created = default, True
            else:
                return Err(got.error)

            changed = current < n
            if changed:
                current = n
            if changed or created:
                put = await txn.put(key, {"shards": current})
                if put.is_err():
                    return Err(put.error)
            return Ok(current)

        result = await self._store.run_in_transaction(grow)
        if result.is_err():
            return self._failed("increase_shards", name, result.error)

        logger.info("Counter shards set", extra={"counter": name, "shards": result.value})
        self._metrics.counter_ops.inc(operation="increase_shards", outcome="ok")
        return result

    async def shard_count(self, name: str) -> Result[int, ShardCacheError]:
        """Configured shard count; the default when the counter is unknown. Never writes."""
        if not name:
            return Err(ValidationError.missing("counter name"))
        got = await self._store.get(self.config_key(name))
        if got.is_ok():
            return Ok(_shards_of(got.value, self._settings.default_shards))
        if is_not_found(got.error):
            return Ok(self._settings.default_shards)
        return self._failed("shard_count", name, got.error)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    async def _ensure_config(
        self,
        txn: TransactionProtocol,
        name: str,
    ) -> Result[int, ShardCacheError]:
        """Read the config, creating it with the default when absent."""
        key = self.config_key(name)
        default = self._settings.default_shards

        got = await txn.get(key)
        if got.is_ok():
            return Ok(_shards_of(got.value, default))
        if not is_not_found(got.error):
            return Err(got.error)

        put = await txn.put(key, {"shards": default})
        return Err(put.error) if put.is_err() else Ok(default)

    def _failed(
        self,
        operation: str,
        name: str,
        error: ShardCacheError,
    ) -> Result[int, ShardCacheError]:
        logger.warning(
            "Counter operation failed",
            extra={
                "operation": operation,
                "counter": name,
                "error_code": error.code.name,
                "error": error.message,
            },
        )
        self._metrics.counter_ops.inc(operation=operation, outcome="error")
        return Err(error)
