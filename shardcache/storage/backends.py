"""
In-Memory Backends: Development and Testing Implementations

Provides in-memory implementations of the storage protocols:
- InMemoryStore: transactional record store with optimistic concurrency
- InMemoryCache: TTL + LRU byte cache with memcache-style add/increment

Design Principles:
    - Full protocol compliance for seamless production swap
    - State guarded by an asyncio.Lock
    - Stored records are copied in and out, never shared with callers

Performance Characteristics:
    - Get/Put/Delete: O(1) average case
    - Scan: O(N log N) over the records of one kind
    - Commit: O(r + w) for r reads and w writes
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional, Sequence, TypeVar
from uuid import uuid4

from shardcache.core import constants as C
from shardcache.core.errors import (
    CacheError,
    NotFoundError,
    ShardCacheError,
    StorageError,
    ValidationError,
)
from shardcache.core.types import Err, Key, Ok, Result
from shardcache.reliability.retry import RetryPolicy, retry_result
from shardcache.storage.protocols import (
    Filter,
    Record,
    ScanPage,
    TransactionFn,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def is_conflict(error: ShardCacheError) -> bool:
    """Retry predicate for run_in_transaction."""
    return isinstance(error, StorageError) and error.retryable


def attempt_timeout(policy: RetryPolicy) -> Callable[[], StorageError]:
    """Error for a transaction attempt cut off by policy.request_timeout_s."""
    duration_ms = int((policy.request_timeout_s or 0) * C.SECOND_MS)
    return lambda: StorageError.timeout("transaction", duration_ms)


# =============================================================================
# VERSIONED RECORD
# =============================================================================
@dataclass(slots=True)
class VersionedRecord:
    """
    Stored record with version tracking for OCC.

    Versions come from one store-wide counter, so a deleted and recreated
    record never reuses a version a reader may have seen.
    """

    value: Record
    version: int
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


# =============================================================================
# IN-MEMORY STORE
# =============================================================================
class InMemoryStore:
    """
    In-memory transactional store.

    Features:
        - Optimistic Concurrency Control: reads record versions, commit
          validates them and fails with a serialization conflict on change
        - Conflicting transactions retried with jittered backoff
        - Id allocation for incomplete keys
        - Cursor-paginated, field-filtered scans per kind

    Example:
        store = InMemoryStore()
        key = (await store.put(Key.named("Note", "a"), {"text": "hi"})).unwrap()

        async def bump(txn):
            rec = (await txn.get(key)).unwrap()
            rec["views"] = rec.get("views", 0) + 1
            return await txn.put(key, rec)

        await store.run_in_transaction(bump)
    """

    __slots__ = (
        "_data",
        "_lock",
        "_next_id",
        "_version_counter",
        "_retry_policy",
        "_simulate_latency_s",
    )

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        simulate_latency_s: float = 0.0,
    ) -> None:
        """
        Args:
            retry_policy: Policy for conflicting transactions
            simulate_latency_s: Sleep before every operation, widening
                the window for interleaving in concurrency tests
        """
        self._data: dict[Key, VersionedRecord] = {}
        self._lock = asyncio.Lock()
        self._next_id = 0
        self._version_counter = 0
        self._retry_policy = retry_policy or RetryPolicy.for_transactions()
        self._simulate_latency_s = simulate_latency_s

    async def _simulate_network_latency(self) -> None:
        if self._simulate_latency_s > 0:
            await asyncio.sleep(self._simulate_latency_s)

    def _allocate_id(self) -> int:
        self._next_id += 1
        return self._next_id

    def _complete(self, key: Key) -> Key:
        return key.with_id(self._allocate_id()) if key.is_incomplete else key

    def _write(self, key: Key, value: Record) -> None:
        """Apply one write. Caller holds the lock."""
        self._version_counter += 1
        existing = self._data.get(key)
        self._data[key] = VersionedRecord(
            value=copy.deepcopy(value),
            version=self._version_counter,
            created_at=existing.created_at if existing else datetime.now(timezone.utc),
        )

    def _version_of(self, key: Key) -> int:
        record = self._data.get(key)
        return record.version if record is not None else 0

    # -------------------------------------------------------------------------
    # StoreProtocol Implementation
    # -------------------------------------------------------------------------

    async def get(self, key: Key) -> Result[Record, ShardCacheError]:
        await self._simulate_network_latency()
        async with self._lock:
            record = self._data.get(key)
            if record is None:
                return Err(NotFoundError.entity(key.kind, str(key)))
            return Ok(copy.deepcopy(record.value))

    async def put(self, key: Key, record: Record) -> Result[Key, ShardCacheError]:
        await self._simulate_network_latency()
        async with self._lock:
            key = self._complete(key)
            self._write(key, record)
        return Ok(key)

    async def delete(self, key: Key) -> Result[None, ShardCacheError]:
        await self._simulate_network_latency()
        async with self._lock:
            self._data.pop(key, None)
        return Ok(None)

    async def scan(
        self,
        kind: str,
        filters: Sequence[Filter] = (),
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[ScanPage, ShardCacheError]:
        """
        One page of matching records in key order.

        The cursor is the encoded key of the last record returned, so pages
        stay stable while other records are written.
        """
        if limit <= 0:
            return Err(ValidationError.invalid(f"scan limit must be > 0, got {limit}"))
        limit = min(limit, C.MAX_SCAN_LIMIT)

        after: Optional[Key] = None
        if cursor is not None:
            decoded = Key.decode(cursor)
            if decoded.is_err():
                return Err(ValidationError.invalid(f"scan cursor: {decoded.error}"))
            after = decoded.value

        await self._simulate_network_latency()
        async with self._lock:
            keys = sorted(
                k for k, rec in self._data.items()
                if k.kind == kind
                and (after is None or k > after)
                and all(f.matches(rec.value) for f in filters)
            )
            page_keys = keys[:limit]
            records = [(k, copy.deepcopy(self._data[k].value)) for k in page_keys]

        next_cursor = page_keys[-1].encode() if len(keys) > limit else None
        return Ok(ScanPage(records=records, cursor=next_cursor))

    async def stream_scan(
        self,
        kind: str,
        filters: Sequence[Filter] = (),
        batch_size: int = 100,
    ) -> AsyncIterator[Result[tuple[Key, Record], ShardCacheError]]:
        """Stream matching records page by page."""
        cursor: Optional[str] = None
        while True:
            result = await self.scan(kind, filters, limit=batch_size, cursor=cursor)
            if result.is_err():
                yield Err(result.error)
                return

            page = result.value
            for item in page.records:
                yield Ok(item)

            if page.done:
                return
            cursor = page.cursor

    async def run_in_transaction(
        self,
        fn: TransactionFn[T],
        policy: Optional[RetryPolicy] = None,
    ) -> Result[T, ShardCacheError]:
        policy = policy or self._retry_policy
        return await retry_result(
            lambda: self._attempt(fn),
            policy,
            retryable=is_conflict,
            on_timeout=attempt_timeout(policy),
        )

    async def _attempt(self, fn: TransactionFn[T]) -> Result[T, ShardCacheError]:
        txn = _InMemoryTransaction(self)
        result = await fn(txn)
        if result.is_err():
            return result

        committed = await self._commit(txn)
        if committed.is_err():
            return Err(committed.error)
        return result

    async def _commit(self, txn: _InMemoryTransaction) -> Result[None, ShardCacheError]:
        """Validate the read set, then apply buffered writes atomically."""
        await self._simulate_network_latency()
        async with self._lock:
            for key, seen_version in txn.reads.items():
                if self._version_of(key) != seen_version:
                    logger.debug(
                        "Transaction conflict",
                        extra={"transaction_id": txn.transaction_id, "key": str(key)},
                    )
                    return Err(StorageError.serialization_conflict(
                        txn.transaction_id, key=str(key)
                    ))

            for key, value in txn.writes.items():
                if value is None:
                    self._data.pop(key, None)
                else:
                    self._write(key, value)
        return Ok(None)

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    async def clear(self) -> None:
        """Clear all data (for testing)."""
        async with self._lock:
            self._data.clear()

    async def count(self, kind: Optional[str] = None) -> int:
        """Number of stored records, optionally of one kind."""
        async with self._lock:
            if kind is None:
                return len(self._data)
            return sum(1 for k in self._data if k.kind == kind)


class _InMemoryTransaction:
    """
    Transaction handle for InMemoryStore.

    Records the version of every key read and buffers writes until commit.
    A buffered value of None is a delete.
    """

    __slots__ = ("_store", "transaction_id", "reads", "writes")

    def __init__(self, store: InMemoryStore) -> None:
        self._store = store
        self.transaction_id = str(uuid4())
        self.reads: dict[Key, int] = {}
        self.writes: dict[Key, Optional[Record]] = {}

    async def get(self, key: Key) -> Result[Record, ShardCacheError]:
        if key in self.writes:
            buffered = self.writes[key]
            if buffered is None:
                return Err(NotFoundError.entity(key.kind, str(key)))
            return Ok(copy.deepcopy(buffered))

        await self._store._simulate_network_latency()
        async with self._store._lock:
            record = self._store._data.get(key)
            self.reads.setdefault(key, record.version if record is not None else 0)
            if record is None:
                return Err(NotFoundError.entity(key.kind, str(key)))
            return Ok(copy.deepcopy(record.value))

    async def put(self, key: Key, record: Record) -> Result[Key, ShardCacheError]:
        if key.is_incomplete:
            async with self._store._lock:
                key = self._store._complete(key)
        self.writes[key] = copy.deepcopy(record)
        return Ok(key)

    async def delete(self, key: Key) -> Result[None, ShardCacheError]:
        self.writes[key] = None
        return Ok(None)


# =============================================================================
# IN-MEMORY CACHE
# =============================================================================
@dataclass
class CacheStats:
    """Cache performance statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.hits + self.misses
        return self.hits / total if total else 0.0


@dataclass(slots=True)
class _CacheEntry:
    value: bytes
    expires_at: Optional[float] = None


class InMemoryCache:
    """
    In-memory best-effort cache.

    Features:
        - Per-entry TTL (None or 0 means no expiry)
        - LRU eviction at max_entries
        - add-if-absent and increment-if-present with memcache semantics
        - Hit/miss statistics

    The clock is injectable so tests can expire entries without sleeping.

    Example:
        cache = InMemoryCache(max_entries=1000)
        await cache.set("greeting", b"hello", ttl_seconds=60)
        value = (await cache.get("greeting")).unwrap()
    """

    __slots__ = ("_entries", "_lock", "_max_entries", "_clock", "_stats")

    def __init__(
        self,
        max_entries: int = C.CACHE_MAX_ENTRIES,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries <= 0:
            raise ValueError(f"max_entries must be > 0, got {max_entries}")
        self._entries: OrderedDict[str, _CacheEntry] = OrderedDict()
        self._lock = asyncio.Lock()
        self._max_entries = max_entries
        self._clock = clock
        self._stats = CacheStats()

    def _expiry(self, ttl_seconds: Optional[int]) -> Optional[float]:
        if not ttl_seconds:
            return None
        return self._clock() + ttl_seconds

    def _live(self, key: str) -> Optional[_CacheEntry]:
        """Entry for key unless absent or expired. Caller holds the lock."""
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._clock() >= entry.expires_at:
            del self._entries[key]
            self._stats.expirations += 1
            return None
        return entry

    def _store(self, key: str, entry: _CacheEntry) -> None:
        """Insert with LRU eviction. Caller holds the lock."""
        self._entries[key] = entry
        self._entries.move_to_end(key)
        self._stats.sets += 1
        while len(self._entries) > self._max_entries:
            self._entries.popitem(last=False)
            self._stats.evictions += 1

    # -------------------------------------------------------------------------
    # CacheProtocol Implementation
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Result[Optional[bytes], CacheError]:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                self._stats.misses += 1
                return Ok(None)
            self._entries.move_to_end(key)
            self._stats.hits += 1
            return Ok(entry.value)

    async def set(
        self,
        key: str,
        value: bytes,
        ttl_seconds: Optional[int] = None,
    ) -> Result[None, CacheError]:
        async with self._lock:
            self._store(key, _CacheEntry(bytes(value), self._expiry(ttl_seconds)))
        return Ok(None)

    async def add(
        self,
        key: str,
        value: bytes,
        ttl_seconds: Optional[int] = None,
    ) -> Result[bool, CacheError]:
        async with self._lock:
            if self._live(key) is not None:
                return Ok(False)
            self._store(key, _CacheEntry(bytes(value), self._expiry(ttl_seconds)))
        return Ok(True)

    async def delete(self, key: str) -> Result[bool, CacheError]:
        async with self._lock:
            if self._live(key) is None:
                return Ok(False)
            del self._entries[key]
        return Ok(True)

    async def increment_existing(
        self,
        key: str,
        delta: int,
    ) -> Result[Optional[int], CacheError]:
        async with self._lock:
            entry = self._live(key)
            if entry is None:
                return Ok(None)
            try:
                current = int(entry.value.decode("ascii"))
            except (UnicodeDecodeError, ValueError) as e:
                return Err(CacheError.operation_failed("increment", e))
            updated = current + delta
            entry.value = str(updated).encode("ascii")
            self._entries.move_to_end(key)
        return Ok(updated)

    # -------------------------------------------------------------------------
    # Utility Methods
    # -------------------------------------------------------------------------

    @property
    def stats(self) -> CacheStats:
        return self._stats

    async def clear(self) -> None:
        """Clear all entries (for testing)."""
        async with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
