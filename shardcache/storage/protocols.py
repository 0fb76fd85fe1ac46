"""
Storage Protocol Definitions: Store and Cache Seams

Structural subtyping protocols (PEP 544) for the two collaborators the core
consumes:
- StoreProtocol: durable, transactional key-value store with filtered scans
- TransactionProtocol: handle passed to functions run inside a transaction
- CacheProtocol: best-effort byte cache with TTL, add and increment

Design Principles:
    - Fallible calls return Result[T, ShardCacheError], never raise
    - Store records are JSON-compatible dicts keyed by `Key`
    - Cache values are opaque bytes keyed by str
    - Cache misses are Ok(None) / Ok(False), not errors

Complexity Analysis:
    - Protocol dispatch: O(1)
    - Actual complexity determined by concrete implementations
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Optional,
    Protocol,
    Sequence,
    TypeVar,
    runtime_checkable,
)

from shardcache.core.errors import CacheError, ShardCacheError
from shardcache.core.types import Key, Result

T = TypeVar("T")

# A store record: JSON-compatible field mapping
Record = dict[str, Any]


# =============================================================================
# SCAN TYPES
# =============================================================================
@dataclass(frozen=True, slots=True)
class Filter:
    """Equality filter on one record field."""

    field: str
    value: Any

    def matches(self, record: Record) -> bool:
        return self.field in record and record[self.field] == self.value


@dataclass(frozen=True, slots=True)
class ScanPage:
    """
    One page of scan results.

    `cursor` resumes the scan after the last record; None means done.
    """

    records: list[tuple[Key, Record]] = field(default_factory=list)
    cursor: Optional[str] = None

    @property
    def done(self) -> bool:
        return self.cursor is None


# =============================================================================
# TRANSACTION PROTOCOL
# =============================================================================
@runtime_checkable
class TransactionProtocol(Protocol):
    """
    Reads and buffered writes inside one store transaction.

    Writes become visible only when the transaction function returns Ok and
    the commit succeeds.
    """

    async def get(self, key: Key) -> Result[Record, ShardCacheError]:
        """
        Returns:
            Ok(record): Record exists (or was written earlier in this transaction)
            Err(NotFoundError): No such record
        """
        ...

    async def put(self, key: Key, record: Record) -> Result[Key, ShardCacheError]:
        """Buffer a write; incomplete keys are completed immediately."""
        ...

    async def delete(self, key: Key) -> Result[None, ShardCacheError]:
        ...


TransactionFn = Callable[[TransactionProtocol], Awaitable[Result[T, ShardCacheError]]]


# =============================================================================
# STORE PROTOCOL
# =============================================================================
@runtime_checkable
class StoreProtocol(Protocol):
    """
    Durable transactional key-value store.

    Example:
        key = (await store.put(Key.incomplete("Note"), {"text": "hi"})).unwrap()
        record = (await store.get(key)).unwrap()
    """

    async def get(self, key: Key) -> Result[Record, ShardCacheError]:
        """
        Returns:
            Ok(record): Record found
            Err(NotFoundError): No such record
            Err(StorageError): Transport failure
        """
        ...

    async def put(self, key: Key, record: Record) -> Result[Key, ShardCacheError]:
        """Upsert; returns the complete key (allocated for incomplete keys)."""
        ...

    async def delete(self, key: Key) -> Result[None, ShardCacheError]:
        """Delete by key; deleting a missing record succeeds."""
        ...

    async def scan(
        self,
        kind: str,
        filters: Sequence[Filter] = (),
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[ScanPage, ShardCacheError]:
        """
        One page of records of `kind` matching every filter, in key order.

        Complexity: O(N) over the kind for in-memory stores
        """
        ...

    def stream_scan(
        self,
        kind: str,
        filters: Sequence[Filter] = (),
        batch_size: int = 100,
    ) -> AsyncIterator[Result[tuple[Key, Record], ShardCacheError]]:
        """
        Iterate all matching records page by page.

        A failing page yields its Err once and ends the iteration.
        """
        ...

    async def run_in_transaction(
        self,
        fn: TransactionFn[T],
    ) -> Result[T, ShardCacheError]:
        """
        Run `fn` in a transaction, retrying it on commit conflicts.

        `fn` may run several times and must not have side effects outside
        the transaction. An Err from `fn` aborts without writing.
        """
        ...


# =============================================================================
# CACHE PROTOCOL
# =============================================================================
@runtime_checkable
class CacheProtocol(Protocol):
    """
    Best-effort byte cache.

    Nothing stored here is authoritative; entries may vanish at any time.
    """

    async def get(self, key: str) -> Result[Optional[bytes], CacheError]:
        """Ok(None) on miss."""
        ...

    async def set(
        self,
        key: str,
        value: bytes,
        ttl_seconds: Optional[int] = None,
    ) -> Result[None, CacheError]:
        """Store unconditionally; None or 0 TTL means no expiry."""
        ...

    async def add(
        self,
        key: str,
        value: bytes,
        ttl_seconds: Optional[int] = None,
    ) -> Result[bool, CacheError]:
        """Store only if absent; Ok(False) when the key already exists."""
        ...

    async def delete(self, key: str) -> Result[bool, CacheError]:
        """Ok(False) when there was nothing to delete."""
        ...

    async def increment_existing(
        self,
        key: str,
        delta: int,
    ) -> Result[Optional[int], CacheError]:
        """Add `delta` to a decimal entry; Ok(None) and no write when absent."""
        ...
