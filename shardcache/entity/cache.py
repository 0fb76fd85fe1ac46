"""
EntityCache: Cache-Aside Persistence for Model Records

Read path (retrieve):
    cache[id] hit  -> decode snapshot -> load into record
    miss / corrupt -> decode id -> store.get -> load -> cache[id] = snapshot

Write path (save / save_and_cache):
    validation_errors() -> presave() -> store.put(make_key()) -> set_key()
    -> cache[encoded key] = snapshot          (save_and_cache only)

Delete path:
    cache.delete(encoded key) -> store.delete(key)

Design Principles:
    - The store is authoritative; the cache only ever shortens reads
    - Cache failures never surface (see BestEffortCache)
    - Store failures surface unchanged, including NotFound
    - Validation fails before any I/O

A cached snapshot may lag the store until the next save_and_cache or
delete; writers that bypass this class leave stale entries behind.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Optional, TypeVar

from shardcache.core import constants as C
from shardcache.core.errors import (
    NilError,
    ShardCacheError,
    ValidationError,
)
from shardcache.core.types import Err, Key, Ok, Result
from shardcache.entity.model import Model, Presaver
from shardcache.observability.metrics import LibraryMetrics
from shardcache.storage import codec
from shardcache.storage.best_effort import BestEffortCache
from shardcache.storage.protocols import CacheProtocol, StoreProtocol

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=Model)


class Backfill(Enum):
    """How a store read is mirrored into the cache."""

    SET = "set"   # overwrite unconditionally
    ADD = "add"   # only if no entry appeared meanwhile


def is_valid(record: Model) -> bool:
    """True when the record reports no validation errors."""
    return not record.validation_errors()


def read_id(record: Model) -> str:
    """Encoded key of a stored record, or "" when it has none yet."""
    key = record.key()
    if key is None or key.is_incomplete:
        return ""
    return key.encode()


def _decode_id(id: str) -> Result[Key, ShardCacheError]:
    decoded = Key.decode(id)
    if decoded.is_err():
        return Err(ValidationError.invalid(decoded.error))
    return Ok(decoded.value)


class EntityCache:
    """
    Cache-aside front for a store.

    Usage:
        entities = EntityCache(store, cache)
        key = (await entities.save_and_cache(article)).unwrap()
        loaded = await entities.retrieve(key.encode(), Article())
    """

    __slots__ = ("_store", "_cache", "_metrics", "_threshold")

    def __init__(
        self,
        store: Optional[StoreProtocol],
        cache: Optional[CacheProtocol],
        metrics: Optional[LibraryMetrics] = None,
        compression_threshold: int = C.COMPRESSION_THRESHOLD_BYTES,
    ) -> None:
        self._store = store
        self._metrics = metrics or LibraryMetrics()
        self._cache = BestEffortCache(cache, component="entity", metrics=self._metrics)
        self._threshold = compression_threshold

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def retrieve(
        self,
        id: str,
        into: M,
        backfill: Backfill = Backfill.SET,
    ) -> Result[M, ShardCacheError]:
        """
        Load the record with encoded key `id`, cache first.

        Returns:
            Ok(into): record loaded and keyed
            Err(ValidationError): `id` is not an encoded key (cache miss only)
            Err(NotFoundError | StorageError): store outcome, unchanged
        """
        if self._store is None:
            return Err(NilError.missing_collaborator("store"))

        raw = await self._cache.try_get(id)
        if raw is not None and self._load_snapshot(id, raw, into):
            decoded = Key.decode(id)
            if decoded.is_ok():
                into.set_key(decoded.value)
            return Ok(into)

        loaded = await self.load_by_id(id, into)
        if loaded.is_err():
            return loaded

        snapshot = self._snapshot(into)
        if backfill is Backfill.ADD:
            await self._cache.try_add(id, snapshot)
        else:
            await self._cache.try_set(id, snapshot)
        return loaded

    async def retrieve_by_key(
        self,
        key: Key,
        into: M,
        backfill: Backfill = Backfill.SET,
    ) -> Result[M, ShardCacheError]:
        return await self.retrieve(key.encode(), into, backfill)

    async def load_by_key(self, key: Key, into: M) -> Result[M, ShardCacheError]:
        """Store read without touching the cache."""
        if self._store is None:
            return Err(NilError.missing_collaborator("store"))

        with self._metrics.store_latency.time(operation="get"):
            got = await self._store.get(key)
        if got.is_err():
            return Err(got.error)

        loaded = into.load_dict(got.value)
        if loaded.is_err():
            return Err(loaded.error)
        into.set_key(key)
        return Ok(into)

    async def load_by_id(self, id: str, into: M) -> Result[M, ShardCacheError]:
        decoded = _decode_id(id)
        if decoded.is_err():
            return Err(decoded.error)
        return await self.load_by_key(decoded.value, into)

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def save(self, record: Optional[Model]) -> Result[Key, ShardCacheError]:
        """
        Validate, run presave, write, and key the record.

        Returns:
            Ok(key): complete key the record was written under
            Err(ValidationError): record invalid; nothing was written
            Err(NilError): no record or no store
            Err(StorageError): the put failed
        """
        if record is None:
            return Err(NilError.missing_collaborator("record"))
        if self._store is None:
            return Err(NilError.missing_collaborator("store"))

        violations = record.validation_errors()
        if violations:
            return Err(ValidationError.invalid_record(violations))

        if isinstance(record, Presaver):
            record.presave()

        with self._metrics.store_latency.time(operation="put"):
            put = await self._store.put(record.make_key(), record.to_dict())
        if put.is_err():
            logger.warning(
                "Entity save failed",
                extra={"error_code": put.error.code.name, "error": put.error.message},
            )
            return Err(put.error)

        record.set_key(put.value)
        return Ok(put.value)

    async def save_and_cache(self, record: Optional[Model]) -> Result[Key, ShardCacheError]:
        """save(), then mirror the snapshot into the cache with no expiry."""
        saved = await self.save(record)
        if saved.is_err():
            return saved
        await self._cache.try_set(saved.value.encode(), self._snapshot(record))
        return saved

    async def delete_by_key(self, key: Key) -> Result[None, ShardCacheError]:
        """Drop the cache entry, then the record. Returns the store outcome."""
        if self._store is None:
            return Err(NilError.missing_collaborator("store"))
        await self._cache.try_delete(key.encode())
        with self._metrics.store_latency.time(operation="delete"):
            return await self._store.delete(key)

    async def delete_by_id(self, id: str) -> Result[None, ShardCacheError]:
        decoded = _decode_id(id)
        if decoded.is_err():
            return Err(decoded.error)
        return await self.delete_by_key(decoded.value)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    def _snapshot(self, record: Model) -> Optional[bytes]:
        try:
            return codec.encode(record.to_dict(), self._threshold)
        except (TypeError, ValueError) as e:
            logger.debug(
                "Record not cacheable",
                extra={"record_type": type(record).__name__, "error": str(e)},
            )
            return None

    def _load_snapshot(self, id: str, raw: bytes, into: Model) -> bool:
        decoded = codec.decode(raw, origin="entity cache")
        if decoded.is_ok():
            loaded = into.load_dict(decoded.value)
            if loaded.is_ok():
                return True
            error = loaded.error
        else:
            error = decoded.error
        logger.debug(
            "Ignoring corrupt cache entry",
            extra={"cache_key": id, "error": error.message},
        )
        self._metrics.cache_lookups.inc(component="entity", outcome="corrupt")
        return False
