"""
PostgreSQL Store Backend

StoreProtocol on asyncpg:
- One table holds every kind; the JSON body lives in a JSONB column
- Ids for incomplete keys come from a sequence
- Transactions run at SERIALIZABLE isolation and are retried on
  serialization failures and deadlocks
- Scans use keyset pagination on (name, id) and JSONB containment filters

Table layout:
    kind TEXT, name TEXT, id BIGINT, body JSONB, updated_at TIMESTAMPTZ
    PRIMARY KEY (kind, name, id)

Complexity:
- get/put/delete: O(log N) primary key lookup
- scan page: O(page) with an index on (kind, name, id)
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, AsyncIterator, Optional, Sequence, TypeVar
from uuid import uuid4

import asyncpg
from asyncpg.exceptions import DeadlockDetectedError, SerializationError

from shardcache.core.errors import (
    NotFoundError,
    ShardCacheError,
    StorageError,
    ValidationError,
)
from shardcache.core import constants as C
from shardcache.core.types import Err, Key, Ok, Result
from shardcache.reliability.retry import RetryPolicy, retry_result
from shardcache.storage.backends import attempt_timeout, is_conflict
from shardcache.storage.config import PostgresConfig
from shardcache.storage.protocols import Filter, Record, ScanPage, TransactionFn

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Rollback(Exception):
    """Unwinds the transaction block when the transaction function returns Err."""

    def __init__(self, result: Result[Any, ShardCacheError]) -> None:
        super().__init__("rollback")
        self.result = result


class _Statements:
    """SQL for one table name."""

    __slots__ = ("schema", "get", "upsert", "delete", "scan", "next_id")

    def __init__(self, table: str) -> None:
        self.schema = (
            f"CREATE TABLE IF NOT EXISTS {table} ("
            " kind TEXT NOT NULL,"
            " name TEXT NOT NULL DEFAULT '',"
            " id BIGINT NOT NULL DEFAULT 0,"
            " body JSONB NOT NULL,"
            " updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),"
            " PRIMARY KEY (kind, name, id));"
            f" CREATE SEQUENCE IF NOT EXISTS {table}_ids;"
        )
        self.get = f"SELECT body FROM {table} WHERE kind = $1 AND name = $2 AND id = $3"
        self.upsert = (
            f"INSERT INTO {table} (kind, name, id, body) VALUES ($1, $2, $3, $4::jsonb)"
            " ON CONFLICT (kind, name, id)"
            " DO UPDATE SET body = EXCLUDED.body, updated_at = now()"
        )
        self.delete = f"DELETE FROM {table} WHERE kind = $1 AND name = $2 AND id = $3"
        self.scan = (
            f"SELECT name, id, body FROM {table}"
            " WHERE kind = $1 AND body @> $2::jsonb AND (name, id) > ($3, $4)"
            " ORDER BY name, id LIMIT $5"
        )
        self.next_id = f"SELECT nextval('{table}_ids')"


def _key_params(key: Key) -> tuple[str, str, int]:
    return (key.kind, key.name, key.id)


def _filter_document(filters: Sequence[Filter]) -> str:
    """JSONB containment document equivalent to the equality filters."""
    return json.dumps({f.field: f.value for f in filters})


class PostgresStore:
    """
    PostgreSQL implementation of StoreProtocol.

    Usage:
        store = (await PostgresStore.create(PostgresConfig.from_env())).unwrap()
        try:
            key = (await store.put(Key.incomplete("Note"), {"text": "hi"})).unwrap()
        finally:
            await store.close()
    """

    __slots__ = ("_config", "_pool", "_sql", "_retry_policy", "_closed")

    def __init__(
        self,
        config: PostgresConfig,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> None:
        self._config = config
        self._pool: Optional[asyncpg.Pool] = None
        self._sql = _Statements(config.table)
        self._retry_policy = retry_policy or RetryPolicy.for_transactions()
        self._closed = False

    @classmethod
    async def create(
        cls,
        config: PostgresConfig,
        retry_policy: Optional[RetryPolicy] = None,
    ) -> Result[PostgresStore, StorageError]:
        """Create the pool and the table."""
        store = cls(config, retry_policy)
        connected = await store.connect()
        if connected.is_err():
            return Err(connected.error)
        return Ok(store)

    async def connect(self) -> Result[None, StorageError]:
        try:
            self._pool = await asyncpg.create_pool(
                host=self._config.host,
                port=self._config.port,
                database=self._config.database,
                user=self._config.user,
                password=self._config.password or None,
                min_size=self._config.pool_min,
                max_size=self._config.pool_max,
                command_timeout=self._config.query_timeout_ms / 1000,
            )
            async with self._pool.acquire() as conn:
                await conn.execute(self._sql.schema)
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError,
                asyncio.TimeoutError) as e:
            return Err(StorageError.connection_failed(
                host=self._config.host, port=self._config.port, cause=e,
            ))

        logger.info(
            "Postgres store initialized",
            extra={
                "host": self._config.host,
                "port": self._config.port,
                "table": self._config.table,
                "pool_size": f"{self._config.pool_min}-{self._config.pool_max}",
            },
        )
        return Ok(None)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pool is not None:
            await self._pool.close()
            logger.info("Postgres store closed")

    async def __aenter__(self) -> PostgresStore:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    def _failure(self, operation: str, e: BaseException) -> StorageError:
        """Map a driver exception onto the storage error taxonomy."""
        if isinstance(e, (SerializationError, DeadlockDetectedError)):
            return StorageError.serialization_conflict("", cause=e)
        if isinstance(e, asyncio.TimeoutError):
            return StorageError.timeout(operation, self._config.query_timeout_ms, cause=e)
        if isinstance(e, (asyncpg.InterfaceError, OSError)):
            return StorageError.connection_failed(
                host=self._config.host, port=self._config.port, cause=e,
            )
        return StorageError.operation_failed(operation, cause=e)

    def _executor(self) -> asyncpg.Pool:
        if self._pool is None or self._closed:
            raise asyncpg.InterfaceError("store is not connected")
        return self._pool

    # -------------------------------------------------------------------------
    # Statement helpers shared by the pool and transaction paths
    # -------------------------------------------------------------------------

    async def _get_with(self, executor: Any, key: Key) -> Result[Record, ShardCacheError]:
        try:
            body = await executor.fetchval(self._sql.get, *_key_params(key))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError,
                asyncio.TimeoutError) as e:
            return Err(self._failure("get", e))
        if body is None:
            return Err(NotFoundError.entity(key.kind, str(key)))
        return Ok(json.loads(body))

    async def _put_with(
        self,
        executor: Any,
        key: Key,
        record: Record,
    ) -> Result[Key, ShardCacheError]:
        try:
            if key.is_incomplete:
                key = key.with_id(await executor.fetchval(self._sql.next_id))
            await executor.execute(self._sql.upsert, *_key_params(key), json.dumps(record))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError,
                asyncio.TimeoutError) as e:
            return Err(self._failure("put", e))
        return Ok(key)

    async def _delete_with(self, executor: Any, key: Key) -> Result[None, ShardCacheError]:
        try:
            await executor.execute(self._sql.delete, *_key_params(key))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError,
                asyncio.TimeoutError) as e:
            return Err(self._failure("delete", e))
        return Ok(None)

    # -------------------------------------------------------------------------
    # StoreProtocol Implementation
    # -------------------------------------------------------------------------

    async def get(self, key: Key) -> Result[Record, ShardCacheError]:
        try:
            pool = self._executor()
        except asyncpg.InterfaceError as e:
            return Err(self._failure("get", e))
        return await self._get_with(pool, key)

    async def put(self, key: Key, record: Record) -> Result[Key, ShardCacheError]:
        try:
            pool = self._executor()
        except asyncpg.InterfaceError as e:
            return Err(self._failure("put", e))
        return await self._put_with(pool, key, record)

    async def delete(self, key: Key) -> Result[None, ShardCacheError]:
        try:
            pool = self._executor()
        except asyncpg.InterfaceError as e:
            return Err(self._failure("delete", e))
        return await self._delete_with(pool, key)

    async def scan(
        self,
        kind: str,
        filters: Sequence[Filter] = (),
        limit: int = 100,
        cursor: Optional[str] = None,
    ) -> Result[ScanPage, ShardCacheError]:
        if limit <= 0:
            return Err(ValidationError.invalid(f"scan limit must be > 0, got {limit}"))
        limit = min(limit, C.MAX_SCAN_LIMIT)

        after_name, after_id = "", -1
        if cursor is not None:
            decoded = Key.decode(cursor)
            if decoded.is_err():
                return Err(ValidationError.invalid(f"scan cursor: {decoded.error}"))
            after_name, after_id = decoded.value.name, decoded.value.id

        try:
            rows = await self._executor().fetch(
                self._sql.scan, kind, _filter_document(filters),
                after_name, after_id, limit + 1,
            )
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError,
                asyncio.TimeoutError) as e:
            return Err(self._failure("scan", e))

        records = [
            (Key(kind=kind, name=row["name"], id=row["id"]), json.loads(row["body"]))
            for row in rows[:limit]
        ]
        next_cursor = records[-1][0].encode() if len(rows) > limit else None
        return Ok(ScanPage(records=records, cursor=next_cursor))

    async def stream_scan(
        self,
        kind: str,
        filters: Sequence[Filter] = (),
        batch_size: int = 100,
    ) -> AsyncIterator[Result[tuple[Key, Record], ShardCacheError]]:
        cursor: Optional[str] = None
        while True:
            result = await self.scan(kind, filters, limit=batch_size, cursor=cursor)
            if result.is_err():
                yield Err(result.error)
                return
            for item in result.value.records:
                yield Ok(item)
            if result.value.done:
                return
            cursor = result.value.cursor

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
        transaction_id = str(uuid4())
        try:
            async with self._executor().acquire() as conn:
                async with conn.transaction(isolation="serializable"):
                    result = await fn(_PostgresTransaction(self, conn))
                    if result.is_err():
                        raise _Rollback(result)
        except _Rollback as rollback:
            return rollback.result
        except (SerializationError, DeadlockDetectedError) as e:
            logger.debug(
                "Transaction conflict",
                extra={"transaction_id": transaction_id, "error": str(e)},
            )
            return Err(StorageError.serialization_conflict(transaction_id, cause=e))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError,
                asyncio.TimeoutError) as e:
            return Err(self._failure("transaction", e))
        return result


class _PostgresTransaction:
    """TransactionProtocol over one connection inside a SERIALIZABLE block."""

    __slots__ = ("_store", "_conn")

    def __init__(self, store: PostgresStore, conn: Any) -> None:
        self._store = store
        self._conn = conn

    async def get(self, key: Key) -> Result[Record, ShardCacheError]:
        return await self._store._get_with(self._conn, key)

    async def put(self, key: Key, record: Record) -> Result[Key, ShardCacheError]:
        return await self._store._put_with(self._conn, key, record)

    async def delete(self, key: Key) -> Result[None, ShardCacheError]:
        return await self._store._delete_with(self._conn, key)
