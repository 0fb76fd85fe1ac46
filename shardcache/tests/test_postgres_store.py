"""
Unit Tests: PostgreSQL Store

Runs the store against a fake asyncpg pool, so no database is needed.

Tests:
    - SQL generation per table
    - Driver exception mapping
    - CRUD and id allocation through the pool
    - Transactions: commit, rollback on Err, retry on serialization failure
"""

import asyncio
import json

import asyncpg
import pytest
from asyncpg.exceptions import SerializationError

from shardcache.core.errors import ErrorCode, is_not_found
from shardcache.core.types import Err, Key, Ok
from shardcache.reliability.retry import RetryPolicy
from shardcache.storage import Filter, PostgresConfig, StoreProtocol
from shardcache.storage.postgres_store import PostgresStore, _filter_document, _Statements


class FakeConnection:
    """Just enough of an asyncpg connection for the store's statements."""

    def __init__(self, rows: dict, fail_commits: int = 0) -> None:
        self.rows = rows
        self.sequence = 0
        self.fail_commits = fail_commits
        self.committed = 0
        self.rolled_back = 0

    async def fetchval(self, sql, *args):
        if "nextval" in sql:
            self.sequence += 1
            return self.sequence
        return self.rows.get(args)

    async def execute(self, sql, *args):
        if sql.startswith("INSERT"):
            self.rows[args[:3]] = args[3]
        elif sql.startswith("DELETE"):
            self.rows.pop(args, None)
        return "OK"

    async def fetch(self, sql, kind, document, after_name, after_id, limit):
        wanted = json.loads(document)
        matches = sorted(
            (name, key_id, body)
            for (k, name, key_id), body in self.rows.items()
            if k == kind
            and all(json.loads(body).get(f) == v for f, v in wanted.items())
            and (name, key_id) > (after_name, after_id)
        )
        return [{"name": n, "id": i, "body": b} for n, i, b in matches[:limit]]

    def transaction(self, isolation):
        assert isolation == "serializable"
        return _FakeTransaction(self)


class _FakeTransaction:
    def __init__(self, conn: FakeConnection) -> None:
        self._conn = conn

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        if exc_type is not None:
            self._conn.rolled_back += 1
            return False
        if self._conn.fail_commits > 0:
            self._conn.fail_commits -= 1
            raise SerializationError("could not serialize access")
        self._conn.committed += 1
        return False


class _Acquire:
    def __init__(self, conn: FakeConnection) -> None:
        self._conn = conn

    async def __aenter__(self):
        return self._conn

    async def __aexit__(self, *args):
        return False


class FakePool:
    """Pool handing out one shared connection."""

    def __init__(self, conn: FakeConnection) -> None:
        self.conn = conn
        self.closed = False

    def acquire(self):
        return _Acquire(self.conn)

    async def fetchval(self, sql, *args):
        return await self.conn.fetchval(sql, *args)

    async def execute(self, sql, *args):
        return await self.conn.execute(sql, *args)

    async def fetch(self, *args):
        return await self.conn.fetch(*args)

    async def close(self):
        self.closed = True


@pytest.fixture
def conn():
    return FakeConnection({})


@pytest.fixture
def pg_store(conn):
    store = PostgresStore(
        PostgresConfig(),
        RetryPolicy(max_retries=3, base_delay_ms=0, max_delay_ms=1),
    )
    store._pool = FakePool(conn)
    return store


class TestStatements:
    """Tests for SQL generation."""

    def test_table_name_used(self):
        """Test that every statement targets the configured table."""
        sql = _Statements("my_records")
        for statement in (sql.get, sql.upsert, sql.delete, sql.scan):
            assert "my_records" in statement
        assert "my_records_ids" in sql.schema
        assert "nextval('my_records_ids')" in sql.next_id

    def test_filter_document(self):
        """Test the JSONB containment document."""
        assert json.loads(_filter_document([Filter("name", "c"), Filter("n", 2)])) == \
            {"name": "c", "n": 2}
        assert _filter_document([]) == "{}"


class TestFailureMapping:
    """Tests for driver exception mapping."""

    def test_mapping(self, pg_store):
        """Test each category of driver failure."""
        assert pg_store._failure("get", SerializationError("x")).code == \
            ErrorCode.STORAGE_SERIALIZATION_CONFLICT
        assert pg_store._failure("get", asyncio.TimeoutError()).code == ErrorCode.STORAGE_TIMEOUT
        assert pg_store._failure("get", OSError("refused")).code == \
            ErrorCode.STORAGE_CONNECTION_FAILED
        assert pg_store._failure("get", asyncpg.PostgresError("boom")).code == \
            ErrorCode.STORAGE_OPERATION_FAILED

    async def test_not_connected(self):
        """Test that calls before connect() fail as connection errors."""
        store = PostgresStore(PostgresConfig())
        result = await store.get(Key.named("K", "a"))
        assert result.error.code == ErrorCode.STORAGE_CONNECTION_FAILED

    async def test_closed(self, pg_store):
        """Test that a closed store refuses work."""
        await pg_store.close()
        assert pg_store._pool.closed
        assert (await pg_store.put(Key.named("K", "a"), {})).is_err()


class TestCrud:
    """Tests for get/put/delete/scan."""

    def test_protocol(self, pg_store):
        """Test structural conformance."""
        assert isinstance(pg_store, StoreProtocol)

    async def test_lifecycle(self, pg_store):
        """Test put, get and delete."""
        key = Key.named("Note", "a")
        assert (await pg_store.put(key, {"text": "hi"})).unwrap() == key
        assert (await pg_store.get(key)).unwrap() == {"text": "hi"}
        await pg_store.delete(key)
        assert is_not_found((await pg_store.get(key)).error)

    async def test_id_from_sequence(self, pg_store):
        """Test that incomplete keys take ids from the sequence."""
        first = (await pg_store.put(Key.incomplete("Note"), {})).unwrap()
        second = (await pg_store.put(Key.incomplete("Note"), {})).unwrap()
        assert (first.id, second.id) == (1, 2)

    async def test_scan_pages(self, pg_store):
        """Test keyset paging with a filter."""
        for i in range(5):
            await pg_store.put(Key.named("Shard", f"c-{i}"), {"name": "c", "count": i})
        await pg_store.put(Key.named("Shard", "x"), {"name": "x", "count": 9})

        items = [
            item.unwrap()
            async for item in pg_store.stream_scan("Shard", (Filter("name", "c"),), batch_size=2)
        ]
        assert [k.name for k, _ in items] == [f"c-{i}" for i in range(5)]
        assert sum(r["count"] for _, r in items) == 10


class TestTransactions:
    """Tests for run_in_transaction()."""

    async def test_commit(self, pg_store, conn):
        """Test a committed transaction."""
        key = Key.named("Acct", "a")

        async def create(txn):
            missing = await txn.get(key)
            assert is_not_found(missing.error)
            return await txn.put(key, {"n": 1})

        assert (await pg_store.run_in_transaction(create)).unwrap() == key
        assert conn.committed == 1

    async def test_err_rolls_back(self, pg_store, conn):
        """Test that an Err from the function rolls back and is returned."""
        async def refuse(txn):
            return Err("nope")

        assert await pg_store.run_in_transaction(refuse) == Err("nope")
        assert conn.rolled_back == 1
        assert conn.committed == 0

    async def test_serialization_failure_retried(self, conn):
        """Test that commit-time serialization failures are retried."""
        conn.fail_commits = 2
        store = PostgresStore(PostgresConfig(), RetryPolicy(max_retries=3, base_delay_ms=0, max_delay_ms=1))
        store._pool = FakePool(conn)
        calls = 0

        async def fn(txn):
            nonlocal calls
            calls += 1
            return Ok(calls)

        assert (await store.run_in_transaction(fn)).unwrap() == 3
        assert conn.committed == 1

    async def test_serialization_failure_exhausted(self, conn):
        """Test that persistent conflicts come back as a conflict error."""
        conn.fail_commits = 10
        store = PostgresStore(PostgresConfig(), RetryPolicy(max_retries=1, base_delay_ms=0, max_delay_ms=1))
        store._pool = FakePool(conn)

        async def fn(txn):
            return Ok(None)

        result = await store.run_in_transaction(fn)
        assert result.error.code == ErrorCode.STORAGE_SERIALIZATION_CONFLICT

    async def test_request_timeout_rolls_back(self, conn):
        """Test that an attempt past request_timeout_s is rolled back as a timeout."""
        store = PostgresStore(PostgresConfig(), RetryPolicy(
            max_retries=0, base_delay_ms=0, max_delay_ms=1, request_timeout_s=0.05,
        ))
        store._pool = FakePool(conn)

        async def stuck(txn):
            await asyncio.sleep(0.5)
            return Ok(None)

        result = await asyncio.wait_for(store.run_in_transaction(stuck), timeout=2)
        assert result.error.code == ErrorCode.STORAGE_TIMEOUT
        assert conn.rolled_back == 1
        assert conn.committed == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
