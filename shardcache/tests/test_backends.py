"""
Unit Tests: In-Memory Backends

Tests:
    - InMemoryStore: CRUD, id allocation, scans, OCC transactions
    - InMemoryCache: TTL, LRU, add, increment_existing
    - BestEffortCache: failures turned into misses
"""

import asyncio

import pytest

from shardcache.core.errors import ErrorCode, is_not_found
from shardcache.core.types import Err, Key, Ok
from shardcache.reliability.retry import RetryPolicy
from shardcache.storage import (
    CacheProtocol,
    Filter,
    InMemoryCache,
    InMemoryStore,
    StoreProtocol,
)
from shardcache.storage.best_effort import BestEffortCache


class TestInMemoryStore:
    """Tests for InMemoryStore."""

    def test_protocol(self, store):
        """Test structural conformance."""
        assert isinstance(store, StoreProtocol)

    async def test_put_get_delete(self, store):
        """Test the basic record lifecycle."""
        key = Key.named("Note", "a")
        assert (await store.put(key, {"text": "hi"})).unwrap() == key
        assert (await store.get(key)).unwrap() == {"text": "hi"}
        assert (await store.delete(key)).is_ok()
        assert is_not_found((await store.get(key)).error)

    async def test_delete_missing(self, store):
        """Test that deleting nothing succeeds."""
        assert (await store.delete(Key.named("Note", "ghost"))).is_ok()

    async def test_id_allocation(self, store):
        """Test that incomplete keys get distinct ids."""
        first = (await store.put(Key.incomplete("Note"), {})).unwrap()
        second = (await store.put(Key.incomplete("Note"), {})).unwrap()
        assert first.id > 0 and second.id > 0
        assert first != second

    async def test_records_are_copied(self, store):
        """Test that callers never share stored state."""
        key = Key.named("Note", "a")
        record = {"tags": ["x"]}
        await store.put(key, record)
        record["tags"].append("mutated")
        loaded = (await store.get(key)).unwrap()
        loaded["tags"].append("also mutated")
        assert (await store.get(key)).unwrap() == {"tags": ["x"]}

    async def test_scan_filters_and_pages(self, store):
        """Test filtered, paged scans."""
        for i in range(7):
            await store.put(Key.named("Shard", f"c-{i}"), {"name": "c", "count": i})
        await store.put(Key.named("Shard", "other"), {"name": "d", "count": 100})
        await store.put(Key.named("Config", "c"), {"name": "c"})

        page = (await store.scan("Shard", (Filter("name", "c"),), limit=3)).unwrap()
        assert len(page.records) == 3
        assert not page.done

        seen = [k.name for k, _ in page.records]
        while not page.done:
            page = (await store.scan("Shard", (Filter("name", "c"),), 3, page.cursor)).unwrap()
            seen.extend(k.name for k, _ in page.records)
        assert seen == [f"c-{i}" for i in range(7)]

    async def test_stream_scan(self, store):
        """Test that streaming yields every matching record."""
        for i in range(25):
            await store.put(Key.named("Shard", f"s{i:02d}"), {"name": "n", "count": 1})
        items = [item.unwrap() async for item in store.stream_scan("Shard", (Filter("name", "n"),), 4)]
        assert len(items) == 25

    @pytest.mark.parametrize("kwargs", [{"limit": 0}, {"cursor": "not-a-cursor"}])
    async def test_scan_invalid_arguments(self, store, kwargs):
        """Test rejected scan arguments."""
        result = await store.scan("Shard", **kwargs)
        assert result.error.code == ErrorCode.INVALID_VALUE

    async def test_stream_scan_error_ends_iteration(self, broken_store):
        """Test that a failing page is yielded once."""
        items = [item async for item in broken_store.stream_scan("Shard")]
        assert len(items) == 1
        assert items[0].is_err()


class TestTransactions:
    """Tests for run_in_transaction()."""

    async def test_commit(self, store):
        """Test that a successful function's writes are applied."""
        key = Key.named("Acct", "a")

        async def create(txn):
            return await txn.put(key, {"balance": 10})

        assert (await store.run_in_transaction(create)).unwrap() == key
        assert (await store.get(key)).unwrap() == {"balance": 10}

    async def test_err_aborts(self, store):
        """Test that an Err from the function writes nothing."""
        key = Key.named("Acct", "a")

        async def fail(txn):
            await txn.put(key, {"balance": 10})
            return Err("nope")

        assert await store.run_in_transaction(fail) == Err("nope")
        assert is_not_found((await store.get(key)).error)

    async def test_reads_own_writes(self, store):
        """Test that buffered writes are visible inside the transaction."""
        key = Key.named("Acct", "a")

        async def fn(txn):
            await txn.put(key, {"balance": 1})
            got = await txn.get(key)
            await txn.delete(key)
            gone = await txn.get(key)
            return Ok((got.unwrap(), gone.is_err()))

        assert (await store.run_in_transaction(fn)).unwrap() == ({"balance": 1}, True)

    async def test_incomplete_key_completed_in_transaction(self, store):
        """Test id allocation inside a transaction."""
        async def fn(txn):
            return await txn.put(Key.incomplete("Note"), {"a": 1})

        key = (await store.run_in_transaction(fn)).unwrap()
        assert not key.is_incomplete
        assert (await store.get(key)).unwrap() == {"a": 1}

    async def test_conflict_retried(self, store):
        """Test that a conflicting write forces a retry with fresh reads."""
        key = Key.named("Acct", "a")
        await store.put(key, {"n": 0})
        attempts = []

        async def bump(txn):
            current = (await txn.get(key)).unwrap()["n"]
            attempts.append(current)
            if len(attempts) == 1:
                await store.put(key, {"n": 100})
            return await txn.put(key, {"n": current + 1})

        assert (await store.run_in_transaction(bump)).is_ok()
        assert attempts == [0, 100]
        assert (await store.get(key)).unwrap() == {"n": 101}

    async def test_conflict_on_absent_key(self, store):
        """Test that creating a record another writer created conflicts."""
        key = Key.named("Acct", "new")
        attempts = 0

        async def create_once(txn):
            nonlocal attempts
            attempts += 1
            if (await txn.get(key)).is_ok():
                return Ok("exists")
            if attempts == 1:
                await store.put(key, {"owner": "other"})
            return await txn.put(key, {"owner": "me"})

        assert (await store.run_in_transaction(create_once)).unwrap() == "exists"
        assert (await store.get(key)).unwrap() == {"owner": "other"}

    async def test_conflict_exhaustion(self):
        """Test that endless conflicts return the conflict error."""
        store = InMemoryStore(retry_policy=RetryPolicy(max_retries=2, base_delay_ms=0, max_delay_ms=1))
        key = Key.named("Acct", "a")
        await store.put(key, {"n": 0})

        async def always_conflicts(txn):
            await txn.get(key)
            await store.put(key, {"n": 0})
            return await txn.put(key, {"n": 1})

        result = await store.run_in_transaction(always_conflicts)
        assert result.error.code == ErrorCode.STORAGE_SERIALIZATION_CONFLICT

    async def test_concurrent_transactions_serialize(self):
        """Test that concurrent read-modify-write loses no updates."""
        store = InMemoryStore(
            retry_policy=RetryPolicy(max_retries=30, base_delay_ms=1, max_delay_ms=5),
            simulate_latency_s=0.001,
        )
        key = Key.named("Acct", "a")
        await store.put(key, {"n": 0})

        async def bump(txn):
            current = (await txn.get(key)).unwrap()["n"]
            return await txn.put(key, {"n": current + 1})

        results = await asyncio.gather(*(store.run_in_transaction(bump) for _ in range(10)))
        assert all(r.is_ok() for r in results)
        assert (await store.get(key)).unwrap() == {"n": 10}

    async def test_request_timeout(self):
        """Test that a slow attempt is cut off and nothing is written."""
        store = InMemoryStore(retry_policy=RetryPolicy(
            max_retries=1, base_delay_ms=0, max_delay_ms=1, request_timeout_s=0.05,
        ))
        key = Key.named("Acct", "a")
        attempts = 0

        async def slow(txn):
            nonlocal attempts
            attempts += 1
            await txn.put(key, {"n": 1})
            await asyncio.sleep(0.5)
            return Ok(None)

        result = await asyncio.wait_for(store.run_in_transaction(slow), timeout=2)
        assert result.error.code == ErrorCode.STORAGE_TIMEOUT
        assert result.error.retryable
        assert "50ms" in result.error.message
        assert attempts == 2
        assert is_not_found((await store.get(key)).error)

    async def test_request_timeout_per_call_policy(self, store):
        """Test that a policy passed to the call bounds its attempts."""
        async def slow(txn):
            await asyncio.sleep(0.5)
            return Ok(None)

        policy = RetryPolicy(max_retries=0, request_timeout_s=0.02)
        result = await asyncio.wait_for(store.run_in_transaction(slow, policy), timeout=2)
        assert result.error.code == ErrorCode.STORAGE_TIMEOUT


class TestInMemoryCache:
    """Tests for InMemoryCache."""

    def test_protocol(self, cache):
        """Test structural conformance."""
        assert isinstance(cache, CacheProtocol)

    async def test_get_set(self, cache):
        """Test a plain set and get."""
        await cache.set("k", b"v")
        assert (await cache.get("k")).unwrap() == b"v"
        assert (await cache.get("missing")).unwrap() is None
        assert cache.stats.hits == 1 and cache.stats.misses == 1

    async def test_ttl(self, cache, clock):
        """Test expiry after the TTL."""
        await cache.set("k", b"v", ttl_seconds=60)
        clock.advance(59)
        assert (await cache.get("k")).unwrap() == b"v"
        clock.advance(1)
        assert (await cache.get("k")).unwrap() is None
        assert cache.stats.expirations == 1

    async def test_zero_ttl_never_expires(self, cache, clock):
        """Test that a zero TTL means no expiry."""
        await cache.set("k", b"v", ttl_seconds=0)
        clock.advance(10 ** 9)
        assert (await cache.get("k")).unwrap() == b"v"

    async def test_lru_eviction(self, clock):
        """Test that the least recently used entry goes first."""
        cache = InMemoryCache(max_entries=2, clock=clock)
        await cache.set("a", b"1")
        await cache.set("b", b"2")
        await cache.get("a")
        await cache.set("c", b"3")
        assert (await cache.get("b")).unwrap() is None
        assert (await cache.get("a")).unwrap() == b"1"
        assert cache.stats.evictions == 1

    async def test_add(self, cache, clock):
        """Test add-if-absent, including over an expired entry."""
        assert (await cache.add("k", b"1", ttl_seconds=5)).unwrap() is True
        assert (await cache.add("k", b"2")).unwrap() is False
        assert (await cache.get("k")).unwrap() == b"1"
        clock.advance(5)
        assert (await cache.add("k", b"3")).unwrap() is True

    async def test_delete(self, cache):
        """Test delete reporting."""
        await cache.set("k", b"v")
        assert (await cache.delete("k")).unwrap() is True
        assert (await cache.delete("k")).unwrap() is False

    async def test_increment_existing(self, cache):
        """Test increment-if-present."""
        assert (await cache.increment_existing("n", 1)).unwrap() is None
        assert (await cache.get("n")).unwrap() is None
        await cache.set("n", b"41")
        assert (await cache.increment_existing("n", 1)).unwrap() == 42
        assert (await cache.get("n")).unwrap() == b"42"

    async def test_increment_non_integer(self, cache):
        """Test that incrementing a non-number fails."""
        await cache.set("n", b"abc")
        assert (await cache.increment_existing("n", 1)).is_err()

    def test_invalid_capacity(self):
        """Test rejected capacity."""
        with pytest.raises(ValueError):
            InMemoryCache(max_entries=0)


class TestBestEffortCache:
    """Tests for BestEffortCache."""

    async def test_failures_become_misses(self, broken_cache, metrics):
        """Test that every failure maps to a plain value."""
        cache = BestEffortCache(broken_cache, component="test", metrics=metrics)
        assert await cache.try_get("k") is None
        assert await cache.try_set("k", b"v") is False
        assert await cache.try_add("k", b"v") is False
        assert await cache.try_delete("k") is False
        assert await cache.try_increment("k", 1) is None
        assert metrics.cache_lookups.get(component="test", outcome="error") == 1

    async def test_no_backend(self, metrics):
        """Test that a missing cache always misses."""
        cache = BestEffortCache(None, component="test", metrics=metrics)
        assert await cache.try_get("k") is None
        assert await cache.try_set("k", b"v") is False
        assert metrics.cache_lookups.get(component="test", outcome="miss") == 1

    async def test_pass_through(self, cache, metrics):
        """Test results from a working cache."""
        wrapped = BestEffortCache(cache, component="test", metrics=metrics)
        assert await wrapped.try_set("k", b"1") is True
        assert await wrapped.try_get("k") == b"1"
        assert await wrapped.try_increment("k", 2) == 3
        assert await wrapped.try_add("k", b"x") is False
        assert await wrapped.try_set("k", None) is False
        assert await wrapped.try_delete("k") is True
        assert metrics.cache_lookups.get(component="test", outcome="hit") == 1


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
