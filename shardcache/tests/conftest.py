"""
Shared fixtures: in-memory backends, broken caches and stores, metrics and a seeded rng.
"""

from __future__ import annotations

import random
from typing import Optional

import pytest

from shardcache.core.errors import CacheError, StorageError
from shardcache.core.types import Err, Result
from shardcache.observability.metrics import LibraryMetrics, MetricsCollector
from shardcache.reliability.retry import RetryPolicy
from shardcache.storage import InMemoryCache, InMemoryStore


class FakeClock:
    """Monotonic clock advanced by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class BrokenCache(InMemoryCache):
    """Cache whose every operation fails."""

    def __init__(self) -> None:
        super().__init__()
        self.calls = 0

    def _fail(self, op: str) -> Err[CacheError]:
        self.calls += 1
        return Err(CacheError.unavailable(ConnectionError(f"{op}: cache down")))

    async def get(self, key: str) -> Result[Optional[bytes], CacheError]:
        return self._fail("get")

    async def set(self, key, value, ttl_seconds=None):
        return self._fail("set")

    async def add(self, key, value, ttl_seconds=None):
        return self._fail("add")

    async def delete(self, key):
        return self._fail("delete")

    async def increment_existing(self, key, delta):
        return self._fail("increment")


class BrokenStore(InMemoryStore):
    """Store whose reads fail with a transport error."""

    async def get(self, key):
        return Err(StorageError.operation_failed("get", ConnectionError("store down")))

    async def scan(self, kind, filters=(), limit=100, cursor=None):
        return Err(StorageError.operation_failed("scan", ConnectionError("store down")))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore(retry_policy=RetryPolicy(max_retries=10, base_delay_ms=0, max_delay_ms=5))


@pytest.fixture
def cache(clock: FakeClock) -> InMemoryCache:
    return InMemoryCache(clock=clock)


@pytest.fixture
def broken_cache() -> BrokenCache:
    return BrokenCache()


@pytest.fixture
def broken_store() -> BrokenStore:
    return BrokenStore()


@pytest.fixture
def failing_store() -> FailingTransactionStore:
    return FailingTransactionStore()


@pytest.fixture
def metrics() -> LibraryMetrics:
    """Metrics on a private collector so counts do not leak between tests."""
    return LibraryMetrics(MetricsCollector())


@pytest.fixture
def rng() -> random.Random:
    return random.Random(1234)


class FailingTransactionStore(InMemoryStore):
    """Store whose transactions fail with a dropped connection after `healthy` have run."""

    def __init__(self, healthy: int = 0) -> None:
        super().__init__()
        self.healthy = healthy
        self.transactions = 0

    async def run_in_transaction(self, fn, policy=None):
        self.transactions += 1
        if self.transactions > self.healthy:
            return Err(StorageError.connection_failed("store", 5432, ConnectionError("reset")))
        return await super().run_in_transaction(fn, policy)
