"""
Best-Effort Cache Access

Wraps a CacheProtocol so that every call returns a plain value instead of a
Result: Optional for reads, bool for writes. Failures are logged at DEBUG and
counted, then dropped. The core talks to the cache only through this class,
so a cache error has no path to a caller.
"""

from __future__ import annotations

import logging
from typing import Optional

from shardcache.core.errors import CacheError
from shardcache.observability.metrics import LibraryMetrics
from shardcache.storage.protocols import CacheProtocol

logger = logging.getLogger(__name__)


class BestEffortCache:
    """
    Cache access that cannot fail.

    A missing cache (None) behaves as a cache that always misses.

    Example:
        cache = BestEffortCache(InMemoryCache(), component="entity")
        if (raw := await cache.try_get(token)) is None:
            ...  # miss or failure, fall back to the store
    """

    __slots__ = ("_cache", "_component", "_metrics")

    def __init__(
        self,
        cache: Optional[CacheProtocol],
        component: str,
        metrics: Optional[LibraryMetrics] = None,
    ) -> None:
        self._cache = cache
        self._component = component
        self._metrics = metrics or LibraryMetrics()

    @property
    def backend(self) -> Optional[CacheProtocol]:
        return self._cache

    def _record(self, outcome: str) -> None:
        self._metrics.cache_lookups.inc(component=self._component, outcome=outcome)

    def _dropped(self, operation: str, key: str, error: CacheError) -> None:
        logger.debug(
            "Cache failure ignored",
            extra={
                "component": self._component,
                "operation": operation,
                "cache_key": key,
                "error_code": error.code.name,
                "error": error.message,
            },
        )

    async def try_get(self, key: str) -> Optional[bytes]:
        """Cached bytes, or None on miss or failure."""
        if self._cache is None:
            self._record("miss")
            return None
        result = await self._cache.get(key)
        if result.is_err():
            self._record("error")
            self._dropped("get", key, result.error)
            return None
        self._record("miss" if result.value is None else "hit")
        return result.value

    async def try_set(
        self,
        key: str,
        value: Optional[bytes],
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """True when the value was stored. A None value is not stored."""
        if self._cache is None or value is None:
            return False
        result = await self._cache.set(key, value, ttl_seconds)
        if result.is_err():
            self._dropped("set", key, result.error)
            return False
        return True

    async def try_add(
        self,
        key: str,
        value: Optional[bytes],
        ttl_seconds: Optional[int] = None,
    ) -> bool:
        """True when the value was stored because the key was absent."""
        if self._cache is None or value is None:
            return False
        result = await self._cache.add(key, value, ttl_seconds)
        if result.is_err():
            self._dropped("add", key, result.error)
            return False
        return result.value

    async def try_delete(self, key: str) -> bool:
        """True when an entry was removed."""
        if self._cache is None:
            return False
        result = await self._cache.delete(key)
        if result.is_err():
            self._dropped("delete", key, result.error)
            return False
        return result.value

    async def try_increment(self, key: str, delta: int) -> Optional[int]:
        """New value, or None when absent or on failure."""
        if self._cache is None:
            return None
        result = await self._cache.increment_existing(key, delta)
        if result.is_err():
            self._dropped("increment", key, result.error)
            return None
        return result.value
