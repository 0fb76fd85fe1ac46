"""
Redis Cache Backend
===================

Redis implementation of CacheProtocol on `redis.asyncio`.

Design Principles:
------------------
1. **Binary Values**: Values are raw bytes; responses are never decoded
2. **Atomic Increment-If-Present**: Lua script, one round-trip
3. **Add-If-Absent**: SET NX with optional EX
4. **Result Monad**: Transport failures come back as Err(CacheError)

Algorithmic Complexity:
-----------------------
| Operation          | Time | Notes                 |
|--------------------|------|-----------------------|
| get                | O(1) | GET                   |
| set / add          | O(1) | SET [NX] [EX]         |
| delete             | O(1) | DEL                   |
| increment_existing | O(1) | EXISTS + INCRBY (Lua) |
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from redis.exceptions import NoScriptError, RedisError, ResponseError

from shardcache.core.errors import CacheError
from shardcache.core.types import Err, Ok, Result
from shardcache.storage.config import RedisConfig

if TYPE_CHECKING:
    import redis.asyncio as aioredis

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

# Increments only when the key exists; returns nil otherwise
LUA_INCREMENT_EXISTING: str = """
if redis.call('EXISTS', KEYS[1]) == 1 then
    return redis.call('INCRBY', KEYS[1], ARGV[1])
end
return false
"""


# =============================================================================
# REDIS CACHE
# =============================================================================

class RedisCache:
    """
    Production cache backed by Redis.

    Every key is stored under `config.key_prefix`.

    Example:
        >>> cache = RedisCache(RedisConfig(host="redis.example.com"))
        >>> (await cache.connect()).unwrap()
        >>> await cache.set("k", b"v", ttl_seconds=60)
        >>> await cache.close()

    A pre-built client (e.g. fakeredis) may be injected for tests.
    """

    __slots__ = ("_config", "_client", "_incr_sha", "_connected", "_owns_client")

    def __init__(
        self,
        config: Optional[RedisConfig] = None,
        client: Optional["aioredis.Redis"] = None,
    ) -> None:
        """
        Args:
            config: Connection configuration.
            client: Existing client; `connect()` then only loads scripts.

        Note:
            Call `connect()` before performing operations.
        """
        self._config = config or RedisConfig()
        self._client = client
        self._incr_sha: Optional[str] = None
        self._connected = False
        self._owns_client = client is None

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    async def connect(self) -> Result[None, CacheError]:
        """
        Create the client if needed, check it, and load Lua scripts.

        Returns:
            Ok(None) on success, Err(CacheError) on failure.
        """
        try:
            if self._client is None:
                import redis.asyncio as aioredis

                self._client = aioredis.Redis(**self._config.client_kwargs())

            await self._client.ping()
            self._incr_sha = await self._client.script_load(LUA_INCREMENT_EXISTING)
        except (RedisError, OSError, asyncio.TimeoutError) as e:
            logger.warning(
                "Redis cache connection failed",
                extra={"host": self._config.host, "port": self._config.port, "error": str(e)},
            )
            return Err(CacheError.unavailable(e))

        self._connected = True
        logger.info(
            "Redis cache connected",
            extra={"host": self._config.host, "port": self._config.port},
        )
        return Ok(None)

    async def close(self) -> None:
        """Close the client if this cache created it. Safe to call twice."""
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    def _k(self, key: str) -> str:
        return f"{self._config.key_prefix}{key}"

    def _check(self) -> Optional[CacheError]:
        if not self._connected or self._client is None:
            return CacheError.unavailable(RuntimeError("not connected"))
        return None

    # -------------------------------------------------------------------------
    # CacheProtocol Implementation
    # -------------------------------------------------------------------------

    async def get(self, key: str) -> Result[Optional[bytes], CacheError]:
        if (error := self._check()) is not None:
            return Err(error)
        try:
            return Ok(await self._client.get(self._k(key)))
        except asyncio.TimeoutError as e:
            return Err(CacheError.timeout("get", e))
        except (RedisError, OSError) as e:
            return Err(CacheError.operation_failed("get", e))

    async def set(
        self,
        key: str,
        value: bytes,
        ttl_seconds: Optional[int] = None,
    ) -> Result[None, CacheError]:
        if (error := self._check()) is not None:
            return Err(error)
        try:
            await self._client.set(self._k(key), value, ex=ttl_seconds or None)
            return Ok(None)
        except asyncio.TimeoutError as e:
            return Err(CacheError.timeout("set", e))
        except (RedisError, OSError) as e:
            return Err(CacheError.operation_failed("set", e))

    async def add(
        self,
        key: str,
        value: bytes,
        ttl_seconds: Optional[int] = None,
    ) -> Result[bool, CacheError]:
        if (error := self._check()) is not None:
            return Err(error)
        try:
            stored = await self._client.set(
                self._k(key), value, ex=ttl_seconds or None, nx=True
            )
            return Ok(bool(stored))
        except asyncio.TimeoutError as e:
            return Err(CacheError.timeout("add", e))
        except (RedisError, OSError) as e:
            return Err(CacheError.operation_failed("add", e))

    async def delete(self, key: str) -> Result[bool, CacheError]:
        if (error := self._check()) is not None:
            return Err(error)
        try:
            return Ok(await self._client.delete(self._k(key)) > 0)
        except asyncio.TimeoutError as e:
            return Err(CacheError.timeout("delete", e))
        except (RedisError, OSError) as e:
            return Err(CacheError.operation_failed("delete", e))

    async def increment_existing(
        self,
        key: str,
        delta: int,
    ) -> Result[Optional[int], CacheError]:
        """
        Atomic increment when present.

        A non-integer value makes INCRBY fail; that is reported as Err.
        """
        if (error := self._check()) is not None:
            return Err(error)
        try:
            value = await self._increment_script(self._k(key), delta)
        except ResponseError as e:
            return Err(CacheError.operation_failed("increment", e))
        except asyncio.TimeoutError as e:
            return Err(CacheError.timeout("increment", e))
        except (RedisError, OSError) as e:
            return Err(CacheError.operation_failed("increment", e))
        return Ok(int(value) if value is not None else None)

    async def _increment_script(self, key: str, delta: int) -> Optional[int]:
        """Run the increment script, loading it again once if the server lost it."""
        try:
            return await self._client.evalsha(self._incr_sha, 1, key, delta)
        except NoScriptError:
            logger.info("Increment script missing on server; reloading")
            self._incr_sha = await self._client.script_load(LUA_INCREMENT_EXISTING)
            return await self._client.evalsha(self._incr_sha, 1, key, delta)


__all__ = [
    "LUA_INCREMENT_EXISTING",
    "RedisCache",
]
