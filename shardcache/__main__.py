#!/usr/bin/env python3
"""
shardcache demo

Runs the counter, entity and session components against the backends
selected by the environment (in-memory unless told otherwise).

Usage:
    python -m shardcache

    # Against a local Redis cache
    SHARDCACHE_CACHE_BACKEND=redis REDIS_HOST=localhost python -m shardcache
"""

from __future__ import annotations

import asyncio
import sys
from dataclasses import dataclass, field
from typing import ClassVar

from shardcache.core.config import ShardCacheConfig
from shardcache.core.types import DateTime
from shardcache.counter import ShardedCounter
from shardcache.entity import Entity, EntityCache, read_id
from shardcache.observability.logging import LogLevel, StructuredLogger, setup_logging
from shardcache.observability.metrics import LibraryMetrics, MetricsCollector
from shardcache.session import SessionStore
from shardcache.storage import create_cache, create_store

log = StructuredLogger("shardcache.demo")


@dataclass
class Note(Entity):
    """Demo record."""

    KIND: ClassVar[str] = "Note"

    text: str = ""
    created: DateTime = field(default_factory=DateTime)

    def validation_errors(self) -> list[str]:
        return [] if self.text else ["text is required"]

    def presave(self) -> None:
        if self.created.is_zero:
            self.created = DateTime.now()


async def demo() -> None:
    print("\n" + "=" * 60)
    print("shardcache - Local Demo")
    print("=" * 60 + "\n")

    config_result = ShardCacheConfig.from_env()
    if config_result.is_err():
        print(f"Configuration error: {config_result.error}")
        sys.exit(1)
    config = config_result.unwrap()

    validation = config.validate()
    if validation.is_err():
        print(f"Validation error: {validation.error}")
        sys.exit(1)

    setup_logging(LogLevel.parse(config.observability.log_level), json_output=config.observability.log_json)

    store = create_store(config.storage)
    cache = create_cache(config.storage)
    for backend in (store, cache):
        connect = getattr(backend, "connect", None)
        if connect is not None:
            connected = await connect()
            if connected.is_err():
                print(f"Backend error: {connected.error}")
                sys.exit(1)

    log.info("Backends ready", store=type(store).__name__, cache=type(cache).__name__)
    print(f"✓ Store: {type(store).__name__}, cache: {type(cache).__name__}")

    metrics = LibraryMetrics.create(config.observability.metrics_enabled)

    # 1. Counter
    counter = ShardedCounter(store, cache, config.counter, metrics=metrics)
    with log.scope(counter="demo"):
        await asyncio.gather(*(counter.increment("demo") for _ in range(25)))
        log.info("Increments committed", increments=25)
    total = await counter.count("demo")
    print(f"1. Counter 'demo' after 25 concurrent increments: {total.unwrap_or('error')}")

    grown = await counter.increase_shards("demo", 10)
    print(f"   Shards now: {grown.unwrap_or('error')}")

    # 2. Entity
    entities = EntityCache(store, cache, metrics=metrics)
    note = Note(text="Hello, shardcache!")
    saved = await entities.save_and_cache(note)
    if saved.is_err():
        log.failure("Note save failed", saved.error)
        print(f"   Error: {saved.error}")
    else:
        loaded = await entities.retrieve(read_id(note), Note())
        if loaded.is_ok():
            print(f"2. Retrieved note {saved.value}: {loaded.value.text!r}, created {loaded.value.created}")
        else:
            print(f"   Error: {loaded.error}")

    rejected = await entities.save(Note())
    if rejected.is_err():
        print(f"   Empty note rejected: {rejected.error}")

    # 3. Sessions
    sessions = SessionStore(entities, config.session)
    token = await sessions.issue("alice", {"role": "admin"}, 3600)
    if token.is_ok():
        print(f"3. Session token valid: {await sessions.validate(token.value)}")
    expired = await sessions.issue("bob", None, -60)
    if expired.is_ok():
        print(f"   Expired session valid: {await sessions.validate(expired.value)}")
    print(f"   Garbage token valid: {await sessions.validate('not-a-token')}")

    # 4. Metrics
    if config.observability.metrics_enabled:
        print("\n4. Metrics:")
        print(MetricsCollector.get_instance().export_prometheus())
    else:
        print("\n4. Metrics disabled")

    close = getattr(cache, "close", None)
    if close is not None:
        await close()
    close = getattr(store, "close", None)
    if close is not None:
        await close()

    print("✓ Demo complete")
    print("=" * 60 + "\n")


async def main() -> None:
    """Main entry point."""
    try:
        await demo()
    except KeyboardInterrupt:
        print("\nInterrupted")


def run() -> None:
    """Synchronous entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
