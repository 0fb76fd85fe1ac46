"""
Counter module: sharded counters with cached totals.
"""

from shardcache.counter.sharded import ShardedCounter

__all__ = ["ShardedCounter"]
