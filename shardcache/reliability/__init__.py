"""
Reliability module: retry with exponential backoff.
"""

from shardcache.reliability.retry import (
    RetryPolicy,
    retry_result,
)

__all__ = [
    "RetryPolicy",
    "retry_result",
]
