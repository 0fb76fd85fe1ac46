"""
Retry Policy: Exponential Backoff with Full Jitter

Drives transaction retries in the store backends. Two transactions that
collide on a record would collide again if both retried after the same
pause, so each pause is drawn uniformly from [0, backoff]:

    backoff(n) = min(max_delay, base_delay * multiplier ** n)

Only errors the caller marks retryable are attempted again. Exhaustion
returns the last error unchanged, so callers see the same error type
whether or not a retry happened.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from shardcache.core import constants as C
from shardcache.core.types import Err, Result

logger = logging.getLogger(__name__)

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class RetryPolicy:
    """
    How many times to retry and how long to wait in between.

    Attributes:
        max_retries: Attempts after the first; 0 disables retrying
        base_delay_ms: Backoff before the first retry, before jitter
        max_delay_ms: Backoff cap
        multiplier: Growth factor per retry
        jitter: Draw the pause uniformly from [0, backoff]
        request_timeout_s: Bounds one attempt; None leaves it to the backend
    """

    max_retries: int = C.RETRY_MAX_ATTEMPTS
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_MS
    multiplier: float = 2.0
    jitter: bool = True
    request_timeout_s: Optional[float] = None

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if self.base_delay_ms < 0 or self.max_delay_ms < self.base_delay_ms:
            raise ValueError(
                f"need 0 <= base_delay_ms <= max_delay_ms, "
                f"got {self.base_delay_ms}, {self.max_delay_ms}"
            )
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1, got {self.multiplier}")

    @classmethod
    def default(cls) -> RetryPolicy:
        return cls()

    @classmethod
    def no_retry(cls) -> RetryPolicy:
        return cls(max_retries=0)

    @classmethod
    def for_transactions(cls) -> RetryPolicy:
        """Short pauses; optimistic conflicts clear as soon as the winner commits."""
        return cls(base_delay_ms=5, max_delay_ms=200)

    def backoff_ms(self, retry: int, rng: Optional[random.Random] = None) -> float:
        """Pause before retry number `retry` (0-based)."""
        ceiling = min(self.max_delay_ms, self.base_delay_ms * self.multiplier ** retry)
        if not self.jitter:
            return ceiling
        return (rng or random).uniform(0, ceiling)


async def _attempt(
    func: Callable[[], Awaitable[Result[T, E]]],
    timeout_s: Optional[float],
    on_timeout: Optional[Callable[[], E]],
) -> Result[T, E]:
    if timeout_s is None or on_timeout is None:
        return await func()
    try:
        return await asyncio.wait_for(func(), timeout=timeout_s)
    except asyncio.TimeoutError:
        return Err(on_timeout())


async def retry_result(
    func: Callable[[], Awaitable[Result[T, E]]],
    policy: Optional[RetryPolicy] = None,
    retryable: Callable[[E], bool] = lambda e: True,
    on_timeout: Optional[Callable[[], E]] = None,
) -> Result[T, E]:
    """
    Run a Result-returning coroutine until it succeeds or retrying stops.

    Args:
        func: Zero-argument coroutine factory, called once per attempt
        policy: Retry configuration (default if None)
        retryable: Decides whether an Err is worth another attempt
        on_timeout: Builds the error for an attempt that exceeded
            policy.request_timeout_s; required for the timeout to apply

    Returns:
        The first Ok, the first non-retryable Err, or the last Err
    """
    policy = policy or RetryPolicy.default()
    waited_ms = 0.0
    retry = 0

    while True:
        result = await _attempt(func, policy.request_timeout_s, on_timeout)
        if result.is_ok() or not retryable(result.error):
            return result
        if retry == policy.max_retries:
            logger.debug(
                "Retries exhausted",
                extra={"attempts": retry + 1, "waited_ms": round(waited_ms, 2)},
            )
            return result

        pause = policy.backoff_ms(retry)
        waited_ms += pause
        retry += 1
        logger.debug(
            "Retrying after failure",
            extra={"retry": retry, "delay_ms": round(pause, 2), "error": str(result.error)},
        )
        await asyncio.sleep(pause / 1000)
