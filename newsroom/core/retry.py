# newsroom/core/retry.py
"""
Retry-with-backoff combinator shared by the feed fetcher and the link validator.

    result = await with_retry(lambda: client.get(url), max_attempts=3,
                              backoff=BackoffPolicy(base_s=1.0, max_s=8.0))

Delays follow base * 2^attempt, capped at max_s, plus up to jitter_fraction
of random jitter. Retries are always bounded by max_attempts.
"""

from __future__ import annotations

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from newsroom.core.logging import get_logger

logger = get_logger()

T = TypeVar("T")


class RetryExhaustedError(Exception):
    """Raised when every attempt failed; wraps the last error."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"gave up after {attempts} attempt(s): {last_error}")
        self.attempts = attempts
        self.last_error = last_error


@dataclass(frozen=True)
class BackoffPolicy:
    base_s: float = 1.0
    max_s: float = 8.0
    jitter_fraction: float = 0.1

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (0-based)."""
        wait = min(self.max_s, self.base_s * (2 ** attempt))
        if self.jitter_fraction > 0:
            wait += random.uniform(0, wait * self.jitter_fraction)
        return wait


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    backoff: Optional[BackoffPolicy] = None,
    retry_on: Callable[[BaseException], bool] = lambda exc: True,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """
    Run `operation` until it succeeds or `max_attempts` is reached.

    Errors for which `retry_on` returns False are re-raised immediately.
    Exhaustion raises RetryExhaustedError carrying the last error.
    """
    policy = backoff or BackoffPolicy()
    attempts = max(1, int(max_attempts))
    last_error: Optional[BaseException] = None

    for attempt in range(attempts):
        try:
            return await operation()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not retry_on(exc):
                raise
            last_error = exc
            if attempt + 1 >= attempts:
                break
            wait_s = policy.delay_for(attempt)
            logger.info(
                "retry_backoff",
                label=label,
                attempt=attempt + 1,
                max_attempts=attempts,
                wait_seconds=round(wait_s, 3),
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await sleep(wait_s)

    assert last_error is not None
    raise RetryExhaustedError(attempts, last_error) from last_error
