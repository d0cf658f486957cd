"""Retry utilities for handling transient failures.

Adapters never retry on their own. Retrying is a caller policy: the process
entry point uses ``retry_async`` for the initial KV load, and the MQTT
connection manager paces reconnects with ``backoff_delays``.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_RETRY_DELAY = 1.0


class RetryExhausted(Exception):
    """Raised when all retry attempts have been exhausted."""

    def __init__(self, attempts: int, last_exception: Exception):
        self.attempts = attempts
        self.last_exception = last_exception
        super().__init__(f"Failed after {attempts} attempts: {last_exception}")


def backoff_delays(
    initial_delay: float = MIN_RETRY_DELAY,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
) -> Iterator[float]:
    """Yield an endless sequence of exponentially growing delays.

    Delays never drop below one second, so callers cannot tight-loop.
    """
    delay = max(initial_delay, MIN_RETRY_DELAY)
    max_delay = max(max_delay, delay)
    while True:
        yield delay
        delay = min(delay * exponential_base, max_delay)


async def retry_async(
    func: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    initial_delay: float = 1.0,
    max_delay: float = 30.0,
    retryable_exceptions: tuple[type[Exception], ...] = (Exception,),
) -> T:
    """Call ``func`` until it succeeds, doubling the pause between attempts.

    Startup uses this so a KV service that is still coming up gets a few
    chances before the registry falls back to its local cache. Exceptions
    outside ``retryable_exceptions`` propagate at once.

    Raises:
        RetryExhausted: If the last attempt fails too
    """
    delay = initial_delay
    attempt = 1
    while True:
        try:
            return await func()
        except retryable_exceptions as e:
            if attempt >= max_attempts:
                raise RetryExhausted(attempt, e) from e
            logger.warning(
                f"Attempt {attempt}/{max_attempts} failed ({e}), retrying in {delay:.1f}s"
            )
            await asyncio.sleep(delay)
            delay = min(delay * 2, max_delay)
            attempt += 1
