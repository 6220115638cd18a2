"""
Retry-with-backoff for a single external call.

Absorbs transient network failures only; the minutes-scale business
retry cycle lives in core/reconciliation.py.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger("nexuspay.retry")

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BASE_DELAY   = 1.0   # seconds


class RetryExhaustedError(Exception):
    def __init__(self, attempts: int, last_error: BaseException):
        self.attempts   = attempts
        self.last_error = last_error
        super().__init__(f"Operation failed after {attempts} attempts: {last_error}")


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay: float = DEFAULT_BASE_DELAY,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Await `operation()` up to `max_attempts` times.

    After failed attempt n (0-based) waits base_delay * 2**n before the
    next one. Exceptions outside `retry_on` propagate immediately.
    Raises RetryExhaustedError (chained to the last failure) when the
    budget runs out.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be >= 1")

    last_error: BaseException = None
    for attempt in range(max_attempts):
        try:
            return await operation()
        except retry_on as e:
            last_error = e
            if attempt + 1 >= max_attempts:
                break
            delay = base_delay * (2 ** attempt)
            logger.warning(f"Attempt {attempt + 1}/{max_attempts} failed ({e}); retrying in {delay:.1f}s")
            await sleep(delay)

    raise RetryExhaustedError(max_attempts, last_error) from last_error
