"""
Bounded retry and polling combinators

Every wait loop in cloudha goes through one of these two helpers:

- retry(): re-run a coroutine after a fixed interval while it fails with a
  retryable error (rate limiting by default)
- poll_until(): re-run a coroutine until its result satisfies a predicate,
  bounded by an attempt count and/or a monotonic deadline
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar

from .errors import TransientCloudError

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def retry(fn: Callable[[], Awaitable[T]],
                max_retries: int,
                interval: float,
                retry_on: Tuple[Type[BaseException], ...] = (TransientCloudError,),
                description: str = "operation") -> T:
    """Await fn(), retrying up to max_retries more times on retry_on errors"""
    attempt = 0
    while True:
        try:
            return await fn()
        except retry_on as e:
            if attempt >= max_retries:
                logger.error(f"{description} failed after {attempt + 1} attempts: {e}")
                raise
            attempt += 1
            logger.info(f"{description} hit a retryable error ({e}), retry {attempt}/{max_retries} in {interval}s")
            await asyncio.sleep(interval)


async def poll_until(fn: Callable[[], Awaitable[T]],
                     predicate: Callable[[T], bool],
                     interval: float,
                     max_attempts: Optional[int] = None,
                     deadline: Optional[float] = None) -> Tuple[Optional[T], bool]:
    """Poll fn() until predicate(result) holds

    deadline is a time.monotonic() value. Returns (last_result, satisfied).
    """
    if max_attempts is None and deadline is None:
        raise ValueError("poll_until needs max_attempts or deadline")

    attempts = 0
    result: Any = None
    while True:
        result = await fn()
        attempts += 1
        if predicate(result):
            return result, True
        if max_attempts is not None and attempts >= max_attempts:
            return result, False
        delay = interval
        if deadline is not None:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return result, False
            delay = min(interval, remaining)
        await asyncio.sleep(delay)
