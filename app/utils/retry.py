"""
RETRY UTILITY
=============

Awaits a coroutine factory and, if it raises one of the given exception types,
retries a few times with exponential backoff. Used for idempotent upstream reads
(content search, quota check) so a network blip doesn't fail the whole turn.
Mutating calls (create/update content, quota decrement) are never retried.

Example:
  response = await with_retry(lambda: client.get("/posts", params=params), retry_on=(httpx.TransportError,))
"""

import asyncio
import logging
from typing import Awaitable, Callable, Tuple, Type, TypeVar


logger = logging.getLogger("SAGE")

T = TypeVar("T")


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    initial_delay: float = 0.5,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
) -> T:
    """
    Await fn(). If it raises one of retry_on, wait initial_delay seconds and try again;
    delay doubles each retry. After max_retries attempts (including the first), re-raise
    the last exception. Exceptions not listed in retry_on propagate immediately.
    """
    delay = initial_delay

    for attempt in range(max_retries):
        try:
            return await fn()
        except retry_on as e:
            if attempt == max_retries - 1:
                raise
            logger.warning(
                "Attempt %s/%s failed (%s). Retrying in %.1fs: %s",
                attempt + 1,
                max_retries,
                getattr(fn, "__name__", "call"),
                delay,
                e,
            )
            await asyncio.sleep(delay)
            delay *= 2  # Exponential backoff: 0.5s, 1s, 2s, ...

    raise RuntimeError("with_retry called with max_retries < 1")
