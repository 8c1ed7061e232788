from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base)
    await asyncio.sleep(delay)


async def retry_read(
    read: Callable[[], Awaitable[T]], attempts: int = 3, base: float = 1.5
) -> T:
    """Run an idempotent read, retrying when the backing store times out.

    Only for reads: a timed-out write may already have been applied, so
    state transitions are never passed through here.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await read()
        except TimeoutError:
            if attempt == attempts:
                raise
            logger.warning(f"Read timed out (attempt {attempt}/{attempts}); retrying")
            await schedule_retry(attempt, base=base)
    raise AssertionError("unreachable")
