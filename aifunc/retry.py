from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from aifunc.errors import InvocationError
from aifunc.obs import Logger, NullLogger

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def call_with_retries(
    fn: Callable[[], Awaitable[T]],
    *,
    retries: int = 0,
    backoff: float = 1.0,
    obs: Logger | None = None,
    event: str = "llm.retry",
    **fields,
) -> T:
    """Await ``fn()`` up to ``retries + 1`` times.

    Only `InvocationError` is retried; the last one propagates. Sleeps
    ``backoff * 2**attempt`` seconds plus jitter between attempts.
    """
    obs = obs or NullLogger()
    attempts = max(0, int(retries)) + 1
    for attempt in range(attempts):
        try:
            return await fn()
        except InvocationError as e:
            if attempt == attempts - 1:
                raise
            delay = backoff * (2 ** attempt) + random.random() * backoff
            logger.info("%s: attempt %d failed (%s), retrying in %.2fs", event, attempt + 1, e, delay)
            obs.warn(event, attempt=attempt + 1, error=str(e), delay_s=round(delay, 3), **fields)
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
