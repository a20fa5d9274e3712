from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
import logging
from random import random
from typing import TypeVar

from docrag.errors import ProviderError, RateLimited

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    base_seconds: float = 0.5
    max_seconds: float = 8.0

    def delay_for(self, attempt: int, error: ProviderError) -> float:
        if isinstance(error, RateLimited) and error.retry_after is not None:
            return min(error.retry_after, self.max_seconds)
        delay = min(self.base_seconds * (2 ** (attempt - 1)), self.max_seconds)
        return delay + random() * 0.2 * delay


async def retry_async(
    call: Callable[[], Awaitable[T]],
    *,
    policy: RetryPolicy,
    operation: str,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``call`` and retry ProviderError with exponential backoff.

    Anything that is not a ProviderError (InvalidInput included) propagates on
    the first failure. The last ProviderError is re-raised once attempts run out.
    """
    attempt = 1
    while True:
        try:
            return await call()
        except ProviderError as exc:
            if attempt >= policy.attempts:
                logger.warning(
                    "retry exhausted operation=%s attempts=%d error=%r", operation, attempt, exc
                )
                raise
            delay = policy.delay_for(attempt, exc)
            logger.info(
                "retrying operation=%s attempt=%d/%d error=%r delay=%.2fs",
                operation,
                attempt,
                policy.attempts,
                exc,
                delay,
            )
            await sleep(delay)
            attempt += 1
