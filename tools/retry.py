from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

import httpx

from settings import SETTINGS

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = SETTINGS.retry_max_attempts
    base_delay: float = SETTINGS.retry_base_delay_seconds
    max_delay: float = SETTINGS.retry_max_delay_seconds
    jitter: float = SETTINGS.retry_jitter_seconds


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_STATUS
    return isinstance(exc, (httpx.TimeoutException, httpx.TransportError, asyncio.TimeoutError, ConnectionError))


def backoff_delay(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    return min(policy.base_delay * (2 ** attempt) + rng() * policy.jitter, policy.max_delay)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    label: str,
    policy: RetryPolicy | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run ``fn`` and retry transient failures with exponential backoff.

    Non-retryable errors propagate on the first failure. After ``max_retries``
    retries the last error propagates unchanged.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await fn()
        except Exception as exc:
            if not is_retryable(exc) or attempt >= policy.max_retries:
                raise
            delay = backoff_delay(attempt, policy)
            logger.warning(
                "retry_scheduled",
                extra={"label": label, "attempt": attempt + 1, "delay_s": round(delay, 3), "error": repr(exc)},
            )
            await sleep(delay)
            attempt += 1
