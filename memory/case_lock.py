from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List

import redis.asyncio as redis
from redis import exceptions as redis_exceptions

from settings import SETTINGS

logger = logging.getLogger(__name__)


class CaseLockRegistry:
    """Serializes the read-decide-write cycle per (owner, channel address).

    In-process callers share an ``asyncio.Lock`` per key, dropped once nobody
    holds or waits for it. With a Redis URL the key is also held through
    redis-py's ``Lock`` so that separate workers serialize. An unreachable
    Redis degrades to the local lock only.
    """

    def __init__(
        self,
        redis_url: str | None = None,
        ttl_seconds: int = 90,
        wait_seconds: float = 60.0,
        client: Any = None,
    ) -> None:
        url = SETTINGS.redis_url if redis_url is None else redis_url
        if client is None and url:
            client = redis.from_url(url, decode_responses=True, socket_timeout=3)
        self._redis = client
        self._locks: Dict[str, List[Any]] = {}
        self.ttl_seconds = ttl_seconds
        self.wait_seconds = wait_seconds

    @staticmethod
    def key(user_id: str, phone: str) -> str:
        return f"case-lock:{user_id}:{phone}"

    @property
    def tracked_keys(self) -> int:
        return len(self._locks)

    async def _acquire_remote(self, key: str):
        remote = self._redis.lock(key, timeout=self.ttl_seconds, blocking_timeout=self.wait_seconds, thread_local=False)
        try:
            if await remote.acquire():
                return remote
            logger.warning("case_lock_wait_exceeded", extra={"key": key, "waited_s": self.wait_seconds})
        except redis_exceptions.RedisError as exc:
            logger.warning("case_lock_unavailable", extra={"key": key, "error": repr(exc)})
        return None

    async def _release_remote(self, key: str, remote) -> None:
        try:
            await remote.release()
        except redis_exceptions.LockError:
            logger.warning("case_lock_expired_before_release", extra={"key": key})
        except redis_exceptions.RedisError as exc:
            logger.warning("case_lock_release_failed", extra={"key": key, "error": repr(exc)})

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                remote = await self._acquire_remote(key) if self._redis is not None else None
                try:
                    yield
                finally:
                    if remote is not None:
                        await self._release_remote(key, remote)
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                self._locks.pop(key, None)
