from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Set

logger = logging.getLogger(__name__)


class BackgroundRunner:
    """Fire-and-forget tasks that never fail the caller; errors are logged."""

    def __init__(self) -> None:
        self._tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable, label: str) -> asyncio.Task:
        task = asyncio.ensure_future(self._guard(coro, label))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _guard(self, coro: Awaitable, label: str) -> None:
        try:
            await coro
        except Exception:
            logger.exception("background_task_failed", extra={"task": label})

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks))
