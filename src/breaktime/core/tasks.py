from __future__ import annotations

import asyncio
import logging
from typing import Any, Coroutine

from breaktime.core.logging_config import record_error

logger = logging.getLogger(__name__)


class BackgroundTasks:
    """Registry for detached side effects.

    Every spawned task is kept referenced until it finishes and its failure is
    logged here, so callers may detach without losing errors.
    """

    def __init__(self, *, component: str = "background") -> None:
        self._component = component
        self._tasks: set[asyncio.Task[Any]] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], *, name: str) -> asyncio.Task[Any]:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.info("Background task %s cancelled", task.get_name())
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Background task %s failed",
                task.get_name(),
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            record_error(component=self._component, error_type=type(exc).__name__)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for every task spawned so far (used on shutdown and in tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel_all(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        await self.drain()


__all__ = ["BackgroundTasks"]
