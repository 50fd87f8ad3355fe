"""
Fire-and-forget task scheduling.

Background writes (ModelCall, Usage, model status, credential bookkeeping)
are spawned as independent asyncio tasks. Each task runs inside its own
error boundary: failures are logged and never propagate into the request
that scheduled them.
"""

import asyncio
from typing import Any, Awaitable, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTasks:
    """Holds strong references to in-flight background tasks."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()
        self._drainable: Set[asyncio.Task] = set()

    def spawn(
        self,
        coro: Awaitable[Any],
        name: str,
        drainable: bool = True,
        **log_context: Any,
    ) -> asyncio.Task:
        """
        Schedule a coroutine without awaiting it.

        Args:
            coro: Coroutine to run
            name: Task name used in failure logs
            drainable: Whether drain() waits for this task. Long sleepers
                such as delayed weight recovery pass False.
            log_context: Extra fields logged on failure
        """
        task = asyncio.get_running_loop().create_task(self._guard(coro, name, log_context), name=name)
        self._tasks.add(task)
        if drainable:
            self._drainable.add(task)
        task.add_done_callback(self._discard)
        return task

    async def _guard(self, coro: Awaitable[Any], name: str, log_context: dict) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("Background task failed", task=name, error=str(e), **log_context)

    def _discard(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        self._drainable.discard(task)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every drainable task, including ones spawned meanwhile, is done."""
        while self._drainable:
            await asyncio.wait(set(self._drainable), timeout=timeout)
            if timeout is not None:
                break

    async def cancel_all(self) -> None:
        """Cancel every outstanding task (shutdown)."""
        tasks = set(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
