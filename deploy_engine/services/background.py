"""
BackgroundTasks - fire-and-forget tasks with logged failures.

Used for best-effort side effects (gate auto-completion, plan runs started
from the API). Errors raised by a spawned coroutine are logged here and
never propagate to whoever spawned it.
"""

import asyncio
from typing import Any, Coroutine, Optional

from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)


class BackgroundTasks:
    """Keeps strong references to spawned tasks until they finish."""

    def __init__(self):
        self._tasks: set[asyncio.Task] = set()

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "Background task %s failed: %s",
                task.get_name(),
                error,
                exc_info=error,
            )

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def join(self, timeout: Optional[float] = None) -> None:
        """Wait for all currently running tasks (used in tests and shutdown)."""
        if not self._tasks:
            return
        await asyncio.wait(list(self._tasks), timeout=timeout)

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
