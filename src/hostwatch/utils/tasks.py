"""
Bookkeeping for fire-and-forget asyncio tasks.
"""
import asyncio
from typing import Coroutine, Optional, Set

import structlog

logger = structlog.get_logger(__name__)


class BackgroundTasks:
    """Keeps strong references to detached tasks and logs how they ended."""

    def __init__(self, owner: str):
        self._tasks: Set[asyncio.Task] = set()
        self.logger = logger.bind(service=owner)

    def __len__(self) -> int:
        return len(self._tasks)

    def spawn(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            self.logger.debug("Background task cancelled", task=task.get_name())
            return
        error = task.exception()
        if error is not None:
            self.logger.error(
                "Background task failed",
                task=task.get_name(),
                error=str(error),
                exc_info=(type(error), error, error.__traceback__),
            )

    async def cancel_all(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
