"""
Fire-and-forget work started while serving a request (last_access updates)
"""

import asyncio
from typing import Any, Coroutine, Optional, Set

from ..utils.logging import get_logger

logger = get_logger(__name__)

class BackgroundTaskManager:
    """Keeps a reference to every spawned task until it finishes so shutdown can wait for it"""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def add_task(self, coro: Coroutine, name: Optional[str] = None) -> asyncio.Task:
        """
        Schedule coro on the running loop

        Failures are logged and never reach the request that scheduled them.
        """
        task = asyncio.create_task(self._run(coro), name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self, timeout: Optional[float] = None) -> None:
        """
        Wait for scheduled tasks, including ones scheduled while waiting

        Tasks still running after timeout seconds are cancelled.
        """
        try:
            await asyncio.wait_for(self._wait_all(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Cancelling {len(self._tasks)} background task(s) still running at shutdown")
            for task in list(self._tasks):
                task.cancel()
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _wait_all(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def _run(self, coro: Coroutine) -> Any:
        task = asyncio.current_task()
        try:
            return await coro
        except asyncio.CancelledError:
            logger.info(f"Task {task.get_name()} was cancelled")
            raise
        except Exception as e:
            logger.error(f"Error in background task {task.get_name()}: {str(e)}", exc_info=True)
