"""
Background Task Manager
Tracks fire-and-forget asyncio tasks (queued jobs, cache refreshes) so their
failures are logged and they can be drained or cancelled at shutdown.
"""

import asyncio
import itertools
import logging
from typing import Coroutine, Dict, List, Optional


class BackgroundTaskManager:
    """
    Registry of running background tasks.

    - Tasks are removed from the registry automatically when they finish.
    - A failing task only produces a log line; nothing is re-raised to the
      code that spawned it.
    - drain() waits for everything currently running, cancel_all() stops it.
    """

    def __init__(self, logger: Optional[logging.Logger] = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._counter = itertools.count(1)

    def spawn(self, name: str, coro: Coroutine) -> asyncio.Task:
        """
        Schedule coro as a background task.

        Args:
            name: Human-readable label used in logs.
            coro: The coroutine to run.

        Returns:
            The created asyncio.Task.
        """
        task_id = f"{name}#{next(self._counter)}"
        task = asyncio.create_task(coro, name=task_id)
        self._tasks[task_id] = task
        task.add_done_callback(lambda t: self._on_task_done(task_id, t))
        self.logger.debug(f"Background task {task_id} started")
        return task

    def running(self) -> List[str]:
        return [task_id for task_id, task in self._tasks.items() if not task.done()]

    def is_running(self, name: str) -> bool:
        return any(task_id.split("#", 1)[0] == name for task_id in self.running())

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until every task, including ones spawned while waiting, has finished."""
        while self._tasks:
            pending = list(self._tasks.values())
            await asyncio.wait(pending, timeout=timeout)
            if timeout is not None:
                break
            # Let done-callbacks run before checking the registry again
            await asyncio.sleep(0)

    async def cancel_all(self) -> None:
        task_ids = self.running()
        if not task_ids:
            return

        self.logger.info(f"Cancelling {len(task_ids)} background task(s): {task_ids}")
        tasks = [self._tasks[task_id] for task_id in task_ids if task_id in self._tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.logger.info("All background tasks cancelled")

    def _on_task_done(self, task_id: str, task: asyncio.Task) -> None:
        self._tasks.pop(task_id, None)

        if task.cancelled():
            self.logger.debug(f"Background task {task_id} was cancelled")
        elif task.exception():
            self.logger.error(
                f"❌ Background task {task_id} raised an exception",
                exc_info=task.exception(),
            )
        else:
            self.logger.debug(f"Background task {task_id} completed")
