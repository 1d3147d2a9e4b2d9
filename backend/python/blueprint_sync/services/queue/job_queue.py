import logging
import uuid
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

from blueprint_sync.services.tasks.task_manager import BackgroundTaskManager
from blueprint_sync.utils.time_conversion import get_iso_timestamp

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

DEFAULT_MAX_FINISHED_JOBS = 200


class InProcessJobQueue:
    """
    Minimal job queue running handlers as background tasks in this process.

    push() returns immediately with a job id. Handlers must tolerate being
    invoked more than once for the same payload. Only the most recent
    max_finished_jobs finished jobs stay visible through get_job().
    """

    def __init__(
        self,
        task_manager: BackgroundTaskManager,
        logger: logging.Logger,
        max_finished_jobs: int = DEFAULT_MAX_FINISHED_JOBS,
    ) -> None:
        self.task_manager = task_manager
        self.logger = logger
        self.max_finished_jobs = max_finished_jobs
        self._handlers: Dict[str, JobHandler] = {}
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._finished: Deque[str] = deque()

    def register(self, queue_name: str, handler: JobHandler) -> None:
        self._handlers[queue_name] = handler
        self.logger.debug(f"Registered handler for queue {queue_name}")

    def push(self, queue_name: str, payload: Dict[str, Any]) -> str:
        handler = self._handlers.get(queue_name)
        if handler is None:
            raise ValueError(f"No handler registered for queue {queue_name}")

        job_id = f"{queue_name}-{uuid.uuid4().hex}"
        self._jobs[job_id] = {
            "jobId": job_id,
            "queue": queue_name,
            "status": "queued",
            "enqueuedAt": get_iso_timestamp(),
        }
        self.task_manager.spawn(queue_name, self._run(job_id, handler, {**payload, "jobId": job_id}))
        self.logger.info(f"📨 Job {job_id} queued")
        return job_id

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self._jobs.get(job_id)

    async def _run(self, job_id: str, handler: JobHandler, payload: Dict[str, Any]) -> Any:
        job = self._jobs[job_id]
        job["status"] = "running"
        try:
            result = await handler(payload)
        except Exception:
            self._finish(job_id, "failed")
            raise
        self._finish(job_id, "done")
        return result

    def _finish(self, job_id: str, status: str) -> None:
        job = self._jobs.get(job_id)
        if job is None:
            return
        job["status"] = status
        job["finishedAt"] = get_iso_timestamp()
        self._finished.append(job_id)
        while len(self._finished) > self.max_finished_jobs:
            self._jobs.pop(self._finished.popleft(), None)
