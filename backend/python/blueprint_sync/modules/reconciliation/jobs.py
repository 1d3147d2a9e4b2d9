import logging
import uuid
from typing import Any, Dict, Optional

from blueprint_sync.exceptions.reconciliation_exceptions import ErrorCode, error_response
from blueprint_sync.modules.reconciliation.adf_scanner import is_valid_id
from blueprint_sync.modules.reconciliation.progress_tracker import ProgressTracker
from blueprint_sync.services.queue.job_queue import InProcessJobQueue

CHECK_EMBEDS_QUEUE = "check-embeds"
CHECK_SOURCES_QUEUE = "check-sources"
PRUNE_QUEUE = "prune"
PAGE_SYNC_QUEUE = "page-sync"


class ReconciliationJobs:
    """
    Entry points that start background jobs.

    Each start_* call writes a queued progress record, pushes the job and
    returns its ids straight away; callers poll get_progress().
    """

    def __init__(
        self,
        queue: InProcessJobQueue,
        progress: ProgressTracker,
        logger: logging.Logger,
        default_dry_run: bool = True,
        page_sync_dry_run: bool = False,
    ) -> None:
        self.queue = queue
        self.progress = progress
        self.logger = logger
        self.default_dry_run = default_dry_run
        self.page_sync_dry_run = page_sync_dry_run

    async def start_check_embeds(self, dry_run: Optional[bool] = None) -> Dict[str, Any]:
        dry_run = self.default_dry_run if dry_run is None else dry_run
        return await self._start(CHECK_EMBEDS_QUEUE, "checkEmbeds", {"dryRun": dry_run}, dry_run)

    async def start_check_sources(self) -> Dict[str, Any]:
        return await self._start(CHECK_SOURCES_QUEUE, "checkSources", {}, None)

    async def start_prune(self, dry_run: Optional[bool] = None) -> Dict[str, Any]:
        dry_run = self.default_dry_run if dry_run is None else dry_run
        return await self._start(PRUNE_QUEUE, "prune", {"dryRun": dry_run}, dry_run)

    async def get_progress(self, progress_id: str) -> Optional[Dict[str, Any]]:
        return await self.progress.get(progress_id)

    async def handle_page_published(self, page_id: Any, dry_run: Optional[bool] = None) -> Dict[str, Any]:
        if not is_valid_id(str(page_id) if page_id is not None else None):
            return error_response(ErrorCode.VALIDATION_REQUIRED, "pageId is required")
        dry_run = self.page_sync_dry_run if dry_run is None else dry_run
        job_id = self.queue.push(PAGE_SYNC_QUEUE, {"pageId": str(page_id), "dryRun": dry_run})
        self.logger.info(f"📄 Page {page_id} published, sync job {job_id} queued")
        return {"success": True, "jobId": job_id, "pageId": str(page_id)}

    async def _start(
        self, queue_name: str, job_type: str, payload: Dict[str, Any], dry_run: Optional[bool]
    ) -> Dict[str, Any]:
        progress_id = str(uuid.uuid4())
        await self.progress.init_job(progress_id, job_type, dry_run)
        job_id = self.queue.push(queue_name, {**payload, "progressId": progress_id})
        self.logger.info(f"🚀 {job_type} job {job_id} started (progress {progress_id})")
        return {"success": True, "jobId": job_id, "progressId": progress_id}
