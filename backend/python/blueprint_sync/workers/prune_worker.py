"""
Prune worker.

Removes version snapshots older than the retention period and quarantine
records older than the recovery window. In dry-run it only counts.
"""

import logging
from typing import Any, Dict

from blueprint_sync.modules.reconciliation.models import Phase
from blueprint_sync.modules.reconciliation.orphan_manager import OrphanManager
from blueprint_sync.modules.reconciliation.progress_tracker import ProgressTracker
from blueprint_sync.services.versioning.version_manager import VersionManager


class PruneWorker:
    def __init__(
        self,
        version_manager: VersionManager,
        orphan_manager: OrphanManager,
        progress: ProgressTracker,
        logger: logging.Logger,
        version_retention_days: int = 90,
        default_dry_run: bool = True,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> None:
        self.version_manager = version_manager
        self.orphan_manager = orphan_manager
        self.progress = progress
        self.logger = logger
        self.version_retention_days = version_retention_days
        self.default_dry_run = default_dry_run
        self.page_size = page_size
        self.max_pages = max_pages

    async def handler(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        progress_id = payload.get("progressId")
        dry_run = payload.get("dryRun")
        if dry_run is None:
            dry_run = self.default_dry_run

        try:
            await self.progress.update(
                progress_id,
                {"phase": Phase.PROCESSING.value, "percent": 10, "status": "Pruning version history...", "dryRun": dry_run},
            )
            versions = await self.version_manager.prune_expired_versions(
                self.version_retention_days,
                dry_run=dry_run,
                page_size=self.page_size,
                max_pages=self.max_pages,
            )

            await self.progress.update(
                progress_id, {"phase": Phase.PROCESSING.value, "percent": 50, "status": "Purging expired quarantine..."}
            )
            quarantine = await self.orphan_manager.purge_expired(dry_run=dry_run)

            summary = {
                "versionsExpired": versions["expired"],
                "versionsPruned": versions["pruned"],
                "quarantineExpired": len(quarantine["expired"]),
                "quarantinePurged": len(quarantine["purged"]),
                "truncated": versions["truncated"] or quarantine["truncated"],
            }
            prefix = "🛡️ DRY-RUN: would prune" if dry_run else "🧹 Pruned"
            status = (
                f"{prefix} {summary['versionsExpired']} version(s) and "
                f"{summary['quarantineExpired']} quarantine record(s)"
            )
            await self.progress.update(
                progress_id,
                {
                    "phase": Phase.COMPLETE.value,
                    "percent": 100,
                    "status": status,
                    "summary": summary,
                    "results": {"versions": versions, "quarantine": quarantine},
                },
            )
            self.logger.info(status)
            return {"success": True, "dryRun": dry_run, "summary": summary}
        except Exception as e:
            self.logger.error(f"❌ Prune failed: {e}", exc_info=True)
            await self.progress.update(
                progress_id, {"phase": Phase.ERROR.value, "status": f"Error: {e}", "error": str(e)}
            )
            return {"success": False, "error": str(e)}
