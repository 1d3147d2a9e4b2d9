import asyncio
import logging
from typing import Any, Dict, Optional

from blueprint_sync.config.constants.store_keys import progress_key
from blueprint_sync.config.key_value_store import KeyValueStore
from blueprint_sync.modules.reconciliation.models import PHASE_ORDER, Phase
from blueprint_sync.utils.time_conversion import get_iso_timestamp

TERMINAL_PHASES = (Phase.COMPLETE.value, Phase.ERROR.value)


def _phase_rank(phase: Optional[str]) -> int:
    for rank, known in enumerate(PHASE_ORDER):
        if known.value == phase:
            return rank
    return -1


def calculate_phase_progress(done: int, total: int, range_start: int, range_end: int) -> int:
    """Map done/total linearly onto the global band [range_start, range_end]."""
    if total <= 0:
        return range_end
    fraction = min(max(done / total, 0.0), 1.0)
    return range_start + int(fraction * (range_end - range_start))


def build_completion_message(dry_run: bool, orphaned: int, repaired: int, removed: int) -> str:
    if dry_run:
        return f"🛡️ DRY-RUN complete: {orphaned} orphan(s) found, nothing deleted, {repaired} reference(s) repaired"
    return f"✅ Complete: {orphaned} orphan(s) found, {removed} soft-deleted, {repaired} reference(s) repaired"


class ProgressTracker:
    """
    Persists job progress so a client can poll it.

    update() merges fields onto the stored record. The stored percent never
    decreases and the phase never moves backwards; ``error`` can be entered
    from any phase and keeps the percent reached so far. Once a job is
    complete or failed its phase no longer changes. Writes are best effort:
    a storage failure is logged and the job carries on.
    """

    def __init__(self, store: KeyValueStore, logger: logging.Logger) -> None:
        self.store = store
        self.logger = logger
        self._lock = asyncio.Lock()

    async def init_job(self, progress_id: str, job_type: str, dry_run: Optional[bool] = None) -> Dict[str, Any]:
        record = {
            "progressId": progress_id,
            "jobType": job_type,
            "phase": Phase.QUEUED.value,
            "percent": 0,
            "status": "Job queued...",
            "total": 0,
            "processed": 0,
            "createdAt": get_iso_timestamp(),
            "updatedAt": get_iso_timestamp(),
        }
        if dry_run is not None:
            record["dryRun"] = dry_run
        try:
            await self.store.create_key(progress_key(progress_id), record)
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to initialise progress {progress_id}: {e}")
        return record

    async def get(self, progress_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get_key(progress_key(progress_id))

    async def update(self, progress_id: Optional[str], updates: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        if not progress_id:
            return None

        async with self._lock:
            try:
                current = await self.store.get_key(progress_key(progress_id)) or {"progressId": progress_id}
                merged = {**current, **updates}

                current_phase = current.get("phase")
                new_phase = updates.get("phase", current_phase)
                if current_phase in TERMINAL_PHASES and new_phase != current_phase:
                    self.logger.debug(f"Ignoring phase {new_phase} for finished job {progress_id}")
                    merged["phase"] = current_phase
                elif new_phase != Phase.ERROR.value and _phase_rank(new_phase) < _phase_rank(current_phase):
                    self.logger.warning(f"⚠️ Progress {progress_id}: phase {new_phase} after {current_phase} ignored")
                    merged["phase"] = current_phase

                previous_percent = current.get("percent") or 0
                merged["percent"] = max(previous_percent, min(int(updates.get("percent", previous_percent) or 0), 100))
                merged["updatedAt"] = get_iso_timestamp()

                await self.store.create_key(progress_key(progress_id), merged)
                return merged
            except ConnectionError as e:
                self.logger.warning(f"⚠️ Progress update for {progress_id} failed: {e}")
                return None
