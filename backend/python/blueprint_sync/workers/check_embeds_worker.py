"""
Check Embeds worker.

Verifies every Embed placement listed in the usage index against the live
page content and classifies it as active, stale, orphaned, broken or
unverified.

Progress bands:
- 0%: initializing
- 5-10%: backup snapshot
- 10-15%: fetching the Source index
- 15-25%: collecting usage data
- 25-95%: processing pages
- 95%: finalizing
- 100%: complete

Only a confirmed missing marker or a confirmed deleted page produces an
orphan. Every other failure leaves the placement alone for this run.
"""

import logging
from typing import Any, Dict, List, Optional

from blueprint_sync.config.constants.store_keys import embed_cache_key, embed_config_key
from blueprint_sync.config.key_value_store import KeyValueStore
from blueprint_sync.modules.reconciliation.adf_scanner import (
    DEFAULT_MAX_DEPTH,
    contains_marker,
    extract_injected_content,
    is_valid_id,
)
from blueprint_sync.modules.reconciliation.backup_manager import BackupManager
from blueprint_sync.modules.reconciliation.models import (
    FetchResult,
    Phase,
    ReconciliationResults,
    is_deletion_confirmed,
    source_id_of,
)
from blueprint_sync.modules.reconciliation.orphan_manager import OrphanManager
from blueprint_sync.modules.reconciliation.page_fetcher import PageFetcher
from blueprint_sync.modules.reconciliation.progress_tracker import (
    ProgressTracker,
    build_completion_message,
    calculate_phase_progress,
)
from blueprint_sync.modules.reconciliation.publication_cache import PublicationCache
from blueprint_sync.modules.reconciliation.reference_repairer import ReferenceRepairer
from blueprint_sync.modules.reconciliation.source_index import SourceIndex
from blueprint_sync.modules.reconciliation.usage_collector import UsageCollector, group_by_page
from blueprint_sync.utils.time_conversion import get_iso_timestamp, parse_timestamp

MARKER_MISSING_REASON = "Marker not found in page content"
PAGE_DELETED_REASON = "Page deleted"


def is_stale(last_synced: Any, source_updated: Any) -> bool:
    """Source updated strictly after the placement last synced. Missing timestamps are never stale."""
    synced_at = parse_timestamp(last_synced)
    updated_at = parse_timestamp(source_updated)
    if synced_at is None or updated_at is None:
        return False
    return updated_at > synced_at


class CheckEmbedsWorker:
    def __init__(
        self,
        store: KeyValueStore,
        fetcher: PageFetcher,
        usage_collector: UsageCollector,
        repairer: ReferenceRepairer,
        orphan_manager: OrphanManager,
        backup_manager: BackupManager,
        progress: ProgressTracker,
        publication_cache: PublicationCache,
        source_index: SourceIndex,
        logger: logging.Logger,
        default_dry_run: bool = True,
        scan_max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.usage_collector = usage_collector
        self.repairer = repairer
        self.orphan_manager = orphan_manager
        self.backup_manager = backup_manager
        self.progress = progress
        self.publication_cache = publication_cache
        self.source_index = source_index
        self.logger = logger
        self.default_dry_run = default_dry_run
        self.scan_max_depth = scan_max_depth

    async def handler(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        progress_id = payload.get("progressId")
        dry_run = payload.get("dryRun")
        if dry_run is None:
            dry_run = self.default_dry_run

        results = ReconciliationResults(dry_run=dry_run)

        if dry_run:
            self.logger.info("🛡️ DRY-RUN MODE: orphans are reported only, nothing is deleted")
        else:
            self.logger.warning("⚠️ LIVE MODE: orphaned Embeds will be soft-deleted")

        try:
            await self._update(progress_id, Phase.INITIALIZING, 0, "Starting check...", dryRun=dry_run)

            results.backup_id = await self._create_backup(progress_id)

            await self._update(progress_id, Phase.FETCHING, 10, "Fetching Source index...")
            source_ids = await self.source_index.load_ids()
            await self._update(progress_id, Phase.FETCHING, 15, f"Found {len(source_ids)} Source(s)...")

            await self._update(progress_id, Phase.COLLECTING, 15, "Collecting usage data...")
            collected = await self.usage_collector.collect_references(source_ids)
            results.orphaned_index_entries = collected.orphaned_index_entries
            results.malformed_index_entries = collected.malformed_index_entries
            results.index_truncated = collected.truncated
            results.total_checked = len(collected.unique)

            by_page = group_by_page(collected.unique)
            total_pages = len(by_page)
            await self._update(
                progress_id,
                Phase.COLLECTING,
                25,
                f"Found {len(collected.unique)} Embed(s) on {total_pages} page(s)...",
                total=total_pages,
                processed=0,
            )

            # Pages are processed one at a time; usage entries are read-modify-write
            for processed, (page_id, references) in enumerate(by_page.items(), start=1):
                await self._process_page(page_id, references, results)
                results.pages_checked = processed
                await self._update(
                    progress_id,
                    Phase.PROCESSING,
                    calculate_phase_progress(processed, total_pages, 25, 95),
                    f"Checked page {processed}/{total_pages}...",
                    total=total_pages,
                    processed=processed,
                )

            await self._update(progress_id, Phase.FINALIZING, 95, "Refreshing publication cache...")
            try:
                await self.publication_cache.rebuild(results.active)
            except ConnectionError as e:
                self.logger.warning(f"⚠️ Publication cache refresh failed: {e}")

            final = {**results.to_dict(), "completedAt": get_iso_timestamp()}
            await self._update(
                progress_id,
                Phase.COMPLETE,
                100,
                build_completion_message(
                    dry_run, len(results.orphaned), len(results.repaired), len(results.orphaned_entries_removed)
                ),
                total=total_pages,
                processed=total_pages,
                summary=results.summary(),
                backupId=results.backup_id,
                results=final,
            )
            self.logger.info(f"✅ Check Embeds complete: {results.summary()}")
            return {"success": True, "progressId": progress_id, "summary": results.summary(), "backupId": results.backup_id}

        except Exception as e:
            self.logger.error(f"❌ Fatal error in Check Embeds: {e}", exc_info=True)
            await self._update(
                progress_id,
                Phase.ERROR,
                0,
                f"Error: {e}",
                error=str(e),
                summary=results.summary(),
                results=results.to_dict(),
            )
            return {"success": False, "error": str(e), "progressId": progress_id, "summary": results.summary()}

    async def _create_backup(self, progress_id: Optional[str]) -> Optional[str]:
        await self._update(progress_id, Phase.BACKUP, 5, "💾 Creating backup snapshot...")
        try:
            backup_id = await self.backup_manager.create_snapshot("checkEmbeds")
        except Exception as e:
            # A missing backup does not block a check; deletions stay versioned individually
            self.logger.warning(f"⚠️ Backup creation failed, continuing: {e}")
            await self._update(progress_id, Phase.BACKUP, 10, "⚠️ Backup failed, continuing check...")
            return None
        await self._update(progress_id, Phase.BACKUP, 10, f"✅ Backup created: {backup_id}", backupId=backup_id)
        return backup_id

    async def _process_page(
        self, page_id: str, references: List[Dict[str, Any]], results: ReconciliationResults
    ) -> None:
        try:
            fetched = await self.fetcher.fetch_page(page_id)
        except Exception as e:
            self.logger.error(f"❌ Error fetching page {page_id}, leaving its Embeds unverified: {e}", exc_info=True)
            results.unverified.extend(
                {**ref, "reason": f"Page fetch error: {e}", "errorType": "processing_error"} for ref in references
            )
            return

        if not fetched.success:
            await self._handle_fetch_failure(page_id, references, fetched, results)
            return

        document = fetched.document
        document_ok = isinstance(document, dict) and bool(document.get("type"))

        for reference in references:
            local_id = reference.get("localId")
            try:
                if not is_valid_id(local_id):
                    results.broken.append({**reference, "reason": "Invalid localId in usage data", "pageExists": True})
                    continue

                if not document_ok:
                    results.broken.append({
                        **reference,
                        "reason": "Processing error: page content is not a valid document",
                        "pageExists": True,
                    })
                    continue

                if not contains_marker(document, local_id, self.scan_max_depth):
                    await self._handle_orphan(
                        reference, MARKER_MISSING_REASON, True, results, {"pageTitle": fetched.title}
                    )
                    continue

                await self._process_active(reference, fetched, results)

            except Exception as e:
                self.logger.error(
                    f"❌ Error processing Embed {local_id} on page {page_id}, NOT marking as orphaned: {e}",
                    exc_info=True,
                )
                results.broken.append({**reference, "reason": f"Processing error: {e}", "pageExists": True})

    async def _handle_fetch_failure(
        self,
        page_id: str,
        references: List[Dict[str, Any]],
        fetched: FetchResult,
        results: ReconciliationResults,
    ) -> None:
        error_type = fetched.error_type.value if fetched.error_type else "unknown"

        if is_deletion_confirmed(fetched):
            self.logger.warning(f"🗑️ Page {page_id} deleted, {len(references)} Embed(s) orphaned")
            for reference in references:
                try:
                    await self._handle_orphan(reference, PAGE_DELETED_REASON, False, results, {})
                except Exception as e:
                    self.logger.error(f"❌ Failed to handle orphan {reference.get('localId')}: {e}", exc_info=True)
                    results.broken.append({**reference, "reason": f"Processing error: {e}", "pageExists": False})
            return

        self.logger.warning(
            f"⚠️ Page {page_id} not verifiable ({error_type}, HTTP {fetched.http_status}), "
            f"leaving {len(references)} Embed(s) untouched: {fetched.error}"
        )
        results.unverified.extend(
            {**ref, "reason": fetched.error, "errorType": error_type, "httpStatus": fetched.http_status}
            for ref in references
        )

    async def _handle_orphan(
        self,
        reference: Dict[str, Any],
        reason: str,
        page_exists: bool,
        results: ReconciliationResults,
        extra: Dict[str, Any],
    ) -> None:
        local_id = reference.get("localId")
        results.orphaned.append({**reference, "reason": reason, "pageExists": page_exists})

        if results.dry_run:
            self.logger.info(f"🛡️ DRY-RUN: would soft-delete Embed {local_id} ({reason})")
            return

        metadata = {"pageId": reference.get("pageId"), **{k: v for k, v in extra.items() if v is not None}}
        outcome = await self.orphan_manager.soft_delete_embed(local_id, reason, metadata, dry_run=False)
        if outcome.get("success") and outcome.get("quarantined"):
            if await self.repairer.remove_from_index(local_id, source_id_of(reference)):
                results.orphaned_entries_removed.append(local_id)
        else:
            self.logger.warning(f"⚠️ Soft delete of {local_id} did not complete, usage entry kept: {outcome}")

    async def _process_active(
        self, reference: Dict[str, Any], fetched: FetchResult, results: ReconciliationResults
    ) -> None:
        local_id = reference["localId"]
        source_id = source_id_of(reference)

        if not source_id:
            repair = await self.repairer.repair(reference)
            if not repair.repaired:
                broken = {**reference, "reason": repair.error}
                if repair.source_id:
                    broken["sourceId"] = repair.source_id
                results.broken.append(broken)
                return
            source_id = repair.source_id
            reference = {**reference, "sourceId": source_id}
            results.repaired.append({
                "localId": local_id,
                "pageId": reference.get("pageId"),
                "pageTitle": reference.get("pageTitle") or fetched.title,
                "sourceId": source_id,
                "sourceName": (repair.source or {}).get("name"),
                "repairedAt": get_iso_timestamp(),
            })

        source = await self.repairer.get_source(source_id)
        if not source:
            self.logger.warning(f"⚠️ Embed {local_id} references missing Source {source_id}")
            results.broken.append({**reference, "sourceId": source_id, "reason": "Referenced Source not found"})
            return

        config = await self.store.get_key(embed_config_key(local_id)) or {}
        cache = await self.store.get_key(embed_cache_key(local_id)) or {}
        record = self._build_active_record(reference, fetched, source, source_id, config, cache)

        results.active.append(record)
        if record["isStale"]:
            results.stale.append(record)

    def _build_active_record(
        self,
        reference: Dict[str, Any],
        fetched: FetchResult,
        source: Dict[str, Any],
        source_id: str,
        config: Dict[str, Any],
        cache: Dict[str, Any],
    ) -> Dict[str, Any]:
        page_data = fetched.page_data or {}
        webui = (page_data.get("_links") or {}).get("webui")
        last_synced = config.get("lastSynced")
        stale = is_stale(last_synced, source.get("updatedAt"))

        return {
            "localId": reference["localId"],
            "pageId": reference.get("pageId"),
            "pageTitle": reference.get("pageTitle") or fetched.title,
            "pageUrl": f"/wiki{webui}" if webui else None,
            "spaceKey": reference.get("spaceKey"),
            "headingAnchor": reference.get("headingAnchor"),
            "sourceId": source_id,
            "sourceName": source.get("name"),
            "sourceCategory": source.get("category"),
            "status": "Stale (update available)" if stale else "Active",
            "isStale": stale,
            "lastSynced": last_synced,
            "sourceUpdatedAt": source.get("updatedAt"),
            "variables": source.get("variables") or [],
            "toggles": source.get("toggles") or [],
            "variableValues": config.get("variableValues") or {},
            "toggleStates": config.get("toggleStates") or {},
            "customInsertions": config.get("customInsertions") or [],
            "publishedAt": config.get("publishedAt"),
            "renderedContent": cache.get("content"),
            "hasInjectedContent": extract_injected_content(
                fetched.document, reference["localId"], self.scan_max_depth
            ) is not None,
        }

    async def _update(self, progress_id: Optional[str], phase: Phase, percent: int, status: str, **extra: Any) -> None:
        await self.progress.update(progress_id, {"phase": phase.value, "percent": percent, "status": status, **extra})
