"""
Page Sync worker.

Handles one page-published event:
1. Fetch the page's document.
2. Diff the Source macros on the page against the cached ``page-sources``
   set; Sources that disappeared from their own page are soft-deleted.
3. Refresh the publication cache for the page in the background.

A Source macro removed from a page is taken as ground truth immediately.
A page fetch that fails without confirmed deletion changes nothing.
"""

import logging
from typing import Any, Dict, List, Optional

from blueprint_sync.config.constants.store_keys import (
    SOURCES_LAST_MODIFIED_KEY,
    embed_config_key,
    page_sources_key,
    source_key,
)
from blueprint_sync.config.key_value_store import KeyValueStore
from blueprint_sync.modules.reconciliation.adf_scanner import (
    DEFAULT_MAX_DEPTH,
    extract_injected_content,
    find_embed_markers,
    find_source_markers,
    is_valid_id,
)
from blueprint_sync.modules.reconciliation.models import is_deletion_confirmed
from blueprint_sync.modules.reconciliation.orphan_manager import OrphanManager
from blueprint_sync.modules.reconciliation.page_fetcher import PageFetcher
from blueprint_sync.modules.reconciliation.publication_cache import PublicationCache
from blueprint_sync.services.tasks.task_manager import BackgroundTaskManager
from blueprint_sync.utils.time_conversion import get_epoch_timestamp_in_ms, get_iso_timestamp

SOURCE_REMOVED_REASON = "Source macro removed from page"
PAGE_DELETED_REASON = "Source page deleted"


class PageSyncWorker:
    def __init__(
        self,
        store: KeyValueStore,
        fetcher: PageFetcher,
        orphan_manager: OrphanManager,
        publication_cache: PublicationCache,
        task_manager: BackgroundTaskManager,
        logger: logging.Logger,
        default_dry_run: bool = False,
        scan_max_depth: int = DEFAULT_MAX_DEPTH,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.orphan_manager = orphan_manager
        self.publication_cache = publication_cache
        self.task_manager = task_manager
        self.logger = logger
        self.default_dry_run = default_dry_run
        self.scan_max_depth = scan_max_depth

    async def handler(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        page_id = payload.get("pageId")
        dry_run = payload.get("dryRun")
        if dry_run is None:
            dry_run = self.default_dry_run

        if not is_valid_id(page_id):
            self.logger.error(f"❌ Page sync called without a valid pageId: {page_id!r}")
            return {"success": False, "error": "Missing pageId"}

        page_id = str(page_id)
        self.logger.info(f"🔄 Page sync for page {page_id} (dry_run={dry_run})")

        try:
            fetched = await self.fetcher.fetch_page(page_id)

            if not fetched.success:
                if is_deletion_confirmed(fetched):
                    return await self._handle_page_deleted(page_id, dry_run)
                self.logger.warning(
                    f"⚠️ Page {page_id} not verifiable ({fetched.error_type}), skipping sync: {fetched.error}"
                )
                return {"success": False, "pageId": page_id, "error": fetched.error, "skipped": True}

            document = fetched.document
            if not isinstance(document, dict):
                self.logger.warning(f"⚠️ Page {page_id} has no readable document, skipping sync")
                return {"success": False, "pageId": page_id, "error": "Unreadable page content", "skipped": True}

            source_diff = await self._sync_sources(page_id, document, dry_run)
            embeds = await self._published_embeds(page_id, fetched.title, document)

            if not dry_run:
                self.task_manager.spawn(
                    f"publication-cache:{page_id}", self.publication_cache.update_page(page_id, embeds)
                )

            return {
                "success": True,
                "pageId": page_id,
                "dryRun": dry_run,
                "publishedEmbeds": len(embeds),
                **source_diff,
            }

        except Exception as e:
            self.logger.error(f"❌ Error syncing page {page_id}: {e}", exc_info=True)
            return {"success": False, "pageId": page_id, "error": str(e)}

    async def _sync_sources(self, page_id: str, document: Dict[str, Any], dry_run: bool) -> Dict[str, Any]:
        cached = await self.store.get_key(page_sources_key(page_id)) or {}
        before = set(cached.get("sourceIds") or [])
        after_list = find_source_markers(document, self.scan_max_depth)
        after = set(after_list)

        removed = sorted(before - after)
        added = sorted(after - before)
        soft_deleted: List[str] = []

        for source_id in removed:
            if await self._lives_elsewhere(source_id, page_id):
                continue
            outcome = await self.orphan_manager.soft_delete_source(
                source_id,
                SOURCE_REMOVED_REASON,
                {"pageId": page_id},
                dry_run=dry_run,
            )
            if outcome.get("success"):
                soft_deleted.append(source_id)
            else:
                self.logger.warning(f"⚠️ Soft delete of Source {source_id} failed: {outcome.get('error')}")

        if removed or added:
            self.logger.info(f"📋 Page {page_id} Sources: +{len(added)} -{len(removed)}")
            if not dry_run:
                await self._write_page_sources(page_id, after_list)
        elif not cached and after_list and not dry_run:
            await self._write_page_sources(page_id, after_list)

        return {"sourcesAdded": added, "sourcesRemoved": removed, "sourcesSoftDeleted": soft_deleted}

    async def _handle_page_deleted(self, page_id: str, dry_run: bool) -> Dict[str, Any]:
        cached = await self.store.get_key(page_sources_key(page_id)) or {}
        source_ids = sorted(set(cached.get("sourceIds") or []))
        self.logger.warning(f"🗑️ Page {page_id} deleted; {len(source_ids)} Source(s) cached for it")

        soft_deleted: List[str] = []
        for source_id in source_ids:
            if await self._lives_elsewhere(source_id, page_id):
                continue
            outcome = await self.orphan_manager.soft_delete_source(
                source_id, PAGE_DELETED_REASON, {"pageId": page_id}, dry_run=dry_run
            )
            if outcome.get("success"):
                soft_deleted.append(source_id)

        if not dry_run:
            if cached:
                await self.store.delete_key(page_sources_key(page_id))
                await self._bump_last_modified()
            self.task_manager.spawn(f"publication-cache:{page_id}", self.publication_cache.remove_page(page_id))

        return {
            "success": True,
            "pageId": page_id,
            "dryRun": dry_run,
            "pageDeleted": True,
            "sourcesRemoved": source_ids,
            "sourcesSoftDeleted": soft_deleted,
        }

    async def _lives_elsewhere(self, source_id: str, page_id: str) -> bool:
        """True when the Source record says its macro lives on another page."""
        source = await self.store.get_key(source_key(source_id))
        home_page = (source or {}).get("sourcePageId")
        if home_page and str(home_page) != page_id:
            self.logger.info(f"Source {source_id} lives on page {home_page}, not removing it for page {page_id}")
            return True
        return False

    async def _write_page_sources(self, page_id: str, source_ids: List[str]) -> None:
        await self.store.create_key(
            page_sources_key(page_id),
            {"pageId": page_id, "sourceIds": source_ids, "updatedAt": get_iso_timestamp()},
        )
        await self._bump_last_modified()

    async def _bump_last_modified(self) -> None:
        await self.store.create_key(SOURCES_LAST_MODIFIED_KEY, get_epoch_timestamp_in_ms())

    async def _published_embeds(
        self, page_id: str, page_title: Optional[str], document: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        published = []
        for marker in find_embed_markers(document, self.scan_max_depth):
            local_id = marker["localId"]
            if extract_injected_content(document, local_id, self.scan_max_depth) is None:
                continue
            config = await self.store.get_key(embed_config_key(local_id)) or {}
            published.append({
                "localId": local_id,
                "sourceId": marker.get("sourceId") or config.get("sourceId") or config.get("excerptId"),
                "pageId": page_id,
                "pageTitle": page_title or f"Page {page_id}",
                "variableValues": config.get("variableValues") or {},
                "toggleStates": config.get("toggleStates") or {},
                "lastSynced": config.get("lastSynced"),
                "publishedAt": config.get("publishedAt"),
            })
        self.logger.debug(f"Page {page_id}: {len(published)} Embed(s) with injected content")
        return published
