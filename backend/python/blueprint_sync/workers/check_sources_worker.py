"""
Check Sources worker.

Confirms every Source still sits on the page it was authored on, then
rebuilds the Source index from ``source:*`` records.

Progress bands:
- 0-10%: loading Sources from storage
- 10-20%: grouping Sources by page
- 20-90%: fetching pages and checking each Source
- 90-100%: rebuilding the index

Check-sources is report-only. A Source missing from its page is logged;
the next page sync decides what happens to it.
"""

import logging
from typing import Any, Dict, List, Optional

from blueprint_sync.modules.reconciliation.adf_scanner import (
    contains_marker,
    find_source_markers,
    is_valid_id,
)
from blueprint_sync.modules.reconciliation.models import (
    FetchResult,
    Phase,
    SourceCheckResults,
    is_deletion_confirmed,
)
from blueprint_sync.modules.reconciliation.page_fetcher import PageFetcher
from blueprint_sync.modules.reconciliation.progress_tracker import ProgressTracker, calculate_phase_progress
from blueprint_sync.modules.reconciliation.source_index import SourceIndex

SOURCE_PAGE_DELETED_REASON = "Source page deleted"
SOURCE_MARKER_MISSING_REASON = "Source macro not found on its page"
UNREADABLE_DOCUMENT_ERROR = "unreadable_document"


def _source_entry(source_id: str, source: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "sourceId": source_id,
        "name": source.get("name"),
        "pageId": source.get("sourcePageId"),
        "localId": source.get("sourceLocalId"),
    }


class CheckSourcesWorker:
    def __init__(
        self,
        source_index: SourceIndex,
        fetcher: PageFetcher,
        progress: ProgressTracker,
        logger: logging.Logger,
    ) -> None:
        self.source_index = source_index
        self.fetcher = fetcher
        self.progress = progress
        self.logger = logger

    async def handler(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        progress_id = payload.get("progressId")
        try:
            await self._update(progress_id, Phase.INITIALIZING, 0, "Starting Source check...")
            await self._update(progress_id, Phase.FETCHING, 5, "Loading Sources...")
            listing = await self.source_index.list_sources()

            results = SourceCheckResults(total_checked=len(listing.results))
            await self._update(
                progress_id, Phase.COLLECTING, 10, f"Grouping {len(listing.results)} Source(s) by page..."
            )
            by_page = self._group_by_page(listing.results, results)

            await self._update(
                progress_id,
                Phase.PROCESSING,
                20,
                f"Checking {len(by_page)} page(s)...",
                total=results.total_checked,
                processed=len(results.skipped),
            )
            processed = len(results.skipped)
            for page_id, sources in by_page.items():
                fetch = await self.fetcher.fetch_page(page_id)
                results.pages_checked += 1
                on_page = find_source_markers(fetch.document) if fetch.success and fetch.document else []

                for source_id, source in sources:
                    self._check_source(page_id, source_id, source, fetch, on_page, results)
                    processed += 1
                    await self._update(
                        progress_id,
                        Phase.PROCESSING,
                        calculate_phase_progress(processed, results.total_checked, 20, 90),
                        f"Checked Source {processed}/{results.total_checked}...",
                        total=results.total_checked,
                        processed=processed,
                    )

            await self._update(progress_id, Phase.FINALIZING, 90, "Rebuilding Source index...")
            results.index = await self.source_index.rebuild()

            output = {"success": True, **results.to_dict()}
            status = self._completion_message(results)
            await self.progress.update(
                progress_id,
                {"phase": Phase.COMPLETE.value, "percent": 100, "status": status, "results": output},
            )
            self.logger.info(status)
            return output
        except Exception as e:
            self.logger.error(f"❌ Check Sources failed: {e}", exc_info=True)
            await self.progress.update(
                progress_id, {"phase": Phase.ERROR.value, "status": f"Error: {e}", "error": str(e)}
            )
            return {"success": False, "error": str(e)}

    def _group_by_page(self, sources, results: SourceCheckResults) -> Dict[str, List]:
        by_page: Dict[str, List] = {}
        for source_id, source in sources:
            page_id = source.get("sourcePageId")
            local_id = source.get("sourceLocalId")
            if not is_valid_id(page_id) or not is_valid_id(local_id):
                self.logger.warning(
                    f"⚠️ Skipping Source {source_id}: sourcePageId={page_id or 'MISSING'} "
                    f"sourceLocalId={local_id or 'MISSING'}"
                )
                results.skipped.append({
                    **_source_entry(source_id, source),
                    "reason": "Missing sourcePageId or sourceLocalId",
                })
                continue
            by_page.setdefault(page_id, []).append((source_id, source))
        return by_page

    def _check_source(
        self,
        page_id: str,
        source_id: str,
        source: Dict[str, Any],
        fetch: FetchResult,
        on_page: List[str],
        results: SourceCheckResults,
    ) -> None:
        entry = _source_entry(source_id, source)

        if is_deletion_confirmed(fetch):
            self.logger.warning(f"⚠️ Source {source_id}: page {page_id} was deleted")
            results.missing_from_page.append({**entry, "reason": SOURCE_PAGE_DELETED_REASON, "pageExists": False})
            return

        if not fetch.success or fetch.document is None:
            error_type = fetch.error_type.value if fetch.error_type else UNREADABLE_DOCUMENT_ERROR
            self.logger.warning(
                f"⚠️ Source {source_id}: page {page_id} could not be verified ({error_type}), not marking as missing"
            )
            results.unverified.append({
                **entry,
                "error": fetch.error or f"Page {page_id} returned no readable document",
                "errorType": error_type,
                "httpStatus": fetch.http_status,
            })
            return

        if contains_marker(fetch.document, source["sourceLocalId"]):
            results.active.append({**entry, "matchedBy": "localId"})
            return

        if source_id in on_page:
            # The macro was re-inserted and received a new local id
            self.logger.info(f"🔎 Source {source_id} found on page {page_id} under a different localId")
            results.active.append({**entry, "matchedBy": "sourceId"})
            return

        self.logger.warning(
            f"⚠️ Source {source_id} not found on page {page_id}; left for the next page sync"
        )
        results.missing_from_page.append({**entry, "reason": SOURCE_MARKER_MISSING_REASON, "pageExists": True})

    @staticmethod
    def _completion_message(results: SourceCheckResults) -> str:
        index = results.index
        index_status = (
            f"index rebuilt {index['previousCount']} -> {index['sourceCount']}"
            if index.get("rebuilt")
            else f"index up to date ({index.get('sourceCount', 0)} Source(s))"
        )
        return (
            f"✅ Checked {results.total_checked} Source(s): {len(results.active)} active, "
            f"{len(results.missing_from_page)} missing from page, {len(results.unverified)} unverified, "
            f"{len(results.skipped)} skipped; {index_status}"
        )

    async def _update(
        self, progress_id: Optional[str], phase: Phase, percent: int, status: str, **extra: Any
    ) -> None:
        await self.progress.update(progress_id, {"phase": phase.value, "percent": percent, "status": status, **extra})
