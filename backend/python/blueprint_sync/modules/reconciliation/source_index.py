import logging
from typing import Any, Dict, List

from blueprint_sync.config.constants.store_keys import SOURCE_INDEX_KEY, SOURCE_PREFIX, source_key
from blueprint_sync.config.key_value_store import KeyValueStore, QueryAllResult, query_all_pages
from blueprint_sync.services.versioning.version_manager import VersionManager, compute_content_hash


def _index_entry(source: Dict[str, Any], source_id: str) -> Dict[str, Any]:
    return {"id": source_id, "name": source.get("name"), "category": source.get("category")}


class SourceIndex:
    """
    The canonical list of Sources, stored under ``source-index``.

    The index is derived from the ``source:*`` records and can drift from
    them; rebuild() recomputes it from storage.
    """

    def __init__(
        self,
        store: KeyValueStore,
        version_manager: VersionManager,
        logger: logging.Logger,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> None:
        self.store = store
        self.version_manager = version_manager
        self.logger = logger
        self.page_size = page_size
        self.max_pages = max_pages

    async def load(self) -> Dict[str, Any]:
        index = await self.store.get_key(SOURCE_INDEX_KEY)
        if not isinstance(index, dict) or not isinstance(index.get("sources"), list):
            return {"sources": []}
        return index

    async def load_ids(self) -> List[str]:
        index = await self.load()
        return [entry["id"] for entry in index["sources"] if isinstance(entry, dict) and entry.get("id")]

    async def add(self, source: Dict[str, Any], source_id: str) -> None:
        try:
            index = await self.load()
            if any(entry.get("id") == source_id for entry in index["sources"]):
                return
            index["sources"].append(_index_entry(source, source_id))
            await self.store.create_key(SOURCE_INDEX_KEY, index)
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to add Source {source_id} to index: {e}")

    async def remove(self, source_id: str) -> None:
        try:
            index = await self.load()
            remaining = [entry for entry in index["sources"] if entry.get("id") != source_id]
            if len(remaining) != len(index["sources"]):
                index["sources"] = remaining
                await self.store.create_key(SOURCE_INDEX_KEY, index)
                self.logger.info(f"🗂️ Removed Source {source_id} from index")
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to remove Source {source_id} from index: {e}")

    async def list_sources(self) -> QueryAllResult:
        """Every ``source:*`` record as (source id, record) pairs, read from storage rather than the index."""
        scan = await query_all_pages(self.store, SOURCE_PREFIX, self.page_size, self.max_pages, self.logger)
        sources = [
            (source.get("id") or key[len(SOURCE_PREFIX):], source)
            for key, source in scan.results
            if isinstance(source, dict)
        ]
        return QueryAllResult(results=sources, pages=scan.pages, truncated=scan.truncated)

    async def rebuild(self) -> Dict[str, Any]:
        """Recompute the index from ``source:*`` and backfill missing content hashes.

        A truncated scan never shrinks the index: entries already listed are
        kept when storage could not be read completely.
        """
        scan = await query_all_pages(self.store, SOURCE_PREFIX, self.page_size, self.max_pages, self.logger)
        current = await self.load()

        entries: Dict[str, Dict[str, Any]] = {}
        backfilled: List[str] = []

        for key, source in scan.results:
            if not isinstance(source, dict):
                continue
            source_id = source.get("id") or key[len(SOURCE_PREFIX):]
            entries[source_id] = _index_entry(source, source_id)

            if not source.get("contentHash") and source.get("content") is not None:
                await self.version_manager.save_version(
                    source_key(source_id), source, {"changeType": "HASH_BACKFILL"}
                )
                await self.store.create_key(
                    source_key(source_id), {**source, "contentHash": compute_content_hash(source["content"])}
                )
                backfilled.append(source_id)

        if scan.truncated:
            for entry in current["sources"]:
                entries.setdefault(entry.get("id"), entry)

        current_ids = sorted(entry.get("id") for entry in current["sources"])
        rebuilt = sorted(entries) != current_ids
        if rebuilt:
            await self.store.create_key(SOURCE_INDEX_KEY, {"sources": list(entries.values())})
            self.logger.info(f"🗂️ Rebuilt Source index: {len(current_ids)} -> {len(entries)} entr(ies)")

        return {
            "success": True,
            "rebuilt": rebuilt,
            "sourceCount": len(entries),
            "previousCount": len(current_ids),
            "backfilledHashes": backfilled,
            "truncated": scan.truncated,
        }
