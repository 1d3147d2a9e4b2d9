import logging
from typing import Any, Dict, Iterable, List, Optional

from blueprint_sync.config.constants.store_keys import (
    USAGE_PREFIX,
    embed_config_key,
    embed_deleted_key,
)
from blueprint_sync.config.key_value_store import KeyValueStore, query_all_pages
from blueprint_sync.modules.reconciliation.adf_scanner import is_valid_id
from blueprint_sync.modules.reconciliation.models import CollectedReferences


class UsageCollector:
    """
    Flattens the usage index into the list of Embed placements to verify.

    A placement is kept only when its Embed configuration exists and it has
    no quarantine record. That filters index entries left behind by copies
    between environments. References with an unusable localId are passed
    through as-is so the caller can report them as broken.
    """

    def __init__(
        self,
        store: KeyValueStore,
        logger: logging.Logger,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> None:
        self.store = store
        self.logger = logger
        self.page_size = page_size
        self.max_pages = max_pages

    async def collect_references(self, known_source_ids: Iterable[str]) -> CollectedReferences:
        known = set(known_source_ids)
        collected = CollectedReferences()

        # A failure here is fatal for the caller: without the index there is nothing to check
        scan = await query_all_pages(self.store, USAGE_PREFIX, self.page_size, self.max_pages, self.logger)
        collected.truncated = scan.truncated

        for key, entry in scan.results:
            source_id = key[len(USAGE_PREFIX):]
            references = usage_references(entry)
            if references is None:
                self.logger.warning(f"⚠️ Malformed usage entry {key} ({type(entry).__name__}), skipping")
                collected.malformed_index_entries.append({"sourceId": source_id, "key": key})
                continue
            if source_id not in known:
                self.logger.warning(
                    f"⚠️ Usage entry for unknown Source {source_id} ({len(references)} reference(s))"
                )
                collected.orphaned_index_entries.append({
                    "sourceId": source_id,
                    "key": key,
                    "referenceCount": len(references),
                    "localIds": [r.get("localId") for r in references],
                })
            collected.all.extend(references)

        unique: Dict[str, Dict[str, Any]] = {}
        invalid: List[Dict[str, Any]] = []
        for reference in collected.all:
            local_id = reference.get("localId")
            if not is_valid_id(local_id):
                invalid.append(reference)
                continue
            if await self._is_live(local_id, reference):
                # Last write wins; localIds are expected to be unique
                unique[local_id] = reference

        collected.unique = list(unique.values()) + invalid
        self.logger.info(
            f"📋 Collected {len(collected.all)} reference(s), {len(unique)} live, "
            f"{len(invalid)} with invalid localId, {len(collected.orphaned_index_entries)} orphaned and "
            f"{len(collected.malformed_index_entries)} malformed index entr(ies)"
        )
        return collected

    async def _is_live(self, local_id: str, reference: Dict[str, Any]) -> bool:
        try:
            config = await self.store.get_key(embed_config_key(local_id))
            if not config:
                self.logger.debug(f"Skipping {local_id}: no Embed configuration (sourceId={reference.get('sourceId')})")
                return False
            if await self.store.get_key(embed_deleted_key(local_id)):
                self.logger.debug(f"Skipping {local_id}: already quarantined")
                return False
            return True
        except ConnectionError as e:
            # Unverifiable placements are left alone rather than risk a false orphan
            self.logger.warning(f"⚠️ Could not read configuration for {local_id}, skipping: {e}")
            return False


def usage_references(entry: Any) -> Optional[List[Dict[str, Any]]]:
    """The reference dicts of a usage entry, or None when the entry has no usable list."""
    if not isinstance(entry, dict):
        return None
    references = entry.get("references")
    if not isinstance(references, list):
        return None
    return [r for r in references if isinstance(r, dict)]


def group_by_page(references: Iterable[Dict[str, Any]]) -> Dict[str, List[Dict[str, Any]]]:
    grouped: Dict[str, List[Dict[str, Any]]] = {}
    for reference in references:
        grouped.setdefault(str(reference.get("pageId") or ""), []).append(reference)
    return grouped
