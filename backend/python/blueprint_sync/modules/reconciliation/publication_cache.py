import logging
from typing import Any, Dict, Iterable, List

from blueprint_sync.config.constants.store_keys import PUBLICATION_CACHE_KEY
from blueprint_sync.config.key_value_store import KeyValueStore
from blueprint_sync.modules.reconciliation.models import source_id_of
from blueprint_sync.utils.time_conversion import get_epoch_timestamp_in_ms, get_iso_timestamp


def _empty_cache() -> Dict[str, Any]:
    return {"timestamp": get_epoch_timestamp_in_ms(), "totalPublished": 0, "bySourceId": {}, "byPageId": {}}


def published_entry(record: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "localId": record.get("localId"),
        "sourceId": source_id_of(record),
        "pageId": record.get("pageId"),
        "pageTitle": record.get("pageTitle"),
        "variableValues": record.get("variableValues") or {},
        "toggleStates": record.get("toggleStates") or {},
        "lastSynced": record.get("lastSynced"),
        "publishedAt": record.get("publishedAt") or get_iso_timestamp(),
        "hasInjectedContent": True,
    }


def _recount(cache: Dict[str, Any]) -> None:
    cache["totalPublished"] = sum(len(entry.get("embeds", [])) for entry in cache["bySourceId"].values())
    cache["timestamp"] = get_epoch_timestamp_in_ms()


def _drop_local_ids(cache: Dict[str, Any], local_ids: Iterable[str]) -> None:
    doomed = set(local_ids)
    for source_id in list(cache["bySourceId"]):
        entry = cache["bySourceId"][source_id]
        entry["embeds"] = [e for e in entry.get("embeds", []) if e.get("localId") not in doomed]
        if not entry["embeds"]:
            del cache["bySourceId"][source_id]


class PublicationCache:
    """
    Which Embeds currently have rendered content injected into their page,
    indexed by Source and by page.

    Fully derived: rebuild() overwrites it and the incremental updates
    re-read the stored value before writing.
    """

    def __init__(self, store: KeyValueStore, logger: logging.Logger) -> None:
        self.store = store
        self.logger = logger

    async def get(self) -> Dict[str, Any]:
        cache = await self.store.get_key(PUBLICATION_CACHE_KEY)
        if not isinstance(cache, dict):
            return _empty_cache()
        cache.setdefault("bySourceId", {})
        cache.setdefault("byPageId", {})
        return cache

    async def rebuild(self, active_records: Iterable[Dict[str, Any]]) -> Dict[str, Any]:
        cache = _empty_cache()
        now = get_epoch_timestamp_in_ms()
        for record in active_records:
            if not record.get("hasInjectedContent") or not record.get("pageId") or not source_id_of(record):
                continue
            entry = published_entry(record)
            bucket = cache["bySourceId"].setdefault(entry["sourceId"], {"refreshedAt": now, "embeds": []})
            bucket["embeds"].append(entry)
            cache["byPageId"].setdefault(str(entry["pageId"]), []).append(entry["localId"])
        _recount(cache)

        await self.store.create_key(PUBLICATION_CACHE_KEY, cache)
        self.logger.info(
            f"📊 Publication cache rebuilt: {cache['totalPublished']} published Embed(s) "
            f"across {len(cache['byPageId'])} page(s)"
        )
        return cache

    async def update_page(self, page_id: str, embeds: List[Dict[str, Any]]) -> Dict[str, Any]:
        cache = await self.get()
        _drop_local_ids(cache, cache["byPageId"].get(page_id, []))

        now = get_epoch_timestamp_in_ms()
        local_ids = []
        for embed in embeds:
            entry = published_entry(embed)
            if not entry["sourceId"] or not entry["localId"]:
                continue
            _drop_local_ids(cache, [entry["localId"]])
            bucket = cache["bySourceId"].setdefault(entry["sourceId"], {"refreshedAt": now, "embeds": []})
            bucket["embeds"].append(entry)
            bucket["refreshedAt"] = now
            local_ids.append(entry["localId"])

        if local_ids:
            cache["byPageId"][page_id] = local_ids
        else:
            cache["byPageId"].pop(page_id, None)
        _recount(cache)

        await self.store.create_key(PUBLICATION_CACHE_KEY, cache)
        self.logger.debug(f"Publication cache updated for page {page_id}: {len(local_ids)} Embed(s)")
        return cache

    async def remove_page(self, page_id: str) -> bool:
        cache = await self.store.get_key(PUBLICATION_CACHE_KEY)
        if not isinstance(cache, dict) or page_id not in cache.get("byPageId", {}):
            return False
        cache.setdefault("bySourceId", {})
        _drop_local_ids(cache, cache["byPageId"].pop(page_id))
        _recount(cache)
        await self.store.create_key(PUBLICATION_CACHE_KEY, cache)
        self.logger.debug(f"Page {page_id} removed from publication cache")
        return True
