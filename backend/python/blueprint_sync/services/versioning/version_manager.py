import hashlib
import json
import logging
from typing import Any, Dict, List, Optional

from blueprint_sync.config.constants.store_keys import (
    VERSION_PREFIX,
    version_index_key,
    version_key,
)
from blueprint_sync.config.key_value_store import KeyValueStore, query_all_pages
from blueprint_sync.exceptions.reconciliation_exceptions import ErrorCode, error_response
from blueprint_sync.modules.reconciliation.models import VersionResult
from blueprint_sync.utils.time_conversion import get_epoch_timestamp_in_ms

MS_PER_DAY = 24 * 60 * 60 * 1000

# Bounded so a burst of writes to one entity cannot spin forever on key collisions
MAX_KEY_COLLISION_RETRIES = 1000


def compute_content_hash(value: Any) -> str:
    """SHA-256 of the canonical (sorted-key, compact) JSON form of value."""
    canonical = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def parse_version_id(version_id: str) -> Dict[str, Any]:
    """Split ``version:{entityId}:{ms}`` into its parts. entityId may itself contain ':'."""
    if not version_id.startswith(VERSION_PREFIX):
        raise ValueError(f"Not a version id: {version_id}")
    entity_id, _, timestamp = version_id[len(VERSION_PREFIX):].rpartition(":")
    if not entity_id or not timestamp.isdigit():
        raise ValueError(f"Malformed version id: {version_id}")
    return {"entityId": entity_id, "timestamp": int(timestamp)}


class VersionManager:
    """
    Point-in-time snapshots of individual records.

    The entity id of a snapshot is the storage key it was taken from
    (``embed-config:{localId}``, ``source:{sourceId}``), so restoring a version
    always knows where to write. A snapshot is written before the index entry
    that lists it; an index write failure leaves a valid but unlisted snapshot.
    """

    def __init__(self, store: KeyValueStore, logger: logging.Logger) -> None:
        self.store = store
        self.logger = logger

    async def save_version(
        self,
        storage_key: str,
        prior_value: Any,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> VersionResult:
        if prior_value is None:
            return VersionResult(success=False, error="Nothing to version")

        metadata = dict(metadata or {})
        entity_type = storage_key.split(":", 1)[0]
        content_hash = compute_content_hash(prior_value)
        size_bytes = len(json.dumps(prior_value, default=str).encode("utf-8"))

        try:
            timestamp = get_epoch_timestamp_in_ms()
            version_id = None
            for _ in range(MAX_KEY_COLLISION_RETRIES):
                candidate = version_key(storage_key, timestamp)
                snapshot = {
                    "versionId": candidate,
                    "entityId": storage_key,
                    "entityType": entity_type,
                    "storageKey": storage_key,
                    "timestamp": timestamp,
                    "data": prior_value,
                    "contentHash": content_hash,
                    "sizeBytes": size_bytes,
                    "metadata": metadata,
                }
                if await self.store.create_key(candidate, snapshot, overwrite=False):
                    version_id = candidate
                    break
                timestamp += 1
            if version_id is None:
                return VersionResult(success=False, error=f"Could not allocate a version key for {storage_key}")
        except ConnectionError as e:
            self.logger.error(f"❌ Failed to write version snapshot for {storage_key}: {e}")
            return VersionResult(success=False, error=str(e))

        try:
            index = await self.store.get_key(version_index_key(storage_key)) or {
                "entityId": storage_key,
                "versions": [],
            }
            index["versions"].append({
                "versionId": version_id,
                "timestamp": timestamp,
                "changeType": metadata.get("changeType", "UPDATE"),
                "contentHash": content_hash,
            })
            await self.store.create_key(version_index_key(storage_key), index)
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Version {version_id} written but index update failed: {e}")

        self.logger.debug(f"📸 Saved version {version_id}")
        return VersionResult(success=True, version_id=version_id)

    async def list_versions(self, entity_id: str) -> List[Dict[str, Any]]:
        """Index entries for an entity, newest first."""
        index = await self.store.get_key(version_index_key(entity_id)) or {}
        versions = list(index.get("versions", []))
        versions.sort(key=lambda v: v.get("timestamp", 0), reverse=True)
        return versions

    async def get_version(self, version_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get_key(version_id)

    async def restore_version(self, version_id: str) -> Dict[str, Any]:
        """Write a snapshot's data back to its storage key, versioning the current value first."""
        snapshot = await self.get_version(version_id)
        if not snapshot:
            return error_response(ErrorCode.NOT_FOUND_VERSION, f"Version {version_id} not found", versionId=version_id)

        storage_key = snapshot["storageKey"]
        current = await self.store.get_key(storage_key)
        pre_restore_version_id = None
        if current is not None:
            result = await self.save_version(
                storage_key,
                current,
                {"changeType": "PRE_RESTORE", "restoringVersionId": version_id},
            )
            if not result.success:
                return error_response(
                    ErrorCode.STORAGE_WRITE_FAILED,
                    f"Could not snapshot current value before restore: {result.error}",
                    versionId=version_id,
                )
            pre_restore_version_id = result.version_id

        await self.store.create_key(storage_key, snapshot["data"])
        self.logger.info(f"♻️ Restored {storage_key} from {version_id}")
        return {
            "success": True,
            "versionId": version_id,
            "storageKey": storage_key,
            "preRestoreVersionId": pre_restore_version_id,
        }

    async def prune_expired_versions(
        self,
        retention_days: int,
        dry_run: bool = True,
        now_ms: Optional[int] = None,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> Dict[str, Any]:
        """Delete snapshots older than the retention window and drop them from their index."""
        now_ms = now_ms if now_ms is not None else get_epoch_timestamp_in_ms()
        cutoff = now_ms - retention_days * MS_PER_DAY

        scan = await query_all_pages(self.store, VERSION_PREFIX, page_size, max_pages, self.logger)
        expired: Dict[str, List[str]] = {}
        kept = 0
        errors = []

        for key, snapshot in scan.results:
            try:
                timestamp = (snapshot or {}).get("timestamp")
                if timestamp is None:
                    timestamp = parse_version_id(key)["timestamp"]
                if timestamp < cutoff:
                    expired.setdefault(parse_version_id(key)["entityId"], []).append(key)
                else:
                    kept += 1
            except ValueError as e:
                errors.append({"versionId": key, "error": str(e)})

        pruned: List[str] = []
        if not dry_run:
            for entity_id, version_ids in expired.items():
                for version_id in version_ids:
                    try:
                        await self.store.delete_key(version_id)
                        pruned.append(version_id)
                    except ConnectionError as e:
                        errors.append({"versionId": version_id, "error": str(e)})
                await self._drop_from_index(entity_id, set(version_ids))

        candidates = [vid for ids in expired.values() for vid in ids]
        self.logger.info(
            f"🧹 Version prune: {len(candidates)} expired, {len(pruned)} deleted, {kept} kept (dry_run={dry_run})"
        )
        return {
            "scanned": len(scan.results),
            "expired": len(candidates),
            "pruned": len(pruned),
            "kept": kept,
            "errors": errors,
            "truncated": scan.truncated,
            "dryRun": dry_run,
        }

    async def _drop_from_index(self, entity_id: str, version_ids: set) -> None:
        try:
            index = await self.store.get_key(version_index_key(entity_id))
            if not index:
                return
            index["versions"] = [v for v in index.get("versions", []) if v.get("versionId") not in version_ids]
            if index["versions"]:
                await self.store.create_key(version_index_key(entity_id), index)
            else:
                await self.store.delete_key(version_index_key(entity_id))
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to update version index for {entity_id}: {e}")
