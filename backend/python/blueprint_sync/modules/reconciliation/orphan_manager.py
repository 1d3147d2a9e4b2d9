import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from blueprint_sync.config.constants.store_keys import (
    EMBED_DELETED_PREFIX,
    SOURCE_DELETED_PREFIX,
    embed_cache_key,
    embed_config_key,
    embed_deleted_key,
    source_deleted_key,
    source_key,
)
from blueprint_sync.config.key_value_store import KeyValueStore, query_all_pages
from blueprint_sync.exceptions.reconciliation_exceptions import ErrorCode, error_response
from blueprint_sync.modules.reconciliation.adf_scanner import is_valid_id
from blueprint_sync.modules.reconciliation.reference_repairer import ReferenceRepairer
from blueprint_sync.modules.reconciliation.source_index import SourceIndex
from blueprint_sync.services.versioning.version_manager import VersionManager
from blueprint_sync.utils.time_conversion import get_iso_timestamp, parse_timestamp

DELETION_FIELDS = ("deletedAt", "deletedBy", "deletionReason", "canRecover", "deletionMetadataKeys")


def strip_deletion_metadata(record: Dict[str, Any]) -> Dict[str, Any]:
    """Undo what _quarantine_record added, leaving the record as it was before soft delete."""
    added = set(record.get("deletionMetadataKeys") or DELETION_FIELDS)
    added.update(DELETION_FIELDS)
    return {k: v for k, v in record.items() if k not in added}


def _quarantine_record(
    live: Dict[str, Any],
    reason: str,
    deleted_by: str,
    metadata: Dict[str, Any],
    can_recover: bool = True,
) -> Dict[str, Any]:
    # Caller metadata never overwrites fields of the live record, so restore is exact
    extra = {k: v for k, v in metadata.items() if k not in live and k not in DELETION_FIELDS}
    return {
        **live,
        **extra,
        "deletedAt": get_iso_timestamp(),
        "deletedBy": deleted_by,
        "deletionReason": reason,
        "canRecover": can_recover,
        "deletionMetadataKeys": list(DELETION_FIELDS) + sorted(extra),
    }


class OrphanManager:
    """
    Soft delete and restore for Embed configurations and Sources.

    Order of a soft delete: version snapshot, quarantine copy, then (only
    when not dry-run) removal of the live record. Each step logs and
    continues on failure, except that the live record is never removed
    unless its quarantine copy was written. A crash between the quarantine
    write and the live delete leaves the record in both namespaces; the
    next run sees the quarantine record and skips it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        version_manager: VersionManager,
        source_index: SourceIndex,
        repairer: ReferenceRepairer,
        logger: logging.Logger,
        recovery_window_days: int = 90,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> None:
        self.store = store
        self.version_manager = version_manager
        self.source_index = source_index
        self.repairer = repairer
        self.logger = logger
        self.recovery_window_days = recovery_window_days
        self.page_size = page_size
        self.max_pages = max_pages

    # ------------------------------------------------------------------
    # Embeds
    # ------------------------------------------------------------------

    async def soft_delete_embed(
        self,
        local_id: Any,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        dry_run: bool = True,
        deleted_by: str = "checkEmbeds",
    ) -> Dict[str, Any]:
        if not is_valid_id(local_id):
            self.logger.warning(f"⚠️ soft_delete_embed: invalid localId {local_id!r}, skipping")
            return error_response(ErrorCode.VALIDATION_INVALID_VALUE, "Invalid localId", localId=local_id)

        live_key = embed_config_key(local_id)
        quarantine_key = embed_deleted_key(local_id)
        metadata = dict(metadata or {})
        result = {"success": True, "localId": local_id, "dryRun": dry_run, "quarantined": False, "deleted": False}

        try:
            live = await self.store.get_key(live_key)
        except ConnectionError as e:
            self.logger.error(f"❌ soft_delete_embed: cannot read {live_key}: {e}")
            return error_response(ErrorCode.STORAGE_READ_FAILED, str(e), localId=local_id)

        if live is None:
            return await self._mark_missing(quarantine_key, local_id, reason, deleted_by, metadata, dry_run, result)

        version = await self.version_manager.save_version(
            live_key,
            live,
            {"changeType": "DELETE", "changedBy": deleted_by, "deletionReason": reason, "localId": local_id},
        )
        if version.success:
            result["versionId"] = version.version_id
        else:
            self.logger.warning(f"⚠️ Version snapshot failed for {local_id}: {version.error}")

        try:
            await self.store.create_key(quarantine_key, _quarantine_record(live, reason, deleted_by, metadata))
            result["quarantined"] = True
            self.logger.info(f"📦 Embed {local_id} moved to quarantine: {reason}")
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to quarantine {local_id}: {e}")

        if dry_run:
            self.logger.info(f"🛡️ DRY-RUN: would delete {live_key}")
            return result

        if not result["quarantined"]:
            result["success"] = False
            result["error"] = "Quarantine write failed; live record kept"
            return result

        try:
            await self.store.delete_key(live_key)
            result["deleted"] = True
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to delete {live_key}: {e}")

        try:
            await self.store.delete_key(embed_cache_key(local_id))
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to delete rendered cache of {local_id}: {e}")

        return result

    async def _mark_missing(
        self,
        quarantine_key: str,
        local_id: str,
        reason: str,
        deleted_by: str,
        metadata: Dict[str, Any],
        dry_run: bool,
        result: Dict[str, Any],
    ) -> Dict[str, Any]:
        try:
            existing = await self.store.get_key(quarantine_key)
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Cannot read {quarantine_key}: {e}")
            existing = None

        if existing:
            self.logger.debug(f"Embed {local_id} already quarantined, nothing to do")
            result["skipped"] = True
            result["quarantined"] = True
            return result

        self.logger.warning(f"⚠️ Embed {local_id} has no live configuration, recording deletion marker")
        if dry_run:
            return result

        try:
            marker = _quarantine_record({}, reason or "Entry not found in active namespace", deleted_by, metadata, can_recover=False)
            await self.store.create_key(quarantine_key, marker)
            result["quarantined"] = True
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to write deletion marker for {local_id}: {e}")
        return result

    async def restore_embed(
        self, local_id: str, force: bool = False, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        if not is_valid_id(local_id):
            return error_response(ErrorCode.VALIDATION_INVALID_VALUE, "Invalid localId", localId=local_id)

        quarantine_key = embed_deleted_key(local_id)
        live_key = embed_config_key(local_id)

        record = await self.store.get_key(quarantine_key)
        if not record:
            return error_response(ErrorCode.NOT_FOUND_EMBED, f"No deleted Embed {local_id}", localId=local_id)

        refusal = self._check_recoverable(record, now)
        if refusal:
            return error_response(ErrorCode.NOT_RECOVERABLE, refusal, localId=local_id)

        live = await self.store.get_key(live_key)
        if live is not None:
            if not force:
                return error_response(
                    ErrorCode.RESTORE_CONFLICT,
                    f"Embed {local_id} already has live data; pass force to overwrite",
                    localId=local_id,
                )
            await self.version_manager.save_version(
                live_key, live, {"changeType": "PRE_RESTORE", "localId": local_id}
            )

        restored = strip_deletion_metadata(record)
        await self.store.create_key(live_key, restored)
        await self.store.delete_key(quarantine_key)
        indexed = await self.repairer.add_to_index(local_id, restored)
        self.logger.info(f"♻️ Restored Embed {local_id}")
        return {"success": True, "localId": local_id, "indexed": indexed, "restoredAt": get_iso_timestamp()}

    async def list_deleted_embeds(self, now: Optional[datetime] = None) -> List[Dict[str, Any]]:
        scan = await query_all_pages(self.store, EMBED_DELETED_PREFIX, self.page_size, self.max_pages, self.logger)
        items = []
        for key, record in scan.results:
            record = record or {}
            items.append({
                "localId": key[len(EMBED_DELETED_PREFIX):],
                "sourceId": record.get("sourceId") or record.get("excerptId"),
                "pageId": record.get("pageId"),
                "pageTitle": record.get("pageTitle"),
                "deletedAt": record.get("deletedAt"),
                "deletedBy": record.get("deletedBy"),
                "deletionReason": record.get("deletionReason"),
                "canRecover": record.get("canRecover", False),
                "recoverable": self._check_recoverable(record, now) is None,
            })
        items.sort(key=lambda item: item.get("deletedAt") or "", reverse=True)
        return items

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    async def soft_delete_source(
        self,
        source_id: Any,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        dry_run: bool = True,
        deleted_by: str = "pageSync",
    ) -> Dict[str, Any]:
        if not is_valid_id(source_id):
            return error_response(ErrorCode.VALIDATION_INVALID_VALUE, "Invalid sourceId", sourceId=source_id)

        live_key = source_key(source_id)
        quarantine_key = source_deleted_key(source_id)
        result = {"success": True, "sourceId": source_id, "dryRun": dry_run, "quarantined": False, "deleted": False}

        try:
            live = await self.store.get_key(live_key)
        except ConnectionError as e:
            return error_response(ErrorCode.STORAGE_READ_FAILED, str(e), sourceId=source_id)

        if live is None:
            if await self.store.get_key(quarantine_key):
                result["skipped"] = True
                result["quarantined"] = True
                return result
            self.logger.warning(f"⚠️ Source {source_id} not found in storage")
            return error_response(ErrorCode.NOT_FOUND_SOURCE, "Source not found", sourceId=source_id)

        version = await self.version_manager.save_version(
            live_key, live, {"changeType": "DELETE", "changedBy": deleted_by, "deletionReason": reason}
        )
        if not version.success:
            self.logger.warning(f"⚠️ Version snapshot failed for Source {source_id}: {version.error}")

        try:
            await self.store.create_key(quarantine_key, _quarantine_record(live, reason, deleted_by, dict(metadata or {})))
            result["quarantined"] = True
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to quarantine Source {source_id}: {e}")
            return error_response(ErrorCode.STORAGE_WRITE_FAILED, str(e), sourceId=source_id)

        if dry_run:
            self.logger.info(f"🛡️ DRY-RUN: would delete Source {source_id} ({reason})")
            return result

        try:
            await self.store.delete_key(live_key)
            result["deleted"] = True
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to delete {live_key}: {e}")

        await self.source_index.remove(source_id)
        self.logger.info(f"🗑️ Source {source_id} soft-deleted: {reason}")
        return result

    async def restore_source(
        self, source_id: str, force: bool = False, now: Optional[datetime] = None
    ) -> Dict[str, Any]:
        if not is_valid_id(source_id):
            return error_response(ErrorCode.VALIDATION_INVALID_VALUE, "Invalid sourceId", sourceId=source_id)

        quarantine_key = source_deleted_key(source_id)
        live_key = source_key(source_id)

        record = await self.store.get_key(quarantine_key)
        if not record:
            return error_response(ErrorCode.NOT_FOUND_SOURCE, f"No deleted Source {source_id}", sourceId=source_id)

        refusal = self._check_recoverable(record, now)
        if refusal:
            return error_response(ErrorCode.NOT_RECOVERABLE, refusal, sourceId=source_id)

        if await self.store.get_key(live_key) is not None and not force:
            return error_response(
                ErrorCode.RESTORE_CONFLICT,
                f"Source {source_id} already has live data; pass force to overwrite",
                sourceId=source_id,
            )

        restored = strip_deletion_metadata(record)
        await self.store.create_key(live_key, restored)
        await self.source_index.add(restored, source_id)
        await self.store.delete_key(quarantine_key)
        self.logger.info(f"♻️ Restored Source {source_id}")
        return {"success": True, "sourceId": source_id, "restoredAt": get_iso_timestamp()}

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def purge_expired(self, now: Optional[datetime] = None, dry_run: bool = True) -> Dict[str, Any]:
        """Hard-delete quarantine records older than the recovery window."""
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=self.recovery_window_days)
        expired: List[str] = []
        purged: List[str] = []
        errors = []
        scanned = 0
        truncated = False

        for prefix in (EMBED_DELETED_PREFIX, SOURCE_DELETED_PREFIX):
            scan = await query_all_pages(self.store, prefix, self.page_size, self.max_pages, self.logger)
            truncated = truncated or scan.truncated
            for key, record in scan.results:
                scanned += 1
                deleted_at = parse_timestamp((record or {}).get("deletedAt"))
                if deleted_at is None or deleted_at >= cutoff:
                    continue
                expired.append(key)
                if dry_run:
                    continue
                try:
                    await self.store.delete_key(key)
                    purged.append(key)
                except ConnectionError as e:
                    errors.append({"key": key, "error": str(e)})

        self.logger.info(f"🧹 Quarantine purge: {len(expired)} expired, {len(purged)} deleted (dry_run={dry_run})")
        return {
            "success": True,
            "scanned": scanned,
            "expired": expired,
            "purged": purged,
            "errors": errors,
            "truncated": truncated,
            "dryRun": dry_run,
        }

    def _check_recoverable(self, record: Dict[str, Any], now: Optional[datetime]) -> Optional[str]:
        """Return why a quarantined record cannot be restored, or None when it can."""
        if not record.get("canRecover", False):
            return "Record is marked as not recoverable"
        deleted_at = parse_timestamp(record.get("deletedAt"))
        if deleted_at is None:
            return None
        now = now or datetime.now(timezone.utc)
        if now - deleted_at > timedelta(days=self.recovery_window_days):
            return f"Recovery window of {self.recovery_window_days} days has expired"
        return None
