import logging
import uuid
from typing import Any, Dict, List, Optional

from blueprint_sync.config.constants.store_keys import (
    BACKUP_PREFIX,
    EMBED_CONFIG_PREFIX,
    backup_embed_key,
    backup_embed_prefix,
    backup_metadata_key,
    embed_config_key,
    embed_deleted_key,
)
from blueprint_sync.config.key_value_store import KeyValueStore, query_all_pages
from blueprint_sync.exceptions.reconciliation_exceptions import (
    ErrorCode,
    StorageWriteError,
    error_response,
)
from blueprint_sync.modules.reconciliation.reference_repairer import ReferenceRepairer
from blueprint_sync.utils.time_conversion import get_epoch_timestamp_in_ms, get_iso_timestamp

METADATA_SUFFIX = ":metadata"


class BackupManager:
    """
    Operation-scoped snapshots of every live Embed configuration.

    Copy records go first and the metadata record last, so a backup that was
    interrupted has no metadata and is never listed or restored. Restoring an
    Embed also clears its quarantine record and lists it in the usage index
    again, so the next check classifies it.
    """

    def __init__(
        self,
        store: KeyValueStore,
        repairer: ReferenceRepairer,
        logger: logging.Logger,
        page_size: int = 100,
        max_pages: int = 50,
    ) -> None:
        self.store = store
        self.repairer = repairer
        self.logger = logger
        self.page_size = page_size
        self.max_pages = max_pages

    async def create_snapshot(self, operation: str = "checkEmbeds") -> str:
        backup_id = f"{BACKUP_PREFIX}{get_epoch_timestamp_in_ms()}-{uuid.uuid4().hex[:8]}"
        self.logger.info(f"💾 Creating backup {backup_id} for {operation}")

        try:
            scan = await query_all_pages(self.store, EMBED_CONFIG_PREFIX, self.page_size, self.max_pages, self.logger)
            for key, value in scan.results:
                await self.store.create_key(backup_embed_key(backup_id, key[len(EMBED_CONFIG_PREFIX):]), value)

            await self.store.create_key(backup_metadata_key(backup_id), {
                "backupId": backup_id,
                "createdAt": get_iso_timestamp(),
                "operation": operation,
                "totalEmbeds": len(scan.results),
                "canRestore": True,
                "complete": not scan.truncated,
                "version": "1.0",
            })
        except ConnectionError as e:
            self.logger.error(f"❌ Backup {backup_id} failed: {e}", exc_info=True)
            raise StorageWriteError(f"Backup creation failed: {e}", key=backup_id) from e

        self.logger.info(f"✅ Backup {backup_id} saved {len(scan.results)} Embed(s)")
        return backup_id

    async def restore_snapshot(
        self,
        backup_id: str,
        local_ids: Optional[List[str]] = None,
        force: bool = True,
    ) -> Dict[str, Any]:
        """Write backed-up values back to the live namespace exactly as captured.

        With force=False, Embeds that currently have live data are skipped.
        """
        try:
            metadata = await self.store.get_key(backup_metadata_key(backup_id))
            if not metadata:
                return error_response(ErrorCode.NOT_FOUND_BACKUP, f"Backup {backup_id} not found", backupId=backup_id, restored=0)
            if not metadata.get("canRestore", True):
                return error_response(ErrorCode.OPERATION_NOT_ALLOWED, f"Backup {backup_id} is not restorable", backupId=backup_id, restored=0)

            prefix = backup_embed_prefix(backup_id)
            scan = await query_all_pages(self.store, prefix, self.page_size, self.max_pages, self.logger)
            wanted = set(local_ids) if local_ids else None

            restored: List[str] = []
            unindexed: List[str] = []
            skipped: List[Dict[str, str]] = []
            for key, value in scan.results:
                local_id = key[len(prefix):]
                if wanted is not None and local_id not in wanted:
                    continue
                if not force and await self.store.get_key(embed_config_key(local_id)) is not None:
                    skipped.append({"localId": local_id, "reason": "Live data exists"})
                    continue
                await self.store.create_key(embed_config_key(local_id), value)
                await self.store.delete_key(embed_deleted_key(local_id))
                restored.append(local_id)
                if not await self.repairer.add_to_index(local_id, value):
                    unindexed.append(local_id)
        except ConnectionError as e:
            self.logger.error(f"❌ Restore from {backup_id} failed: {e}", exc_info=True)
            return error_response(ErrorCode.STORAGE_WRITE_FAILED, str(e), backupId=backup_id, restored=0)

        if wanted is not None:
            found = {key[len(prefix):] for key, _ in scan.results}
            skipped.extend({"localId": lid, "reason": "Not in backup"} for lid in sorted(wanted - found))

        self.logger.info(f"♻️ Restored {len(restored)} Embed(s) from {backup_id}, skipped {len(skipped)}")
        return {
            "success": True,
            "backupId": backup_id,
            "restored": len(restored),
            "skipped": len(skipped),
            "details": {"restoredLocalIds": restored, "unindexedLocalIds": unindexed, "skipped": skipped},
        }

    async def list_backups(self) -> List[Dict[str, Any]]:
        scan = await query_all_pages(self.store, BACKUP_PREFIX, self.page_size, self.max_pages, self.logger)
        backups = [value for key, value in scan.results if key.endswith(METADATA_SUFFIX) and isinstance(value, dict)]
        backups.sort(key=lambda b: b.get("createdAt") or "", reverse=True)
        return backups

    async def delete_backup(self, backup_id: str) -> Dict[str, Any]:
        # Metadata first so a partially deleted backup is no longer listed
        existed = await self.store.delete_key(backup_metadata_key(backup_id))
        if not existed:
            return error_response(ErrorCode.NOT_FOUND_BACKUP, f"Backup {backup_id} not found", backupId=backup_id)

        prefix = backup_embed_prefix(backup_id)
        deleted = 0
        while True:
            page = await self.store.query(prefix, limit=self.page_size)
            if not page.results:
                break
            for key, _ in page.results:
                await self.store.delete_key(key)
                deleted += 1
        return {"success": True, "backupId": backup_id, "deletedRecords": deleted}
