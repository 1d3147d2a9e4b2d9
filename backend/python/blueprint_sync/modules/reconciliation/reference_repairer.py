import logging
from typing import Any, Dict, Optional

from blueprint_sync.config.constants.store_keys import embed_config_key, source_key, usage_key
from blueprint_sync.config.key_value_store import KeyValueStore
from blueprint_sync.modules.reconciliation.adf_scanner import is_valid_id
from blueprint_sync.modules.reconciliation.models import RepairResult, source_id_of
from blueprint_sync.modules.reconciliation.usage_collector import usage_references
from blueprint_sync.utils.time_conversion import get_iso_timestamp


class ReferenceRepairer:
    """Usage-index maintenance: recovering a lost Source id and dropping dead references."""

    def __init__(self, store: KeyValueStore, logger: logging.Logger) -> None:
        self.store = store
        self.logger = logger

    async def get_source(self, source_id: Optional[str]) -> Optional[Dict[str, Any]]:
        """Return the Source record, or None. Storage failures propagate."""
        if not is_valid_id(source_id):
            return None
        return await self.store.get_key(source_key(source_id))

    async def repair(self, reference: Dict[str, Any]) -> RepairResult:
        """Recover a reference's Source id from the Embed's own configuration.

        The recovered id is trusted as-is; a corrupted configuration would be
        "repaired" to the wrong Source.
        """
        local_id = reference.get("localId")
        self.logger.warning(f"🔧 Reference {local_id} has no sourceId, attempting repair")

        try:
            config = await self.store.get_key(embed_config_key(local_id))
        except ConnectionError as e:
            return RepairResult(repaired=False, error=f"Storage read failed for Embed configuration: {e}")

        recovered_id = source_id_of(config)
        if not is_valid_id(recovered_id):
            return RepairResult(repaired=False, error="No sourceId in usage data or Embed configuration")

        try:
            source = await self.get_source(recovered_id)
        except ConnectionError as e:
            return RepairResult(repaired=False, source_id=recovered_id, error=f"Storage read failed for Source: {e}")

        if not source:
            return RepairResult(
                repaired=False,
                source_id=recovered_id,
                error="Referenced Source not found (from Embed configuration)",
            )

        try:
            await self._upsert(recovered_id, {**reference, "sourceId": recovered_id})
        except ConnectionError as e:
            return RepairResult(repaired=False, source_id=recovered_id, error=f"Storage write failed for usage index: {e}")

        self.logger.info(f"✅ Repaired usage reference {local_id} -> Source {recovered_id}")
        return RepairResult(repaired=True, source_id=recovered_id, source=source)

    async def remove_from_index(self, local_id: Any, source_id: Any) -> bool:
        """Drop local_id from usage:{source_id}; the entry is deleted when it becomes empty."""
        if not is_valid_id(source_id) or not is_valid_id(local_id):
            self.logger.warning(f"⚠️ Cannot remove reference {local_id!r} from index of {source_id!r}")
            return False

        key = usage_key(source_id)
        try:
            usage = await self.store.get_key(key)
            references = usage_references(usage)
            if references is None:
                if usage is not None:
                    self.logger.warning(f"⚠️ Usage entry {key} is malformed, leaving it in place")
                return False
            remaining = [r for r in references if r.get("localId") != local_id]
            if remaining:
                await self.store.create_key(key, {**usage, "references": remaining})
            else:
                await self.store.delete_key(key)
            return True
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to remove {local_id} from {key}: {e}")
            return False

    async def add_to_index(self, local_id: Any, config: Optional[Dict[str, Any]]) -> bool:
        """List a restored Embed under its Source again, built from its configuration."""
        source_id = source_id_of(config)
        if not is_valid_id(local_id) or not is_valid_id(source_id):
            self.logger.warning(f"⚠️ Cannot index {local_id!r}: no sourceId in its configuration")
            return False

        reference = {
            "localId": local_id,
            "sourceId": source_id,
            "pageId": config.get("pageId"),
            "pageTitle": config.get("pageTitle"),
            "variableValues": config.get("variableValues") or {},
            "toggleStates": config.get("toggleStates") or {},
        }
        try:
            await self._upsert(source_id, reference)
        except ConnectionError as e:
            self.logger.warning(f"⚠️ Failed to add {local_id} to {usage_key(source_id)}: {e}")
            return False
        self.logger.info(f"🗂️ Indexed Embed {local_id} under Source {source_id}")
        return True

    async def _upsert(self, source_id: str, reference: Dict[str, Any]) -> None:
        key = usage_key(source_id)
        stored = await self.store.get_key(key)
        references = usage_references(stored)
        if references is None:
            if stored is not None:
                self.logger.warning(f"⚠️ Replacing malformed usage entry {key}")
            references = []
        base = stored if isinstance(stored, dict) else {"sourceId": source_id}

        patched = {**reference, "updatedAt": get_iso_timestamp()}
        for i, existing in enumerate(references):
            if existing.get("localId") == reference["localId"]:
                references[i] = {**existing, **patched}
                break
        else:
            references.append(patched)
        await self.store.create_key(key, {**base, "references": references})
