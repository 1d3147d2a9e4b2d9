import pytest  # type: ignore

from blueprint_sync.config.constants.store_keys import embed_config_key, source_key, version_index_key
from blueprint_sync.exceptions.reconciliation_exceptions import ErrorCode
from blueprint_sync.services.versioning.version_manager import (
    MS_PER_DAY,
    compute_content_hash,
    parse_version_id,
)
from tests.utils.test_data_factory import TestDataFactory


class TestContentHash:
    def test_hash_ignores_key_order(self):
        assert compute_content_hash({"a": 1, "b": [1, 2]}) == compute_content_hash({"b": [1, 2], "a": 1})

    def test_hash_changes_with_content(self):
        assert compute_content_hash({"a": 1}) != compute_content_hash({"a": 2})


class TestParseVersionId:
    def test_entity_id_may_contain_colons(self):
        parsed = parse_version_id("version:embed-config:e1:1700000000000")

        assert parsed == {"entityId": "embed-config:e1", "timestamp": 1700000000000}

    @pytest.mark.parametrize("version_id", ["embed-config:e1:1", "version:e1:abc", "version::12"])
    def test_malformed_ids_raise(self, version_id):
        with pytest.raises(ValueError):
            parse_version_id(version_id)


class TestSaveVersion:
    @pytest.mark.asyncio
    async def test_same_millisecond_writes_get_distinct_keys(self, store, version_manager, monkeypatch):
        monkeypatch.setattr(
            "blueprint_sync.services.versioning.version_manager.get_epoch_timestamp_in_ms",
            lambda: 1_700_000_000_000,
        )
        key = embed_config_key("e1")

        first = await version_manager.save_version(key, {"v": 1})
        second = await version_manager.save_version(key, {"v": 2})

        assert first.version_id == "version:embed-config:e1:1700000000000"
        assert second.version_id == "version:embed-config:e1:1700000000001"
        assert (await version_manager.get_version(first.version_id))["data"] == {"v": 1}

    @pytest.mark.asyncio
    async def test_nothing_to_version(self, version_manager):
        result = await version_manager.save_version(embed_config_key("e1"), None)

        assert result.success is False

    @pytest.mark.asyncio
    async def test_snapshot_write_failure_is_reported(self, store, version_manager):
        store.fail_writes.add("version:")

        result = await version_manager.save_version(embed_config_key("e1"), {"v": 1})

        assert result.success is False

    @pytest.mark.asyncio
    async def test_list_versions_newest_first(self, version_manager, monkeypatch):
        ticks = iter([100, 200, 300])
        monkeypatch.setattr(
            "blueprint_sync.services.versioning.version_manager.get_epoch_timestamp_in_ms",
            lambda: next(ticks),
        )
        key = source_key("s1")
        for i in range(3):
            await version_manager.save_version(key, {"v": i}, {"changeType": f"C{i}"})

        versions = await version_manager.list_versions(key)

        assert [v["timestamp"] for v in versions] == [300, 200, 100]
        assert versions[0]["changeType"] == "C2"


class TestRestoreVersion:
    @pytest.mark.asyncio
    async def test_restore_snapshots_current_value_first(self, store, version_manager):
        key = source_key("s1")
        old = TestDataFactory.source("s1")
        current = {**old, "name": "renamed"}
        saved = await version_manager.save_version(key, old)
        await store.create_key(key, current)

        result = await version_manager.restore_version(saved.version_id)

        assert result["success"] is True
        assert result["storageKey"] == key
        assert await store.get_key(key) == old
        pre_restore = await version_manager.get_version(result["preRestoreVersionId"])
        assert pre_restore["data"] == current
        assert pre_restore["metadata"]["changeType"] == "PRE_RESTORE"

    @pytest.mark.asyncio
    async def test_unknown_version(self, version_manager):
        result = await version_manager.restore_version("version:source:s1:1")

        assert result["errorCode"] == ErrorCode.NOT_FOUND_VERSION.value


class TestPruneExpiredVersions:
    @pytest.mark.asyncio
    async def test_prunes_old_snapshots_and_index_entries(self, store, version_manager, monkeypatch):
        now_ms = 1_700_000_000_000
        ticks = iter([now_ms - 100 * MS_PER_DAY, now_ms - MS_PER_DAY])
        monkeypatch.setattr(
            "blueprint_sync.services.versioning.version_manager.get_epoch_timestamp_in_ms",
            lambda: next(ticks),
        )
        key = source_key("s1")
        old = await version_manager.save_version(key, {"v": "old"})
        recent = await version_manager.save_version(key, {"v": "recent"})

        preview = await version_manager.prune_expired_versions(90, dry_run=True, now_ms=now_ms)
        assert preview["expired"] == 1
        assert preview["pruned"] == 0
        assert await version_manager.get_version(old.version_id) is not None

        result = await version_manager.prune_expired_versions(90, dry_run=False, now_ms=now_ms)

        assert result["pruned"] == 1
        assert result["kept"] == 1
        assert await version_manager.get_version(old.version_id) is None
        index = await store.get_key(version_index_key(key))
        assert [v["versionId"] for v in index["versions"]] == [recent.version_id]
