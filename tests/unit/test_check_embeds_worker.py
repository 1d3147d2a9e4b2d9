import pytest  # type: ignore

from blueprint_sync.config.constants.store_keys import (
    embed_config_key,
    embed_deleted_key,
    usage_key,
)
from blueprint_sync.workers.check_embeds_worker import (
    MARKER_MISSING_REASON,
    PAGE_DELETED_REASON,
    is_stale,
)
from tests.utils.fakes import reference_pairs
from tests.utils.test_data_factory import TestDataFactory


async def seed_scenario(seed, confluence):
    """
    Three placements on three pages:
    - e1 on page 100 whose marker is gone (orphan)
    - e2 on page 200, no sourceId anywhere (broken)
    - e3 on page 300, sourceId only in its configuration (repairable)
    """
    await seed.source("s1")
    await seed.source("s3")

    await seed.embed("e1", "s1", "100")
    await seed.embed("e2", None, "200")
    await seed.embed("e3", "s3", "300")

    await seed.usage("s1", [
        TestDataFactory.usage_reference("e1", "100", "s1"),
        TestDataFactory.usage_reference("e2", "200"),
        TestDataFactory.usage_reference("e3", "300"),
    ])

    confluence.add_page("100", TestDataFactory.document(TestDataFactory.paragraph("marker removed")))
    confluence.add_page("200", TestDataFactory.document(TestDataFactory.embed_node("e2")))
    confluence.add_page("300", TestDataFactory.document(TestDataFactory.embed_node("e3", encoding="macroParams")))


async def run(worker, progress, dry_run, progress_id="p1"):
    await progress.init_job(progress_id, "checkEmbeds", dry_run=dry_run)
    result = await worker.handler({"progressId": progress_id, "dryRun": dry_run})
    record = await progress.get(progress_id)
    return result, record


class TestIsStale:
    def test_source_updated_after_sync_is_stale(self):
        assert is_stale("2024-01-01T00:00:00.000Z", "2024-01-02T00:00:00.000Z") is True

    def test_equal_timestamps_are_not_stale(self):
        assert is_stale("2024-01-01T00:00:00.000Z", "2024-01-01T00:00:00.000Z") is False

    @pytest.mark.parametrize("synced,updated", [(None, "2024-01-02T00:00:00.000Z"), ("2024-01-01", None), ("x", "y")])
    def test_missing_timestamps_are_not_stale(self, synced, updated):
        assert is_stale(synced, updated) is False


class TestScenario:
    @pytest.mark.asyncio
    async def test_live_run_classifies_and_quarantines(self, store, seed, confluence, check_embeds_worker, progress):
        await seed_scenario(seed, confluence)

        result, record = await run(check_embeds_worker, progress, dry_run=False)

        assert result["success"] is True
        assert record["phase"] == "complete"
        assert record["percent"] == 100
        results = record["results"]

        assert reference_pairs(results["orphanedIncludes"]) == [("e1", MARKER_MISSING_REASON)]
        assert [r["localId"] for r in results["brokenReferences"]] == ["e2"]
        assert "No sourceId" in results["brokenReferences"][0]["reason"]
        assert [(r["localId"], r["sourceId"]) for r in results["repairedReferences"]] == [("e3", "s3")]
        assert [(r["localId"], r["sourceId"]) for r in results["activeIncludes"]] == [("e3", "s3")]
        assert results["orphanedEntriesRemoved"] == ["e1"]

        # e1 moved to quarantine and dropped from the usage index
        assert await store.get_key(embed_config_key("e1")) is None
        quarantined = await store.get_key(embed_deleted_key("e1"))
        assert quarantined["canRecover"] is True
        usage = await store.get_key(usage_key("s1"))
        assert "e1" not in [r["localId"] for r in usage["references"]]

        # e2 is reported only
        assert await store.get_key(embed_config_key("e2")) is not None
        assert await store.get_key(embed_deleted_key("e2")) is None

        # e3 is now listed under its Source
        repaired = await store.get_key(usage_key("s3"))
        assert [(r["localId"], r["sourceId"]) for r in repaired["references"]] == [("e3", "s3")]

        assert record["backupId"] == results["backupId"]
        assert results["summary"]["pagesChecked"] == 3

    @pytest.mark.asyncio
    async def test_dry_run_mutates_no_live_record(self, store, seed, confluence, check_embeds_worker, progress):
        await seed_scenario(seed, confluence)

        result, record = await run(check_embeds_worker, progress, dry_run=True)

        assert result["success"] is True
        assert record["results"]["summary"]["orphanedCount"] == 1
        assert record["results"]["orphanedEntriesRemoved"] == []
        assert await store.get_key(embed_config_key("e1")) is not None
        assert await store.get_key(embed_deleted_key("e1")) is None
        usage = await store.get_key(usage_key("s1"))
        assert "e1" in [r["localId"] for r in usage["references"]]
        assert "DRY-RUN" in record["status"]

    @pytest.mark.asyncio
    async def test_payload_without_dry_run_uses_default(self, store, seed, confluence, check_embeds_worker, progress):
        await seed_scenario(seed, confluence)

        await check_embeds_worker.handler({"progressId": "p1"})

        assert await store.get_key(embed_config_key("e1")) is not None


class TestFetchFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status,error_type", [
        (403, "permission_denied"),
        (401, "unauthorized"),
        (429, "transient_failure"),
        (503, "transient_failure"),
        (404, "page_not_found"),
    ])
    async def test_unverifiable_pages_never_orphan(
        self, store, seed, confluence, check_embeds_worker, progress, status, error_type
    ):
        await seed.source("s1")
        await seed.embed("e1", "s1", "100")
        await seed.usage("s1", [TestDataFactory.usage_reference("e1", "100", "s1")])
        confluence.fail("100", status)

        result, record = await run(check_embeds_worker, progress, dry_run=False)

        assert result["success"] is True
        results = record["results"]
        assert results["orphanedIncludes"] == []
        assert [(r["localId"], r["errorType"], r["httpStatus"]) for r in results["unverifiedIncludes"]] == [
            ("e1", error_type, status)
        ]
        assert await store.get_key(embed_config_key("e1")) is not None
        assert await store.get_key(embed_deleted_key("e1")) is None

    @pytest.mark.asyncio
    async def test_confirmed_deleted_page_orphans_every_placement(
        self, store, seed, confluence, check_embeds_worker, progress
    ):
        await seed.source("s1")
        for local_id in ("e1", "e2"):
            await seed.embed(local_id, "s1", "100")
        await seed.usage("s1", TestDataFactory.references_for_page("100", ["e1", "e2"], "s1"))
        confluence.delete("100", status="trashed")

        _, record = await run(check_embeds_worker, progress, dry_run=False)

        orphaned = record["results"]["orphanedIncludes"]
        assert reference_pairs(orphaned) == [("e1", PAGE_DELETED_REASON), ("e2", PAGE_DELETED_REASON)]
        assert all(r["pageExists"] is False for r in orphaned)
        assert await store.get_key(usage_key("s1")) is None

    @pytest.mark.asyncio
    async def test_unreadable_document_is_broken_not_orphaned(
        self, store, seed, confluence, check_embeds_worker, progress
    ):
        await seed.source("s1")
        await seed.embed("e1", "s1", "100")
        await seed.usage("s1", [TestDataFactory.usage_reference("e1", "100", "s1")])
        page = TestDataFactory.page("100", TestDataFactory.document())
        page["body"]["atlas_doc_format"]["value"] = "{not json"
        confluence.add_raw_page("100", page)

        _, record = await run(check_embeds_worker, progress, dry_run=False)

        assert record["results"]["orphanedIncludes"] == []
        assert [r["localId"] for r in record["results"]["brokenReferences"]] == ["e1"]
        assert await store.get_key(embed_config_key("e1")) is not None


class TestMalformedUsageIndex:
    @pytest.mark.asyncio
    async def test_entry_without_reference_list_does_not_stop_the_check(
        self, store, seed, confluence, check_embeds_worker, progress
    ):
        await seed.source("s1")
        await seed.embed("e1", "s1", "100")
        await seed.usage("s1", [TestDataFactory.usage_reference("e1", "100", "s1")])
        await store.create_key(usage_key("s2"), {"sourceId": "s2", "references": None})
        confluence.add_page("100", TestDataFactory.document(TestDataFactory.embed_node("e1")))

        result, record = await run(check_embeds_worker, progress, dry_run=False)

        assert result["success"] is True
        assert record["phase"] == "complete"
        results = record["results"]
        assert [r["localId"] for r in results["activeIncludes"]] == ["e1"]
        assert results["malformedIndexEntries"] == [{"sourceId": "s2", "key": usage_key("s2")}]
        assert results["summary"]["malformedIndexEntryCount"] == 1
        # Reported only, never rewritten
        assert await store.get_key(usage_key("s2")) == {"sourceId": "s2", "references": None}


class TestRestoreFromBackup:
    @pytest.mark.asyncio
    async def test_restored_embed_is_classified_on_the_next_check(
        self, store, seed, confluence, check_embeds_worker, backup_manager, progress
    ):
        await seed.source("s1")
        await seed.embed("e1", "s1", "100")
        await seed.usage("s1", [TestDataFactory.usage_reference("e1", "100", "s1")])
        confluence.add_page("100", TestDataFactory.document(TestDataFactory.paragraph("marker removed")))

        _, first = await run(check_embeds_worker, progress, dry_run=False, progress_id="p1")
        assert await store.get_key(embed_deleted_key("e1")) is not None

        restore = await backup_manager.restore_snapshot(first["results"]["backupId"], local_ids=["e1"])
        assert restore["restored"] == 1
        confluence.add_page("100", TestDataFactory.document(TestDataFactory.embed_node("e1")))

        _, second = await run(check_embeds_worker, progress, dry_run=False, progress_id="p2")

        assert [(r["localId"], r["sourceId"]) for r in second["results"]["activeIncludes"]] == [("e1", "s1")]
        assert second["results"]["orphanedIncludes"] == []
        assert await store.get_key(embed_deleted_key("e1")) is None


class TestActiveRecords:
    @pytest.mark.asyncio
    async def test_stale_and_published_flags(self, seed, confluence, check_embeds_worker, progress, publication_cache):
        await seed.source("s1", updated_at="2024-02-01T00:00:00.000Z")
        await seed.embed("fresh", "s1", "100", last_synced="2024-03-01T00:00:00.000Z")
        await seed.embed("old", "s1", "100", last_synced="2024-01-01T00:00:00.000Z")
        await seed.usage("s1", TestDataFactory.references_for_page("100", ["fresh", "old"], "s1"))
        confluence.add_page("100", TestDataFactory.document(
            TestDataFactory.embed_node("fresh", "s1"),
            TestDataFactory.injected_node("fresh"),
            TestDataFactory.embed_node("old", "s1", encoding="parameters"),
        ))

        _, record = await run(check_embeds_worker, progress, dry_run=True)

        active = {r["localId"]: r for r in record["results"]["activeIncludes"]}
        assert active["fresh"]["isStale"] is False
        assert active["fresh"]["hasInjectedContent"] is True
        assert active["fresh"]["pageUrl"] == "/wiki/spaces/DOC/pages/100"
        assert active["old"]["isStale"] is True
        assert active["old"]["status"] == "Stale (update available)"
        assert [r["localId"] for r in record["results"]["staleIncludes"]] == ["old"]

        cache = await publication_cache.get()
        assert cache["byPageId"] == {"100": ["fresh"]}

    @pytest.mark.asyncio
    async def test_missing_source_is_broken(self, seed, confluence, check_embeds_worker, progress):
        await seed.source("s1")
        await seed.embed("e1", "gone", "100")
        await seed.usage("s1", [TestDataFactory.usage_reference("e1", "100", "gone")])
        confluence.add_page("100", TestDataFactory.document(TestDataFactory.embed_node("e1", "gone")))

        _, record = await run(check_embeds_worker, progress, dry_run=False)

        assert reference_pairs(record["results"]["brokenReferences"]) == [("e1", "Referenced Source not found")]

    @pytest.mark.asyncio
    async def test_invalid_local_id_is_broken(self, seed, confluence, check_embeds_worker, progress):
        await seed.source("s1")
        await seed.usage("s1", [TestDataFactory.usage_reference("  ", "100", "s1")])
        confluence.add_page("100", TestDataFactory.document())

        _, record = await run(check_embeds_worker, progress, dry_run=False)

        assert reference_pairs(record["results"]["brokenReferences"]) == [("  ", "Invalid localId in usage data")]


class TestProgress:
    @pytest.mark.asyncio
    async def test_percent_never_decreases(self, store, seed, confluence, check_embeds_worker, progress):
        await seed_scenario(seed, confluence)
        seen = []
        original_update = progress.update

        async def recording_update(progress_id, updates):
            record = await original_update(progress_id, updates)
            seen.append((record["phase"], record["percent"]))
            return record

        progress.update = recording_update
        await run(check_embeds_worker, progress, dry_run=True)

        percents = [percent for _, percent in seen]
        assert percents == sorted(percents)
        assert seen[0] == ("initializing", 0)
        assert seen[-1] == ("complete", 100)
        assert ("backup", 10) in seen

    @pytest.mark.asyncio
    async def test_backup_failure_does_not_stop_the_check(self, store, seed, confluence, check_embeds_worker, progress):
        await seed_scenario(seed, confluence)
        store.fail_writes.add("backup-")

        result, record = await run(check_embeds_worker, progress, dry_run=True)

        assert result["success"] is True
        assert result["backupId"] is None
        assert record["phase"] == "complete"

    @pytest.mark.asyncio
    async def test_unreadable_usage_index_fails_the_job(self, store, seed, confluence, check_embeds_worker, progress):
        await seed_scenario(seed, confluence)
        store.fail_queries.add("usage:")

        result, record = await run(check_embeds_worker, progress, dry_run=False)

        assert result["success"] is False
        assert record["phase"] == "error"
        assert "usage:" in record["error"]
        assert await store.get_key(embed_config_key("e1")) is not None
