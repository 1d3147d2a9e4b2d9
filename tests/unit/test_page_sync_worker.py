import pytest  # type: ignore

from blueprint_sync.config.constants.store_keys import (
    SOURCES_LAST_MODIFIED_KEY,
    page_sources_key,
    source_deleted_key,
    source_key,
)
from blueprint_sync.workers.page_sync_worker import PAGE_DELETED_REASON, SOURCE_REMOVED_REASON
from tests.utils.test_data_factory import TestDataFactory


async def cache_page_sources(store, page_id, source_ids):
    await store.create_key(page_sources_key(page_id), {"pageId": page_id, "sourceIds": source_ids})


class TestSourceDiff:
    @pytest.mark.asyncio
    async def test_removed_source_is_soft_deleted(self, store, seed, confluence, page_sync_worker, source_index):
        await seed.source("s1")
        await seed.source("s2")
        await cache_page_sources(store, "100", ["s1", "s2"])
        confluence.add_page("100", TestDataFactory.document(TestDataFactory.source_node("s1")))

        result = await page_sync_worker.handler({"pageId": "100"})

        assert result["success"] is True
        assert result["sourcesRemoved"] == ["s2"]
        assert result["sourcesSoftDeleted"] == ["s2"]
        assert await store.get_key(source_key("s2")) is None
        assert (await store.get_key(source_deleted_key("s2")))["deletionReason"] == SOURCE_REMOVED_REASON
        assert await source_index.load_ids() == ["s1"]
        assert (await store.get_key(page_sources_key("100")))["sourceIds"] == ["s1"]
        assert await store.get_key(SOURCES_LAST_MODIFIED_KEY) is not None

    @pytest.mark.asyncio
    async def test_added_source_is_recorded(self, store, seed, confluence, page_sync_worker):
        await seed.source("s1")
        await cache_page_sources(store, "100", [])
        confluence.add_page("100", TestDataFactory.document(TestDataFactory.source_node("s1")))

        result = await page_sync_worker.handler({"pageId": "100"})

        assert result["sourcesAdded"] == ["s1"]
        assert result["sourcesSoftDeleted"] == []
        assert (await store.get_key(page_sources_key("100")))["sourceIds"] == ["s1"]

    @pytest.mark.asyncio
    async def test_source_that_lives_elsewhere_is_kept(self, store, seed, confluence, page_sync_worker):
        await seed.source("s1", sourcePageId="999")
        await cache_page_sources(store, "100", ["s1"])
        confluence.add_page("100", TestDataFactory.document())

        result = await page_sync_worker.handler({"pageId": "100"})

        assert result["sourcesRemoved"] == ["s1"]
        assert result["sourcesSoftDeleted"] == []
        assert await store.get_key(source_key("s1")) is not None

    @pytest.mark.asyncio
    async def test_dry_run_changes_nothing_live(self, store, seed, confluence, page_sync_worker):
        await seed.source("s2")
        await cache_page_sources(store, "100", ["s2"])
        confluence.add_page("100", TestDataFactory.document())

        result = await page_sync_worker.handler({"pageId": "100", "dryRun": True})

        assert result["dryRun"] is True
        assert result["sourcesRemoved"] == ["s2"]
        assert await store.get_key(source_key("s2")) is not None
        assert (await store.get_key(page_sources_key("100")))["sourceIds"] == ["s2"]


class TestPageState:
    @pytest.mark.asyncio
    async def test_deleted_page_soft_deletes_its_sources(self, store, seed, confluence, page_sync_worker, task_manager):
        await seed.source("s1")
        await cache_page_sources(store, "100", ["s1"])
        confluence.delete("100", status="deleted")

        result = await page_sync_worker.handler({"pageId": "100"})
        await task_manager.drain()

        assert result["pageDeleted"] is True
        assert result["sourcesSoftDeleted"] == ["s1"]
        assert (await store.get_key(source_deleted_key("s1")))["deletionReason"] == PAGE_DELETED_REASON
        assert await store.get_key(page_sources_key("100")) is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", [403, 404, 500])
    async def test_unverifiable_page_is_skipped(self, store, seed, confluence, page_sync_worker, status):
        await seed.source("s1")
        await cache_page_sources(store, "100", ["s1"])
        confluence.fail("100", status)

        result = await page_sync_worker.handler({"pageId": "100"})

        assert result["success"] is False
        assert result["skipped"] is True
        assert await store.get_key(source_key("s1")) is not None
        assert await store.get_key(page_sources_key("100")) is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("payload", [{}, {"pageId": ""}, {"pageId": None}])
    async def test_missing_page_id(self, page_sync_worker, payload):
        result = await page_sync_worker.handler(payload)

        assert result == {"success": False, "error": "Missing pageId"}


class TestPublicationCacheRefresh:
    @pytest.mark.asyncio
    async def test_published_embeds_are_cached_in_background(
        self, seed, confluence, page_sync_worker, task_manager, publication_cache
    ):
        await seed.embed("e1", "s1", "100")
        await seed.embed("e2", "s1", "100")
        confluence.add_page("100", TestDataFactory.document(
            TestDataFactory.embed_node("e1", "s1"),
            TestDataFactory.injected_node("e1"),
            TestDataFactory.embed_node("e2", "s1"),
        ))

        result = await page_sync_worker.handler({"pageId": "100"})
        await task_manager.drain()

        assert result["publishedEmbeds"] == 1
        cache = await publication_cache.get()
        assert cache["byPageId"] == {"100": ["e1"]}
        assert cache["bySourceId"]["s1"]["embeds"][0]["localId"] == "e1"
