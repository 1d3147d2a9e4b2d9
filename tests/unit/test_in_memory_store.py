import pytest  # type: ignore

from blueprint_sync.config.constants.store_type import StoreType
from blueprint_sync.config.key_value_store import KeyValueStore, QueryPage, query_all_pages
from blueprint_sync.config.key_value_store_factory import KeyValueStoreFactory, StoreConfig, json_serializer
from blueprint_sync.config.providers.in_memory_store import InMemoryKeyValueStore


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_values_are_copied_on_write_and_read(self):
        store = InMemoryKeyValueStore()
        value = {"items": [1]}
        await store.create_key("k", value)
        value["items"].append(2)

        stored = await store.get_key("k")
        stored["items"].append(3)

        assert await store.get_key("k") == {"items": [1]}

    @pytest.mark.asyncio
    async def test_create_without_overwrite_keeps_existing(self):
        store = InMemoryKeyValueStore()
        assert await store.create_key("k", 1) is True
        assert await store.create_key("k", 2, overwrite=False) is False
        assert await store.get_key("k") == 1

    @pytest.mark.asyncio
    async def test_query_paginates_with_cursor(self):
        store = InMemoryKeyValueStore()
        for i in range(5):
            await store.create_key(f"usage:s{i}", i)
        await store.create_key("other:x", 0)

        first = await store.query("usage:", limit=2)
        second = await store.query("usage:", cursor=first.next_cursor, limit=2)
        third = await store.query("usage:", cursor=second.next_cursor, limit=2)

        assert [k for k, _ in first.results] == ["usage:s0", "usage:s1"]
        assert [k for k, _ in second.results] == ["usage:s2", "usage:s3"]
        assert [k for k, _ in third.results] == ["usage:s4"]
        assert third.next_cursor is None


class TestQueryAllPages:
    @pytest.mark.asyncio
    async def test_collects_every_page(self):
        store = InMemoryKeyValueStore()
        for i in range(7):
            await store.create_key(f"source:{i}", {"id": i})

        result = await query_all_pages(store, "source:", page_size=3)

        assert len(result.results) == 7
        assert result.pages == 3
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_page_cap_marks_result_truncated(self, logger):
        store = InMemoryKeyValueStore()
        for i in range(7):
            await store.create_key(f"source:{i}", {"id": i})

        result = await query_all_pages(store, "source:", page_size=2, max_pages=2, logger=logger)

        assert len(result.results) == 4
        assert result.truncated is True


class TestKeyValueStoreFactory:
    def test_in_memory_store_needs_no_config(self):
        assert isinstance(KeyValueStoreFactory.create_store(StoreType.IN_MEMORY), InMemoryKeyValueStore)

    def test_redis_store_requires_serializers(self):
        with pytest.raises(ValueError):
            KeyValueStoreFactory.create_store(StoreType.REDIS, serializer=json_serializer, config=StoreConfig())


class _MinimalStore(KeyValueStore):
    def __init__(self):
        self.data = {}

    async def create_key(self, key, value, overwrite=True, ttl=None):
        self.data[key] = value
        return True

    async def get_key(self, key):
        return self.data.get(key)

    async def delete_key(self, key):
        return self.data.pop(key, None) is not None

    async def query(self, prefix, cursor=None, limit=100):
        return QueryPage(results=[(k, v) for k, v in sorted(self.data.items()) if k.startswith(prefix)])


class TestKeyValueStoreInterface:
    @pytest.mark.asyncio
    async def test_four_operations_make_a_complete_store(self):
        store = _MinimalStore()
        await store.create_key("usage:s1", {"references": []})

        scan = await query_all_pages(store, "usage:")

        assert scan.results == [("usage:s1", {"references": []})]
        assert await store.health_check() is True
