"""
Global pytest configuration and fixtures for the reconciliation tests.

This file contains shared fixtures and configurations that are available
to all test modules without explicit import. Every fixture works against the
in-memory store and a fake Confluence site served through httpx.MockTransport.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, List

import httpx  # type: ignore
import pytest  # type: ignore
from faker import Faker  # type: ignore

# Add the project root and the package root to Python path
project_root: Path = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(project_root / "backend" / "python"))

from blueprint_sync.config.constants.store_keys import (  # noqa: E402
    SOURCE_INDEX_KEY,
    embed_config_key,
    source_key,
    usage_key,
)
from blueprint_sync.config.key_value_store import KeyValueStore  # noqa: E402
from blueprint_sync.modules.reconciliation.backup_manager import BackupManager  # noqa: E402
from blueprint_sync.modules.reconciliation.orphan_manager import OrphanManager  # noqa: E402
from blueprint_sync.modules.reconciliation.page_fetcher import PageFetcher  # noqa: E402
from blueprint_sync.modules.reconciliation.progress_tracker import ProgressTracker  # noqa: E402
from blueprint_sync.modules.reconciliation.publication_cache import PublicationCache  # noqa: E402
from blueprint_sync.modules.reconciliation.reference_repairer import ReferenceRepairer  # noqa: E402
from blueprint_sync.modules.reconciliation.source_index import SourceIndex  # noqa: E402
from blueprint_sync.modules.reconciliation.usage_collector import UsageCollector  # noqa: E402
from blueprint_sync.services.tasks.task_manager import BackgroundTaskManager  # noqa: E402
from blueprint_sync.services.versioning.version_manager import VersionManager  # noqa: E402
from blueprint_sync.sources.client.confluence.confluence import (  # noqa: E402
    ConfluenceClient,
    ConfluenceTokenConfig,
)
from blueprint_sync.sources.external.confluence.confluence import ConfluenceDataSource  # noqa: E402
from blueprint_sync.utils.logger import create_logger  # noqa: E402
from blueprint_sync.workers.check_embeds_worker import CheckEmbedsWorker  # noqa: E402
from blueprint_sync.workers.check_sources_worker import CheckSourcesWorker  # noqa: E402
from blueprint_sync.workers.page_sync_worker import PageSyncWorker  # noqa: E402
from tests.config.settings import TestSettings, get_settings  # noqa: E402
from tests.utils.fakes import FakeConfluence, FlakyStore  # noqa: E402
from tests.utils.test_data_factory import TestDataFactory  # noqa: E402

# Initialize Faker for generating test data
fake: Faker = Faker()


# ============================================================================
# Session-level fixtures
# ============================================================================


@pytest.fixture(scope="session")
def faker_instance() -> Faker:
    """
    Provide a Faker instance for generating test data.

    Returns:
        Configured Faker instance
    """
    return fake


@pytest.fixture(scope="session")
def test_settings() -> TestSettings:
    return get_settings()


@pytest.fixture(scope="session")
def logger() -> logging.Logger:
    return create_logger("blueprint_sync_tests")


# ============================================================================
# Storage and services
# ============================================================================


@pytest.fixture
def store() -> FlakyStore:
    """In-memory store; tests switch on failures through its fail_* prefix sets."""
    return FlakyStore()


@pytest.fixture
def version_manager(store, logger) -> VersionManager:
    return VersionManager(store, logger)


@pytest.fixture
def source_index(store, version_manager, logger, test_settings) -> SourceIndex:
    return SourceIndex(store, version_manager, logger, page_size=test_settings.query_page_size)


@pytest.fixture
def orphan_manager(store, version_manager, source_index, repairer, logger, test_settings) -> OrphanManager:
    return OrphanManager(
        store,
        version_manager,
        source_index,
        repairer,
        logger,
        recovery_window_days=test_settings.recovery_window_days,
        page_size=test_settings.query_page_size,
    )


@pytest.fixture
def usage_collector(store, logger, test_settings) -> UsageCollector:
    return UsageCollector(store, logger, page_size=test_settings.query_page_size)


@pytest.fixture
def repairer(store, logger) -> ReferenceRepairer:
    return ReferenceRepairer(store, logger)


@pytest.fixture
def backup_manager(store, repairer, logger, test_settings) -> BackupManager:
    return BackupManager(store, repairer, logger, page_size=test_settings.query_page_size)


@pytest.fixture
def progress(store, logger) -> ProgressTracker:
    return ProgressTracker(store, logger)


@pytest.fixture
def publication_cache(store, logger) -> PublicationCache:
    return PublicationCache(store, logger)


@pytest.fixture
def task_manager(logger) -> BackgroundTaskManager:
    return BackgroundTaskManager(logger)


# ============================================================================
# Remote page service
# ============================================================================


@pytest.fixture
def confluence() -> FakeConfluence:
    return FakeConfluence()


@pytest.fixture
def data_source(confluence, test_settings, logger) -> ConfluenceDataSource:
    client = ConfluenceClient.build_with_config(
        ConfluenceTokenConfig(base_url=test_settings.confluence_base_url, token=test_settings.confluence_token),
        max_retries=test_settings.fetch_max_retries,
        base_delay=0.0,
        max_delay=0.0,
        jitter=False,
        transport=httpx.MockTransport(confluence.handler),
        logger=logger,
    )
    return ConfluenceDataSource(client)


@pytest.fixture
def fetcher(data_source, logger) -> PageFetcher:
    return PageFetcher(data_source, logger)


# ============================================================================
# Workers
# ============================================================================


@pytest.fixture
def check_embeds_worker(
    store,
    fetcher,
    usage_collector,
    repairer,
    orphan_manager,
    backup_manager,
    progress,
    publication_cache,
    source_index,
    logger,
) -> CheckEmbedsWorker:
    return CheckEmbedsWorker(
        store=store,
        fetcher=fetcher,
        usage_collector=usage_collector,
        repairer=repairer,
        orphan_manager=orphan_manager,
        backup_manager=backup_manager,
        progress=progress,
        publication_cache=publication_cache,
        source_index=source_index,
        logger=logger,
        default_dry_run=True,
    )


@pytest.fixture
def check_sources_worker(source_index, fetcher, progress, logger) -> CheckSourcesWorker:
    return CheckSourcesWorker(source_index=source_index, fetcher=fetcher, progress=progress, logger=logger)


@pytest.fixture
def page_sync_worker(store, fetcher, orphan_manager, publication_cache, task_manager, logger) -> PageSyncWorker:
    return PageSyncWorker(
        store=store,
        fetcher=fetcher,
        orphan_manager=orphan_manager,
        publication_cache=publication_cache,
        task_manager=task_manager,
        logger=logger,
        default_dry_run=False,
    )


# ============================================================================
# Seeding helpers
# ============================================================================


class Seeder:
    """Writes Sources, Embed configurations and usage references the way the app stores them."""

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    async def source(self, source_id: str, **kwargs) -> Dict[str, Any]:
        source = TestDataFactory.source(source_id, **kwargs)
        await self.store.create_key(source_key(source_id), source)
        index = await self.store.get_key(SOURCE_INDEX_KEY) or {"sources": []}
        index["sources"].append({"id": source_id, "name": source["name"], "category": source["category"]})
        await self.store.create_key(SOURCE_INDEX_KEY, index)
        return source

    async def embed(self, local_id: str, source_id, page_id: str, **kwargs) -> Dict[str, Any]:
        config = TestDataFactory.embed_config(source_id, page_id, **kwargs)
        await self.store.create_key(embed_config_key(local_id), config)
        return config

    async def usage(self, index_source_id: str, references: List[Dict[str, Any]]) -> None:
        key = usage_key(index_source_id)
        usage = await self.store.get_key(key) or {"sourceId": index_source_id, "references": []}
        usage["references"].extend(references)
        await self.store.create_key(key, usage)


@pytest.fixture
def seed(store) -> Seeder:
    return Seeder(store)


# ============================================================================
# Test lifecycle hooks
# ============================================================================


def pytest_collection_modifyitems(config, items):
    """
    Modify test items after collection.

    Tests under tests/api are marked api, everything else unit unless it is
    already marked integration.
    """
    for item in items:
        if "api" in Path(str(item.fspath)).parts:
            item.add_marker(pytest.mark.api)
        elif "integration" not in item.keywords:
            item.add_marker(pytest.mark.unit)
