from typing import Type, TypeVar

from dependency_injector import containers, providers  # type: ignore

from blueprint_sync.config.constants.store_type import StoreType
from blueprint_sync.config.key_value_store import KeyValueStore
from blueprint_sync.config.key_value_store_factory import (
    KeyValueStoreFactory,
    StoreConfig,
    json_deserializer,
    json_serializer,
)
from blueprint_sync.config.settings import Settings
from blueprint_sync.modules.reconciliation.backup_manager import BackupManager
from blueprint_sync.modules.reconciliation.jobs import (
    CHECK_EMBEDS_QUEUE,
    CHECK_SOURCES_QUEUE,
    PAGE_SYNC_QUEUE,
    PRUNE_QUEUE,
    ReconciliationJobs,
)
from blueprint_sync.modules.reconciliation.orphan_manager import OrphanManager
from blueprint_sync.modules.reconciliation.page_fetcher import PageFetcher
from blueprint_sync.modules.reconciliation.progress_tracker import ProgressTracker
from blueprint_sync.modules.reconciliation.publication_cache import PublicationCache
from blueprint_sync.modules.reconciliation.reference_repairer import ReferenceRepairer
from blueprint_sync.modules.reconciliation.source_index import SourceIndex
from blueprint_sync.modules.reconciliation.usage_collector import UsageCollector
from blueprint_sync.services.queue.job_queue import InProcessJobQueue
from blueprint_sync.services.tasks.task_manager import BackgroundTaskManager
from blueprint_sync.services.versioning.version_manager import VersionManager
from blueprint_sync.sources.client.confluence.confluence import ConfluenceClient
from blueprint_sync.sources.external.confluence.confluence import ConfluenceDataSource
from blueprint_sync.utils.logger import create_logger
from blueprint_sync.workers.check_embeds_worker import CheckEmbedsWorker
from blueprint_sync.workers.check_sources_worker import CheckSourcesWorker
from blueprint_sync.workers.page_sync_worker import PageSyncWorker
from blueprint_sync.workers.prune_worker import PruneWorker

T = TypeVar("T", bound="ReconciliationContainer")


def _create_store(settings: Settings) -> KeyValueStore:
    store_settings = settings.store
    if store_settings.store_type == StoreType.IN_MEMORY:
        return KeyValueStoreFactory.create_store(StoreType.IN_MEMORY)
    return KeyValueStoreFactory.create_store(
        StoreType.REDIS,
        serializer=json_serializer,
        deserializer=json_deserializer,
        config=StoreConfig(
            host=store_settings.redis_host,
            port=store_settings.redis_port,
            password=store_settings.redis_password,
            db=store_settings.redis_db,
            key_prefix=store_settings.redis_key_prefix,
        ),
    )


def _create_confluence_client(settings: Settings, logger) -> ConfluenceClient:
    return ConfluenceClient.build_from_settings(settings.confluence, settings.fetch, logger=logger)


class ReconciliationContainer(containers.DeclarativeContainer):
    """Wires the reconciliation services. Everything is a lazily created singleton."""

    settings = providers.Singleton(Settings.from_env)
    logger = providers.Singleton(create_logger, "blueprint_sync", level=settings.provided.log_level)

    store = providers.Singleton(_create_store, settings)

    # Remote document service
    confluence_client = providers.Singleton(_create_confluence_client, settings, logger)
    confluence_data_source = providers.Singleton(ConfluenceDataSource, confluence_client)
    page_fetcher = providers.Singleton(
        PageFetcher,
        data_source=confluence_data_source,
        logger=logger,
        trust_unconfirmed_404=settings.provided.fetch.trust_unconfirmed_404,
    )

    # Storage-backed services
    version_manager = providers.Singleton(VersionManager, store=store, logger=logger)
    source_index = providers.Singleton(
        SourceIndex,
        store=store,
        version_manager=version_manager,
        logger=logger,
        page_size=settings.provided.query_page_size,
        max_pages=settings.provided.max_query_pages,
    )
    reference_repairer = providers.Singleton(ReferenceRepairer, store=store, logger=logger)
    orphan_manager = providers.Singleton(
        OrphanManager,
        store=store,
        version_manager=version_manager,
        source_index=source_index,
        repairer=reference_repairer,
        logger=logger,
        recovery_window_days=settings.provided.recovery_window_days,
        page_size=settings.provided.query_page_size,
        max_pages=settings.provided.max_query_pages,
    )
    usage_collector = providers.Singleton(
        UsageCollector,
        store=store,
        logger=logger,
        page_size=settings.provided.query_page_size,
        max_pages=settings.provided.max_query_pages,
    )
    backup_manager = providers.Singleton(
        BackupManager,
        store=store,
        repairer=reference_repairer,
        logger=logger,
        page_size=settings.provided.query_page_size,
        max_pages=settings.provided.max_query_pages,
    )
    progress_tracker = providers.Singleton(ProgressTracker, store=store, logger=logger)
    publication_cache = providers.Singleton(PublicationCache, store=store, logger=logger)

    # Background execution
    task_manager = providers.Singleton(BackgroundTaskManager, logger=logger)
    job_queue = providers.Singleton(InProcessJobQueue, task_manager=task_manager, logger=logger)

    # Workers
    check_embeds_worker = providers.Singleton(
        CheckEmbedsWorker,
        store=store,
        fetcher=page_fetcher,
        usage_collector=usage_collector,
        repairer=reference_repairer,
        orphan_manager=orphan_manager,
        backup_manager=backup_manager,
        progress=progress_tracker,
        publication_cache=publication_cache,
        source_index=source_index,
        logger=logger,
        default_dry_run=settings.provided.default_dry_run,
        scan_max_depth=settings.provided.scan_max_depth,
    )
    check_sources_worker = providers.Singleton(
        CheckSourcesWorker,
        source_index=source_index,
        fetcher=page_fetcher,
        progress=progress_tracker,
        logger=logger,
    )
    prune_worker = providers.Singleton(
        PruneWorker,
        version_manager=version_manager,
        orphan_manager=orphan_manager,
        progress=progress_tracker,
        logger=logger,
        version_retention_days=settings.provided.version_retention_days,
        default_dry_run=settings.provided.default_dry_run,
        page_size=settings.provided.query_page_size,
        max_pages=settings.provided.max_query_pages,
    )
    page_sync_worker = providers.Singleton(
        PageSyncWorker,
        store=store,
        fetcher=page_fetcher,
        orphan_manager=orphan_manager,
        publication_cache=publication_cache,
        task_manager=task_manager,
        logger=logger,
        default_dry_run=settings.provided.page_sync_dry_run,
        scan_max_depth=settings.provided.scan_max_depth,
    )

    jobs = providers.Singleton(
        ReconciliationJobs,
        queue=job_queue,
        progress=progress_tracker,
        logger=logger,
        default_dry_run=settings.provided.default_dry_run,
        page_sync_dry_run=settings.provided.page_sync_dry_run,
    )

    @classmethod
    def init(cls: Type[T], service_name: str) -> T:
        """Initialize the container with the given service name."""
        container = cls()
        container.logger().info(f"🚀 Initializing {cls.__name__} for {service_name}")
        register_job_handlers(container)
        return container


def register_job_handlers(container: ReconciliationContainer) -> None:
    """Attach workers to their queues. Workers are resolved when a job runs."""
    queue = container.job_queue()
    queue.register(CHECK_EMBEDS_QUEUE, lambda payload: container.check_embeds_worker().handler(payload))
    queue.register(CHECK_SOURCES_QUEUE, lambda payload: container.check_sources_worker().handler(payload))
    queue.register(PRUNE_QUEUE, lambda payload: container.prune_worker().handler(payload))
    queue.register(PAGE_SYNC_QUEUE, lambda payload: container.page_sync_worker().handler(payload))
