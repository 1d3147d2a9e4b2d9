"""Key layout of the reconciliation key/value store."""

SOURCE_PREFIX = "source:"
SOURCE_INDEX_KEY = "source-index"
SOURCE_DELETED_PREFIX = "source-deleted:"

EMBED_CONFIG_PREFIX = "embed-config:"
EMBED_DELETED_PREFIX = "embed-config-deleted:"
EMBED_CACHE_PREFIX = "embed-cache:"

USAGE_PREFIX = "usage:"

BACKUP_PREFIX = "backup-"
VERSION_PREFIX = "version:"
VERSION_INDEX_PREFIX = "version-index:"

PROGRESS_PREFIX = "progress:"
PUBLICATION_CACHE_KEY = "publication-cache"
PAGE_SOURCES_PREFIX = "page-sources:"
SOURCES_LAST_MODIFIED_KEY = "sources-last-modified"


def source_key(source_id: str) -> str:
    return f"{SOURCE_PREFIX}{source_id}"


def source_deleted_key(source_id: str) -> str:
    return f"{SOURCE_DELETED_PREFIX}{source_id}"


def embed_config_key(local_id: str) -> str:
    return f"{EMBED_CONFIG_PREFIX}{local_id}"


def embed_deleted_key(local_id: str) -> str:
    return f"{EMBED_DELETED_PREFIX}{local_id}"


def embed_cache_key(local_id: str) -> str:
    return f"{EMBED_CACHE_PREFIX}{local_id}"


def usage_key(source_id: str) -> str:
    return f"{USAGE_PREFIX}{source_id}"


def backup_metadata_key(backup_id: str) -> str:
    return f"{backup_id}:metadata"


def backup_embed_prefix(backup_id: str) -> str:
    return f"{backup_id}:embed:"


def backup_embed_key(backup_id: str, local_id: str) -> str:
    return f"{backup_embed_prefix(backup_id)}{local_id}"


def version_key(entity_id: str, timestamp_ms: int) -> str:
    return f"{VERSION_PREFIX}{entity_id}:{timestamp_ms}"


def version_index_key(entity_id: str) -> str:
    return f"{VERSION_INDEX_PREFIX}{entity_id}"


def progress_key(progress_id: str) -> str:
    return f"{PROGRESS_PREFIX}{progress_id}"


def page_sources_key(page_id: str) -> str:
    return f"{PAGE_SOURCES_PREFIX}{page_id}"
