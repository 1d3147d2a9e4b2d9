"""
Service configuration.

Settings are read from environment variables (and a .env file when present),
with defaults suited to a local, in-memory run.
"""

import os
from typing import Optional

import dotenv
from pydantic import BaseModel, Field, field_validator  # type: ignore

from blueprint_sync.config.constants.store_type import StoreType

dotenv.load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


class StoreSettings(BaseModel):
    """Key-value store backend."""

    store_type: StoreType = Field(default=StoreType.IN_MEMORY, description="in_memory or redis")
    redis_host: str = Field(default="localhost", description="Redis host")
    redis_port: int = Field(default=6379, description="Redis port")
    redis_password: Optional[str] = Field(default=None, description="Redis password")
    redis_db: int = Field(default=0, description="Redis database number")
    redis_key_prefix: str = Field(default="blueprint:kv:", description="Prefix for every Redis key")


class ConfluenceSettings(BaseModel):
    """Remote document service credentials."""

    base_url: str = Field(default="", description="Confluence site URL, e.g. https://acme.atlassian.net")
    token: Optional[str] = Field(default=None, description="Bearer token")
    email: Optional[str] = Field(default=None, description="Account email for API-key auth")
    api_key: Optional[str] = Field(default=None, description="API key for Basic auth")

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        return v.rstrip("/")


class FetchSettings(BaseModel):
    """Retry, timeout and rate limits for page fetches."""

    max_retries: int = Field(default=3, ge=0, description="Retries on 429, 5xx and network errors")
    base_delay_seconds: float = Field(default=1.0, ge=0, description="Initial backoff delay")
    max_delay_seconds: float = Field(default=32.0, ge=0, description="Backoff delay cap")
    timeout_seconds: float = Field(default=30.0, gt=0, description="Per-request timeout")
    rate_limit_per_second: int = Field(default=10, gt=0, description="Requests per second")
    trust_unconfirmed_404: bool = Field(
        default=False,
        description="Treat a bare 404 as a deleted page without asking for trashed/deleted status",
    )


class Settings(BaseModel):
    """Top-level service settings."""

    store: StoreSettings = Field(default_factory=StoreSettings)
    confluence: ConfluenceSettings = Field(default_factory=ConfluenceSettings)
    fetch: FetchSettings = Field(default_factory=FetchSettings)

    query_page_size: int = Field(default=100, gt=0, description="Entries per store query page")
    max_query_pages: int = Field(default=50, gt=0, description="Page cap for a single prefix scan")
    scan_max_depth: int = Field(default=100, gt=0, description="Depth cap for document tree scans")

    recovery_window_days: int = Field(default=90, ge=0, description="How long quarantined records stay restorable")
    version_retention_days: int = Field(default=90, ge=0, description="How long version snapshots are kept")

    default_dry_run: bool = Field(default=True, description="Dry-run default for destructive jobs")
    page_sync_dry_run: bool = Field(default=False, description="Dry-run default for publish-event page sync")
    log_level: str = Field(default="INFO", description="Logging level")

    @classmethod
    def from_env(cls) -> "Settings":
        """
        Load settings from environment variables.

        Returns:
            Settings instance with values from environment
        """
        return cls(
            store=StoreSettings(
                store_type=StoreType(os.getenv("KV_STORE_TYPE", "in_memory")),
                redis_host=os.getenv("REDIS_HOST", "localhost"),
                redis_port=int(os.getenv("REDIS_PORT", "6379")),
                redis_password=os.getenv("REDIS_PASSWORD") or None,
                redis_db=int(os.getenv("REDIS_DB", "0")),
                redis_key_prefix=os.getenv("REDIS_KEY_PREFIX", "blueprint:kv:"),
            ),
            confluence=ConfluenceSettings(
                base_url=os.getenv("CONFLUENCE_BASE_URL", ""),
                token=os.getenv("CONFLUENCE_TOKEN") or None,
                email=os.getenv("CONFLUENCE_EMAIL") or None,
                api_key=os.getenv("CONFLUENCE_API_KEY") or None,
            ),
            fetch=FetchSettings(
                max_retries=int(os.getenv("FETCH_MAX_RETRIES", "3")),
                base_delay_seconds=float(os.getenv("FETCH_BASE_DELAY_SECONDS", "1.0")),
                max_delay_seconds=float(os.getenv("FETCH_MAX_DELAY_SECONDS", "32.0")),
                timeout_seconds=float(os.getenv("FETCH_TIMEOUT_SECONDS", "30.0")),
                rate_limit_per_second=int(os.getenv("FETCH_RATE_LIMIT_PER_SECOND", "10")),
                trust_unconfirmed_404=_env_bool("TRUST_UNCONFIRMED_404", "false"),
            ),
            query_page_size=int(os.getenv("QUERY_PAGE_SIZE", "100")),
            max_query_pages=int(os.getenv("MAX_QUERY_PAGES", "50")),
            scan_max_depth=int(os.getenv("SCAN_MAX_DEPTH", "100")),
            recovery_window_days=int(os.getenv("RECOVERY_WINDOW_DAYS", "90")),
            version_retention_days=int(os.getenv("VERSION_RETENTION_DAYS", "90")),
            default_dry_run=_env_bool("DEFAULT_DRY_RUN", "true"),
            page_sync_dry_run=_env_bool("PAGE_SYNC_DRY_RUN", "false"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
        )
