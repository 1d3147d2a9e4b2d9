"""
Test configuration settings.

This module manages test environment configuration, loading from environment
variables and providing defaults that keep every test in-process: an
in-memory store, a fake Confluence site and zero retry delays.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field, field_validator  # type: ignore

from blueprint_sync.config.constants.store_type import StoreType
from blueprint_sync.config.settings import ConfluenceSettings, FetchSettings, Settings, StoreSettings


class TestSettings(BaseModel):
    """
    Main test settings configuration.

    Small query pages make pagination paths run in ordinary tests.
    """

    __test__ = False

    confluence_base_url: str = Field(default="https://blueprint-test.atlassian.net", description="Fake site URL")
    confluence_token: str = Field(default="test-token", description="Bearer token sent to the fake site")
    fetch_max_retries: int = Field(default=2, description="Retries on 429/5xx")
    query_page_size: int = Field(default=2, description="Entries per store query page")
    max_query_pages: int = Field(default=50, description="Page cap per prefix scan")
    recovery_window_days: int = Field(default=90, description="Quarantine recovery window")
    log_level: str = Field(default="DEBUG", description="Logging level")

    @field_validator("confluence_base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Ensure base URL doesn't end with trailing slash."""
        return v.rstrip("/")

    @classmethod
    def from_env(cls) -> "TestSettings":
        """
        Load settings from environment variables.

        Returns:
            TestSettings instance with values from environment
        """
        return cls(
            confluence_base_url=os.getenv("TEST_CONFLUENCE_BASE_URL", "https://blueprint-test.atlassian.net"),
            fetch_max_retries=int(os.getenv("TEST_FETCH_MAX_RETRIES", "2")),
            query_page_size=int(os.getenv("TEST_QUERY_PAGE_SIZE", "2")),
            max_query_pages=int(os.getenv("TEST_MAX_QUERY_PAGES", "50")),
            log_level=os.getenv("LOG_LEVEL", "DEBUG"),
        )

    def app_settings(self, default_dry_run: bool = True, page_sync_dry_run: bool = False) -> Settings:
        """Service settings matching this test configuration."""
        return Settings(
            store=StoreSettings(store_type=StoreType.IN_MEMORY),
            confluence=ConfluenceSettings(base_url=self.confluence_base_url, token=self.confluence_token),
            fetch=FetchSettings(
                max_retries=self.fetch_max_retries,
                base_delay_seconds=0.0,
                max_delay_seconds=0.0,
                rate_limit_per_second=1000,
            ),
            query_page_size=self.query_page_size,
            max_query_pages=self.max_query_pages,
            recovery_window_days=self.recovery_window_days,
            default_dry_run=default_dry_run,
            page_sync_dry_run=page_sync_dry_run,
            log_level=self.log_level,
        )


# Global settings instance
_settings: Optional[TestSettings] = None


def get_settings() -> TestSettings:
    """
    Get test settings singleton.

    Returns:
        TestSettings instance
    """
    global _settings
    if _settings is None:
        _settings = TestSettings.from_env()
    return _settings


def reset_settings() -> None:
    """Reset settings singleton (useful for testing)."""
    global _settings
    _settings = None
