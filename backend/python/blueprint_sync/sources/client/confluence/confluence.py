import base64
import logging
from dataclasses import asdict, dataclass
from typing import Optional

import httpx  # type: ignore
from aiolimiter import AsyncLimiter

from blueprint_sync.config.settings import ConfluenceSettings, FetchSettings
from blueprint_sync.sources.client.http.http_client import HTTPClient
from blueprint_sync.sources.client.iclient import IClient

# Confluence Cloud v2 endpoints live under /wiki/api/v2
API_V2_PATH = "/wiki/api/v2"


def _v2_base_url(site_url: str) -> str:
    site_url = site_url.rstrip("/")
    if site_url.endswith(API_V2_PATH):
        return site_url
    return f"{site_url}{API_V2_PATH}"


class ConfluenceRESTClientViaToken(HTTPClient):
    """Confluence REST client authenticated with a bearer token
    Args:
        base_url: The site URL of the Confluence instance
        token: The token to use for authentication
    """

    def __init__(self, base_url: str, token: str, token_type: str = "Bearer", **kwargs) -> None:
        super().__init__(token, token_type, **kwargs)
        self.base_url = _v2_base_url(base_url)

    def get_base_url(self) -> str:
        """Get the base URL"""
        return self.base_url


class ConfluenceRESTClientViaApiKey(HTTPClient):
    """Confluence REST client authenticated with an account email and API key (Basic auth)
    Args:
        base_url: The site URL of the Confluence instance
        email: The email to use for authentication
        api_key: The API key to use for authentication
    """

    def __init__(self, base_url: str, email: str, api_key: str, **kwargs) -> None:
        credentials = base64.b64encode(f"{email}:{api_key}".encode("utf-8")).decode("ascii")
        super().__init__(credentials, "Basic", **kwargs)
        self.base_url = _v2_base_url(base_url)

    def get_base_url(self) -> str:
        """Get the base URL"""
        return self.base_url


@dataclass
class ConfluenceTokenConfig:
    """Configuration for Confluence REST client via token
    Args:
        base_url: The site URL of the Confluence instance
        token: The token to use for authentication
    """

    base_url: str
    token: str

    def create_client(self, **kwargs) -> ConfluenceRESTClientViaToken:
        return ConfluenceRESTClientViaToken(self.base_url, self.token, **kwargs)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ConfluenceApiKeyConfig:
    """Configuration for Confluence REST client via API key
    Args:
        base_url: The site URL of the Confluence instance
        email: The email to use for authentication
        api_key: The API key to use for authentication
    """

    base_url: str
    email: str
    api_key: str

    def create_client(self, **kwargs) -> ConfluenceRESTClientViaApiKey:
        return ConfluenceRESTClientViaApiKey(self.base_url, self.email, self.api_key, **kwargs)

    def to_dict(self) -> dict:
        # Never expose the key itself
        data = asdict(self)
        data["api_key"] = "***"
        return data


class ConfluenceClient(IClient):
    """Builder class for Confluence clients with different construction methods"""

    def __init__(
        self,
        client: ConfluenceRESTClientViaApiKey | ConfluenceRESTClientViaToken,
    ) -> None:
        self.client = client

    def get_client(self) -> ConfluenceRESTClientViaApiKey | ConfluenceRESTClientViaToken:
        """Return the Confluence client object"""
        return self.client

    @classmethod
    def build_with_config(
        cls,
        config: ConfluenceTokenConfig | ConfluenceApiKeyConfig,
        **client_kwargs,
    ) -> "ConfluenceClient":
        """Build ConfluenceClient from an explicit credentials config
        Args:
            config: Token or API-key configuration
            client_kwargs: Resilience options forwarded to HTTPClient
        Returns:
            ConfluenceClient instance
        """
        return cls(config.create_client(**client_kwargs))

    @classmethod
    def build_from_settings(
        cls,
        confluence: ConfluenceSettings,
        fetch: FetchSettings,
        logger: Optional[logging.Logger] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ConfluenceClient":
        """Build ConfluenceClient from service settings
        Args:
            confluence: Site URL and credentials
            fetch: Retry, timeout and rate-limit settings
            logger: Logger instance
            transport: Optional inner transport (tests pass httpx.MockTransport)
        Returns:
            ConfluenceClient instance
        Raises:
            ValueError: If no usable credentials are configured
        """
        if not confluence.base_url:
            raise ValueError("CONFLUENCE_BASE_URL is required")

        if confluence.token:
            config = ConfluenceTokenConfig(base_url=confluence.base_url, token=confluence.token)
        elif confluence.email and confluence.api_key:
            config = ConfluenceApiKeyConfig(
                base_url=confluence.base_url,
                email=confluence.email,
                api_key=confluence.api_key,
            )
        else:
            raise ValueError("Either CONFLUENCE_TOKEN or CONFLUENCE_EMAIL + CONFLUENCE_API_KEY is required")

        if logger:
            logger.info("🔧 Building Confluence client (%s) for %s", type(config).__name__, confluence.base_url)

        return cls.build_with_config(
            config,
            timeout=fetch.timeout_seconds,
            rate_limiter=AsyncLimiter(fetch.rate_limit_per_second, 1),
            max_retries=fetch.max_retries,
            base_delay=fetch.base_delay_seconds,
            max_delay=max(fetch.max_delay_seconds, fetch.base_delay_seconds),
            jitter=False,
            transport=transport,
            logger=logger,
        )
