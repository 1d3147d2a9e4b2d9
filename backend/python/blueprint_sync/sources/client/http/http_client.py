import logging
from typing import Optional

import httpx  # type: ignore
from aiolimiter import AsyncLimiter

from blueprint_sync.sources.client.http.http_request import HTTPRequest
from blueprint_sync.sources.client.http.http_response import HTTPResponse
from blueprint_sync.sources.client.http.resilient_transport import ResilientHTTPTransport
from blueprint_sync.sources.client.iclient import IClient


class HTTPClient(IClient):
    """
    HTTP client with authentication and optional resilience features.

    If max_retries > 0 and no rate_limiter is given, a default limiter of
    50 requests/second is created so retries cannot turn into a storm.

    Args:
        token: Authentication token
        token_type: Token type for Authorization header (default: "Bearer")
        timeout: Request timeout in seconds (default: 30.0)
        follow_redirects: Whether to follow HTTP redirects (default: True)
        rate_limiter: Optional AsyncLimiter
        max_retries: Number of retry attempts (default: 0 = disabled)
        base_delay: Initial delay for exponential backoff in seconds (default: 1.0)
        max_delay: Maximum delay cap in seconds (default: 32.0)
        jitter: Randomise backoff delays (default: True)
        transport: Optional inner transport the resilient layer delegates to
        logger: Optional logger instance
    """
    def __init__(
        self,
        token: str,
        token_type: str = "Bearer",
        timeout: float = 30.0,
        follow_redirects: bool = True,
        rate_limiter: Optional[AsyncLimiter] = None,
        max_retries: int = 0,
        base_delay: float = 1.0,
        max_delay: float = 32.0,
        jitter: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None
    ) -> None:
        self.headers = {
            "Authorization": f"{token_type} {token}",
            "Accept": "application/json",
        }
        self.timeout = timeout
        self.follow_redirects = follow_redirects
        self.max_retries = max_retries
        if rate_limiter is None and max_retries > 0:
            rate_limiter = AsyncLimiter(50, 1)
        self.rate_limiter = rate_limiter
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.transport = transport
        self.logger = logger or logging.getLogger(__name__)
        self.client: Optional[httpx.AsyncClient] = None

    def get_client(self) -> "HTTPClient":
        """Get the client"""
        return self

    async def _ensure_client(self) -> httpx.AsyncClient:
        """Create the underlying httpx client on first use."""
        if self.client is None:
            if self.rate_limiter is not None or self.max_retries > 0:
                transport = ResilientHTTPTransport(
                    rate_limiter=self.rate_limiter,
                    max_retries=self.max_retries,
                    base_delay=self.base_delay,
                    max_delay=self.max_delay,
                    jitter=self.jitter,
                    transport=self.transport,
                    logger=self.logger,
                )
            else:
                transport = self.transport
            self.client = httpx.AsyncClient(
                transport=transport,
                timeout=self.timeout,
                follow_redirects=self.follow_redirects,
            )
        return self.client

    async def execute(self, request: HTTPRequest, **kwargs) -> HTTPResponse:
        """Execute an HTTP request
        Args:
            request: The HTTP request to execute
            kwargs: Additional keyword arguments to pass to the request
        Returns:
            A HTTPResponse object containing the response from the server
        """
        client = await self._ensure_client()

        # Request headers take precedence over client headers
        merged_headers = {**self.headers, **request.headers}
        request_kwargs = {
            "params": request.query_params,
            "headers": merged_headers,
            **kwargs
        }

        if isinstance(request.body, dict):
            request_kwargs["json"] = request.body
        elif isinstance(request.body, bytes):
            request_kwargs["content"] = request.body

        response = await client.request(request.method, request.url, **request_kwargs)
        return HTTPResponse(response)

    async def close(self) -> None:
        """Close the client"""
        if self.client:
            await self.client.aclose()
            self.client = None

    async def __aenter__(self) -> "HTTPClient":
        await self._ensure_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
