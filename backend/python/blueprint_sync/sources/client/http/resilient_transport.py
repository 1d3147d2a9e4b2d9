"""
Resilient HTTP transport.
Combines rate limiting and retry logic at the transport layer.
"""

import asyncio
import logging
import random
from http import HTTPStatus
from typing import Optional

import httpx
from aiolimiter import AsyncLimiter

RETRYABLE_NETWORK_ERRORS = (
    httpx.TimeoutException,
    httpx.ConnectError,
    httpx.ReadError,
    httpx.RemoteProtocolError,
)


class ResilientHTTPTransport(httpx.AsyncHTTPTransport):
    """
    HTTP transport with optional rate limiting and retry logic.

    - Rate limits ONCE per logical request, not per retry attempt
    - Retries on 429, 5xx and network errors
    - Respects a numeric Retry-After header
    - Exponential backoff, base_delay * 2**attempt capped at max_delay,
      optionally with full jitter

    When an inner transport is given, requests are delegated to it instead
    of opening real connections.
    """

    def __init__(
        self,
        rate_limiter: Optional[AsyncLimiter] = None,
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 32.0,
        jitter: bool = True,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        logger: Optional[logging.Logger] = None,
        **kwargs
    ) -> None:
        if not isinstance(max_retries, int) or max_retries < 0:
            raise ValueError(f"max_retries must be a non-negative integer, got: {max_retries}")
        if not isinstance(base_delay, (int, float)) or base_delay < 0:
            raise ValueError(f"base_delay must be a non-negative number, got: {base_delay}")
        if not isinstance(max_delay, (int, float)) or max_delay < 0:
            raise ValueError(f"max_delay must be a non-negative number, got: {max_delay}")
        if max_delay < base_delay:
            raise ValueError(f"max_delay ({max_delay}) must be >= base_delay ({base_delay})")

        super().__init__(**kwargs)
        self.rate_limiter = rate_limiter
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self._inner = transport
        self.logger = logger or logging.getLogger(__name__)

    def _should_retry(self, response: httpx.Response, attempt: int) -> bool:
        """Retry 429 and 5xx responses while attempts remain."""
        if attempt >= self.max_retries:
            return False
        status_code = response.status_code
        return (
            status_code == HTTPStatus.TOO_MANY_REQUESTS or
            HTTPStatus.INTERNAL_SERVER_ERROR <= status_code <= HTTPStatus.NETWORK_AUTHENTICATION_REQUIRED
        )

    def _calculate_delay(self, response: Optional[httpx.Response], attempt: int) -> float:
        """
        Calculate retry delay, preferring a numeric Retry-After header.

        Args:
            response: The retried response, or None after a network error
            attempt: Current attempt number (0-indexed)
        """
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(self.max_delay, float(retry_after))
                except ValueError:
                    pass  # Header is date string, fallback to backoff

        exponential = min(self.max_delay, self.base_delay * (2 ** attempt))
        if self.jitter:
            return random.uniform(0, exponential)
        return exponential

    async def _send(self, request: httpx.Request) -> httpx.Response:
        if self._inner is not None:
            return await self._inner.handle_async_request(request)
        return await super().handle_async_request(request)

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        last_exception = None
        last_response = None

        if self.rate_limiter:
            await self.rate_limiter.acquire()

        for attempt in range(self.max_retries + 1):
            try:
                response = await self._send(request)

                if not self._should_retry(response, attempt):
                    return response

                last_response = response
                delay = self._calculate_delay(response, attempt)
                self.logger.warning(
                    f"HTTP {response.status_code} for {request.url.path} "
                    f"(Attempt {attempt + 1}/{self.max_retries + 1}). Retrying in {delay:.2f}s..."
                )
                await response.aclose()
                await asyncio.sleep(delay)

            except RETRYABLE_NETWORK_ERRORS as e:
                last_exception = e
                if attempt >= self.max_retries:
                    break

                delay = self._calculate_delay(None, attempt)
                self.logger.warning(
                    f"Network error: {type(e).__name__} for {request.url.path} "
                    f"(Attempt {attempt + 1}/{self.max_retries + 1}). Retrying in {delay:.2f}s..."
                )
                await asyncio.sleep(delay)

        if last_exception:
            self.logger.error(f"Request failed after {self.max_retries + 1} attempts with network error")
            raise last_exception

        if last_response:
            self.logger.error(
                f"Request failed after {self.max_retries + 1} attempts with HTTP {last_response.status_code}"
            )
            return last_response

        raise RuntimeError("Request failed with no response or exception captured")

    async def aclose(self) -> None:
        if self._inner is not None:
            await self._inner.aclose()
        await super().aclose()
