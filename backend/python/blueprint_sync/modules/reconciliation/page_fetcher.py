import json
import logging
from typing import Any, Dict, Optional

import httpx  # type: ignore

from blueprint_sync.config.constants.http_status_code import HttpStatusCode
from blueprint_sync.modules.reconciliation.models import FetchErrorType, FetchResult
from blueprint_sync.sources.external.confluence.confluence import ConfluenceDataSource

BODY_FORMAT = "atlas_doc_format"
DELETED_PAGE_STATUSES = ("trashed", "deleted", "purged")


class PageFetcher:
    """
    Fetches a page's ADF document and classifies failures.

    Retries for 429, 5xx and network errors happen in the HTTP transport; by
    the time a response reaches this class those retries are spent. A bare
    404 is reported as PAGE_NOT_FOUND because Confluence also answers 404 when
    the app lacks permission. It becomes PAGE_DELETED only when a second
    request for the trashed/deleted page confirms it, or when
    trust_unconfirmed_404 is set.
    """

    def __init__(
        self,
        data_source: ConfluenceDataSource,
        logger: logging.Logger,
        trust_unconfirmed_404: bool = False,
    ) -> None:
        self.data_source = data_source
        self.logger = logger
        self.trust_unconfirmed_404 = trust_unconfirmed_404

    async def fetch_page(self, page_id: str) -> FetchResult:
        try:
            response = await self.data_source.get_page_by_id(page_id, body_format=BODY_FORMAT)
        except httpx.HTTPError as e:
            self.logger.warning(f"⚠️ Fetching page {page_id} failed after retries: {type(e).__name__}: {e}")
            return FetchResult(
                success=False,
                error=f"Failed to fetch page {page_id}: {type(e).__name__}",
                error_type=FetchErrorType.TRANSIENT_FAILURE,
            )

        status = response.status

        if response.is_success:
            try:
                page_data = response.json()
            except ValueError:
                return FetchResult(
                    success=False,
                    error=f"Page {page_id} returned an unreadable body (HTTP {status})",
                    error_type=FetchErrorType.TRANSIENT_FAILURE,
                    http_status=status,
                )
            return FetchResult(
                success=True,
                page_data=page_data,
                document=self._parse_document(page_id, page_data),
                http_status=status,
            )

        if status == HttpStatusCode.NOT_FOUND.value:
            return await self._classify_not_found(page_id)

        if status == HttpStatusCode.FORBIDDEN.value:
            return FetchResult(
                success=False,
                error=f"Page {page_id} access denied (HTTP 403)",
                error_type=FetchErrorType.PERMISSION_DENIED,
                http_status=status,
            )

        if status == HttpStatusCode.UNAUTHORIZED.value:
            return FetchResult(
                success=False,
                error=f"Page {page_id} unauthorized (HTTP 401)",
                error_type=FetchErrorType.UNAUTHORIZED,
                http_status=status,
            )

        if status == HttpStatusCode.TOO_MANY_REQUESTS.value or status >= HttpStatusCode.INTERNAL_SERVER_ERROR.value:
            return FetchResult(
                success=False,
                error=f"Page {page_id} still failing after retries (HTTP {status})",
                error_type=FetchErrorType.TRANSIENT_FAILURE,
                http_status=status,
            )

        return FetchResult(
            success=False,
            error=f"Page {page_id} request failed (HTTP {status})",
            error_type=FetchErrorType.CLIENT_ERROR,
            http_status=status,
        )

    async def _classify_not_found(self, page_id: str) -> FetchResult:
        not_found = HttpStatusCode.NOT_FOUND.value

        if self.trust_unconfirmed_404:
            return FetchResult(
                success=False,
                error=f"Page {page_id} not found (HTTP 404)",
                error_type=FetchErrorType.PAGE_DELETED,
                http_status=not_found,
            )

        deleted_status = await self._lookup_deleted_status(page_id)
        if deleted_status:
            self.logger.info(f"🗑️ Page {page_id} confirmed {deleted_status}")
            return FetchResult(
                success=False,
                error=f"Page {page_id} is {deleted_status}",
                error_type=FetchErrorType.PAGE_DELETED,
                http_status=not_found,
            )

        return FetchResult(
            success=False,
            error=f"Page {page_id} not found (HTTP 404), deletion not confirmed",
            error_type=FetchErrorType.PAGE_NOT_FOUND,
            http_status=not_found,
        )

    async def _lookup_deleted_status(self, page_id: str) -> Optional[str]:
        """Ask for the page in trashed/deleted state; return that status when the service confirms it."""
        try:
            response = await self.data_source.get_page_by_id(page_id, status=["trashed", "deleted"])
        except httpx.HTTPError as e:
            self.logger.warning(f"⚠️ Could not corroborate 404 for page {page_id}: {type(e).__name__}")
            return None

        if not response.is_success:
            return None
        try:
            status = (response.json() or {}).get("status")
        except ValueError:
            return None
        return status if status in DELETED_PAGE_STATUSES else None

    def _parse_document(self, page_id: str, page_data: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Return the ADF tree from body.atlas_doc_format.value, or None when it is unusable."""
        value = (((page_data or {}).get("body") or {}).get(BODY_FORMAT) or {}).get("value")
        if isinstance(value, dict):
            return value
        if not isinstance(value, str) or not value:
            self.logger.warning(f"⚠️ Page {page_id} has no {BODY_FORMAT} body")
            return None
        try:
            document = json.loads(value)
        except json.JSONDecodeError as e:
            self.logger.warning(f"⚠️ Page {page_id} body is not valid JSON: {e}")
            return None
        return document if isinstance(document, dict) else None
