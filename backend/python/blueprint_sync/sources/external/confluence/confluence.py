from typing import Any, Dict, Optional, Union

from blueprint_sync.sources.client.confluence.confluence import ConfluenceClient
from blueprint_sync.sources.client.http.http_request import HTTPRequest
from blueprint_sync.sources.client.http.http_response import HTTPResponse


class ConfluenceDataSource:
    """Page read/write operations of the Confluence Cloud v2 API."""

    def __init__(self, client: ConfluenceClient) -> None:
        self._client = client.get_client()
        if self._client is None:
            raise ValueError('HTTP client is not initialized')
        try:
            self.base_url = self._client.get_base_url().rstrip('/')  # type: ignore [valid method]
        except AttributeError as exc:
            raise ValueError('HTTP client does not have get_base_url method') from exc

    def get_data_source(self) -> 'ConfluenceDataSource':
        return self

    async def get_page_by_id(
        self,
        id: Union[int, str],
        body_format: Optional[str] = None,
        get_draft: Optional[bool] = None,
        status: Optional[list[str]] = None,
        version: Optional[int] = None,
        headers: Optional[Dict[str, Any]] = None
    ) -> HTTPResponse:
        """Get page by id

        HTTP GET /pages/{id}
        Query params:
          - body-format (str, optional) - storage, atlas_doc_format, view, ...
          - get-draft (bool, optional)
          - status (list[str], optional) - current, archived, trashed, deleted, historical, draft
          - version (int, optional)
        """
        if self._client is None:
            raise ValueError('HTTP client is not initialized')
        _headers: Dict[str, Any] = dict(headers or {})
        _path: Dict[str, Any] = {
            'id': id,
        }
        _query: Dict[str, Any] = {}
        if body_format is not None:
            _query['body-format'] = body_format
        if get_draft is not None:
            _query['get-draft'] = get_draft
        if status is not None:
            _query['status'] = status
        if version is not None:
            _query['version'] = version
        rel_path = '/pages/{id}'
        url = self.base_url + _safe_format_url(rel_path, _path)
        req = HTTPRequest(
            method='GET',
            url=url,
            headers=_as_str_dict(_headers),
            path=_as_str_dict(_path),
            query=_as_str_dict(_query),
            body=None,
        )
        return await self._client.execute(req)

    async def update_page(
        self,
        id: Union[int, str],
        body: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, Any]] = None
    ) -> HTTPResponse:
        """Update page

        HTTP PUT /pages/{id}
        Body: {id, status, title, body: {representation, value}, version: {number}}
        The version number must be the current one plus one.
        """
        if self._client is None:
            raise ValueError('HTTP client is not initialized')
        _headers: Dict[str, Any] = dict(headers or {})
        _path: Dict[str, Any] = {
            'id': id,
        }
        rel_path = '/pages/{id}'
        url = self.base_url + _safe_format_url(rel_path, _path)
        req = HTTPRequest(
            method='PUT',
            url=url,
            headers=_as_str_dict(_headers),
            path=_as_str_dict(_path),
            query={},
            body=body,
        )
        return await self._client.execute(req)


def _safe_format_url(template: str, params: Dict[str, object]) -> str:
    class _SafeDict(dict):
        def __missing__(self, key: str) -> str:
            return '{' + key + '}'
    try:
        return template.format_map(_SafeDict(params))
    except (KeyError, ValueError, IndexError):
        return template

def _to_bool_str(v: Union[bool, str, int, float]) -> str:
    if isinstance(v, bool):
        return 'true' if v else 'false'
    return str(v)

def _serialize_value(v: Union[bool, str, int, float, list, tuple, set, None]) -> str:
    if v is None:
        return ''
    if isinstance(v, (list, tuple, set)):
        return ','.join(_to_bool_str(x) for x in v)
    return _to_bool_str(v)

def _as_str_dict(d: Dict[str, Any]) -> Dict[str, str]:
    return {str(k): _serialize_value(v) for k, v in (d or {}).items()}
