from typing import Any, Dict

import httpx  # type: ignore


class HTTPResponse:
    """Thin wrapper over httpx.Response exposing the fields callers branch on."""

    def __init__(self, response: httpx.Response) -> None:
        self.response = response

    @property
    def status(self) -> int:
        return self.response.status_code

    @property
    def headers(self) -> Dict[str, str]:
        return dict(self.response.headers)

    @property
    def is_success(self) -> bool:
        return self.response.is_success

    def json(self) -> Any:
        return self.response.json()

    def text(self) -> str:
        return self.response.text

    def bytes(self) -> bytes:
        return self.response.content
