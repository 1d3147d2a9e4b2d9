from typing import Any, Dict, Union

from pydantic import BaseModel, ConfigDict, Field  # type: ignore


class HTTPRequest(BaseModel):
    """HTTP request
    Args:
        url: The URL of the request
        method: The HTTP method to use
        headers: The headers to send with the request
        body: The body of the request
        path_params: The path parameters to use
        query_params: The query parameters to use
    """
    model_config = ConfigDict(populate_by_name=True)

    url: str = Field(alias="uri")
    method: str = Field(default="GET")
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Union[Dict[str, Any], bytes, None] = None
    path_params: Dict[str, str] = Field(default_factory=dict, alias="path")
    query_params: Dict[str, str] = Field(default_factory=dict, alias="query")
