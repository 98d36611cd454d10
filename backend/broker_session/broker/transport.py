import logging
from typing import Any, Dict, Mapping, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from broker_session.broker.exceptions import TransportError

logger = logging.getLogger("HttpTransport")


class TransportRequest(BaseModel):
    """One HTTP exchange, described independently of the client library."""
    model_config = ConfigDict(frozen=True)

    method: str = "GET"
    url: str
    params: Optional[Dict[str, Any]] = None
    form: Optional[Dict[str, Any]] = Field(default=None, repr=False)
    json_body: Optional[Any] = Field(default=None, repr=False)
    headers: Dict[str, str] = Field(default_factory=dict)


class TransportResponse(BaseModel):
    status_code: int
    body: str = Field(default="", repr=False)
    headers: Dict[str, str] = Field(default_factory=dict)

    @property
    def content_type(self) -> str:
        for k, v in self.headers.items():
            if k.lower() == "content-type":
                return v
        return ""

    @property
    def is_json(self) -> bool:
        return "application/json" in self.content_type


class HttpTransport:
    """
    Performs single HTTP exchanges. Owns the cookie jar (the web portal's
    session artifact) and the timeout policy; knows nothing about sessions
    or retries. Redirects are never followed: a 302 is a meaningful answer
    from the login form.
    """

    def __init__(
        self,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        dump_responses: bool = False,
    ):
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout),
            follow_redirects=False,
        )
        self.dump_responses = dump_responses

    @property
    def cookies(self) -> httpx.Cookies:
        return self._client.cookies

    def clear_cookies(self) -> None:
        self._client.cookies.clear()

    async def exchange(self, request: TransportRequest) -> TransportResponse:
        """
        Raises TransportError for anything below the HTTP status level
        (DNS, connect, timeout); every HTTP status is returned, never raised.
        """
        kwargs: Dict[str, Any] = {"headers": request.headers}
        if request.params:
            kwargs["params"] = {k: str(v) for k, v in request.params.items()}
        if request.form is not None:
            kwargs["data"] = {k: "" if v is None else str(v) for k, v in request.form.items()}
        if request.json_body is not None:
            kwargs["json"] = request.json_body

        logger.debug(f"{request.method} {request.url}")
        try:
            response = await self._client.request(request.method, request.url, **kwargs)
        except httpx.RequestError as exc:
            logger.warning(f"HTTP request failed: {request.method} {request.url}: {type(exc).__name__}")
            raise TransportError(f"Transport failure ({type(exc).__name__}) talking to the broker")

        if self.dump_responses:
            logger.debug(f"Response HTTP {response.status_code}: {response.text}")

        return TransportResponse(
            status_code=response.status_code,
            body=response.text,
            headers=_flatten_headers(response.headers),
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()


def _flatten_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k: v for k, v in headers.items()}
