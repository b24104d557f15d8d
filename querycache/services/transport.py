"""
Transport - performs the actual network calls for resources.

Any object with `async send(request) -> Response` works as a transport.
HttpxTransport is the default implementation on httpx.AsyncClient.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Generic, Protocol, TypeVar

import httpx
from loguru import logger

from querycache.services.errors import (
    HttpStatusError,
    RateLimitError,
    RequestTimeoutError,
    ServiceError,
    ServiceUnavailableError,
)
from querycache.services.fingerprint import RequestDescriptor

T = TypeVar("T")


@dataclass
class Response(Generic[T]):
    """Response of a transport call. Also the value the query cache holds."""

    body: T
    status: int = 200
    headers: dict[str, list[str]] = field(default_factory=dict)
    url: str | None = None
    status_text: str = "OK"

    def header(self, name: str) -> str | None:
        """First value of a header, case-insensitive."""
        lowered = name.lower()
        for key, values in self.headers.items():
            if key.lower() == lowered and values:
                return values[0]
        return None


class Transport(Protocol):
    """Sends a request, raising ServiceError subclasses on failure."""

    async def send(self, request: RequestDescriptor) -> Response[Any]: ...


def serialize_response(response: Response[Any]) -> str:
    """Serialize a response for sync messages and the durable store."""
    return json.dumps(
        {
            "body": response.body,
            "status": response.status,
            "status_text": response.status_text,
            "headers": response.headers or None,
            "url": response.url,
        },
        ensure_ascii=False,
    )


def deserialize_response(value: str) -> Response[Any] | None:
    """Inverse of serialize_response. Returns None for invalid payloads."""
    try:
        parsed = json.loads(value)
        if not isinstance(parsed, dict) or "body" not in parsed:
            raise ValueError("Invalid cache entry format")
        return Response(
            body=parsed["body"],
            status=parsed.get("status", 200),
            headers=parsed.get("headers") or {},
            url=parsed.get("url"),
            status_text=parsed.get("status_text", "OK"),
        )
    except ValueError as e:
        logger.debug(f"Failed to deserialize cache entry: {e}")
        return None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _to_httpx_headers(
    headers: Any,
) -> list[tuple[str, str]] | None:
    if not headers:
        return None
    items: list[tuple[str, str]] = []
    for key, value in headers.items():
        if isinstance(value, (list, tuple)):
            items.extend((key, str(v)) for v in value)
        else:
            items.append((key, str(value)))
    return items


class HttpxTransport:
    """
    HTTP transport on httpx.

    Usage:
        async with HttpxTransport(service_id="github") as transport:
            response = await transport.send(RequestDescriptor(url="https://api.github.com"))
    """

    def __init__(
        self,
        service_id: str = "http",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
    ):
        self.service_id = service_id
        self._timeout = timeout
        self._headers = headers or {}
        self._http_client = client
        self._owns_client = client is None

    async def _get_http_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._http_client is None:
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(self._timeout),
                follow_redirects=True,
                headers=self._headers,
            )
        return self._http_client

    async def send(self, request: RequestDescriptor) -> Response[Any]:
        """Execute the actual HTTP request."""
        client = await self._get_http_client()

        content: bytes | str | None = None
        json_data: Any = None
        if isinstance(request.body, (bytes, str)):
            content = request.body
        elif request.body is not None:
            json_data = request.body

        try:
            response = await client.request(
                method=request.method.upper(),
                url=request.url,
                params=dict(request.params) if request.params else None,
                headers=_to_httpx_headers(request.headers),
                content=content,
                json=json_data,
            )
            response.raise_for_status()

        except httpx.TimeoutException as e:
            raise RequestTimeoutError(self.service_id, self._timeout) from e

        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise RateLimitError(
                    self.service_id,
                    _parse_retry_after(e.response.headers.get("retry-after")),
                ) from e
            if status == 503:
                raise ServiceUnavailableError(self.service_id) from e
            raise HttpStatusError(
                status,
                e.response.text[:200],
                service_id=self.service_id,
                body=e.response.text,
            ) from e

        except httpx.RequestError as e:
            raise ServiceError(str(e), service_id=self.service_id) from e

        headers: dict[str, list[str]] = {}
        for key, value in response.headers.multi_items():
            headers.setdefault(key, []).append(value)

        return Response(
            body=self._decode_body(response),
            status=response.status_code,
            headers=headers,
            url=str(response.url),
            status_text=response.reason_phrase,
        )

    @staticmethod
    def _decode_body(response: httpx.Response) -> Any:
        if not response.content:
            return None
        content_type = response.headers.get("content-type", "")
        if "json" in content_type:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._http_client and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "HttpxTransport":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()
