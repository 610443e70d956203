from __future__ import annotations

import json
import os
from typing import Any, Dict, Mapping, Optional

import httpx

from .errors import UpstreamTransportError

PROXY_TIMEOUT_SECS_ENV = "PROXY_TIMEOUT_SECS"
DEFAULT_PROXY_TIMEOUT_SECS = 300.0

STREAMING_CONTENT_TYPES = (
    "text/event-stream",
    "application/x-ndjson",
    "application/stream+json",
)

_ERROR_BODY_LIMIT = 500


def get_proxy_timeout_secs(environ: Optional[Mapping[str, str]] = None) -> float:
    source = environ if environ is not None else os.environ
    raw = source.get(PROXY_TIMEOUT_SECS_ENV, str(int(DEFAULT_PROXY_TIMEOUT_SECS)))
    try:
        value = float(raw)
        if value <= 0:
            return DEFAULT_PROXY_TIMEOUT_SECS
        return value
    except (TypeError, ValueError):
        return DEFAULT_PROXY_TIMEOUT_SECS


def _content_type(headers: Mapping[str, str]) -> str:
    for key, value in headers.items():
        if str(key).lower() == "content-type":
            return str(value).lower()
    return ""


def is_streaming_response(headers: Mapping[str, str]) -> bool:
    content_type = _content_type(headers)
    return any(kind in content_type for kind in STREAMING_CONTENT_TYPES)


def json_headers(extra: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    headers = {"Content-Type": "application/json"}
    if extra:
        headers.update(extra)
    return headers


class ProxyTransport:
    """Shared ``httpx.AsyncClient`` for every upstream call the gateway makes."""

    def __init__(self, timeout_secs: Optional[float] = None):
        self._timeout_secs = (
            timeout_secs if timeout_secs is not None else get_proxy_timeout_secs()
        )
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "ProxyTransport":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout_secs,
                follow_redirects=False,
            )
        return self._client

    async def request(
        self,
        method: str,
        url: str,
        headers: Mapping[str, str],
        *,
        content: Optional[bytes] = None,
        params: Optional[Mapping[str, str]] = None,
        stream: bool = False,
    ) -> httpx.Response:
        client = await self._get_client()
        request = client.build_request(
            method=method.upper(),
            url=url,
            headers=dict(headers),
            params=params,
            content=content,
        )
        return await client.send(request, stream=stream)

    async def post_json(
        self,
        url: str,
        headers: Mapping[str, str],
        body: Any,
        *,
        stream: bool = False,
    ) -> httpx.Response:
        """POST a JSON body, mapping httpx failures onto ``UpstreamTransportError``."""
        content = json.dumps(body, ensure_ascii=False).encode("utf-8")
        try:
            return await self.request(
                "POST", url, json_headers(headers), content=content, stream=stream
            )
        except httpx.TimeoutException as exc:
            raise UpstreamTransportError(f"upstream timeout: {url}", timeout=True) from exc
        except httpx.HTTPError as exc:
            raise UpstreamTransportError(
                f"upstream request failed: {url}: {type(exc).__name__}"
            ) from exc

    async def aclose(self) -> None:
        if self._client is None:
            return
        await self._client.aclose()
        self._client = None


async def raise_for_upstream_status(response: httpx.Response, label: str) -> None:
    """Close and raise when a (possibly streaming) response is not 2xx."""
    if 200 <= response.status_code < 300:
        return
    try:
        body = await response.aread()
    except httpx.HTTPError:
        body = b""
    finally:
        await response.aclose()
    detail = body.decode("utf-8", errors="replace")[:_ERROR_BODY_LIMIT]
    raise UpstreamTransportError(
        f"{label} error: {response.status_code} - {detail}",
        upstream_status=response.status_code,
    )


async def read_json(response: httpx.Response, label: str) -> Any:
    """Read a non-streaming body as JSON; bodies that are not JSON come back as text."""
    try:
        raw = await response.aread()
    except httpx.HTTPError as exc:
        raise UpstreamTransportError(f"{label} body read failed: {type(exc).__name__}") from exc
    finally:
        await response.aclose()
    text = raw.decode("utf-8", errors="replace")
    try:
        return json.loads(text)
    except (ValueError, RecursionError):
        return text

