"""
Forwarding of requests for packages that are not served locally.

Requests are relayed to the upstream registry with the same method, path and
headers, and the upstream response is streamed back undecoded so the client
sees exactly what the public registry sent.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator, List, Optional, Tuple

import httpx
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import Response, StreamingResponse

from registry_proxy.core.config import PUBLIC_NPM_REGISTRY
from registry_proxy.domain.routing import request_target

logger = logging.getLogger(__name__)

# Connection-level headers are never relayed in either direction.
HOP_BY_HOP_HEADERS = frozenset(
    {
        b"connection",
        b"keep-alive",
        b"proxy-authenticate",
        b"proxy-authorization",
        b"proxy-connection",
        b"te",
        b"trailer",
        b"trailers",
        b"transfer-encoding",
        b"upgrade",
    }
)


def _filter_headers(raw_headers) -> List[Tuple[bytes, bytes]]:
    return [
        (name.lower(), value)
        for name, value in raw_headers
        if name.lower() not in HOP_BY_HOP_HEADERS
    ]


class ProxyForwarder:
    """
    Streams requests to the upstream registry and their responses back.

    Owns a single ``httpx.AsyncClient``. No timeouts are applied beyond the
    transport's own and redirects are relayed to the client, not followed.
    """

    def __init__(self, upstream_url: str = PUBLIC_NPM_REGISTRY, client: Optional[httpx.AsyncClient] = None):
        self.upstream_url = upstream_url.rstrip("/")
        self.upstream_host = httpx.URL(self.upstream_url).netloc
        self._client = client or httpx.AsyncClient(follow_redirects=False, timeout=None)

    async def aclose(self) -> None:
        await self._client.aclose()

    def upstream_url_for(self, target: str) -> str:
        return f"{self.upstream_url}{target}"

    def _build_request(self, request: Request, url: str) -> httpx.Request:
        headers = [
            (name, value)
            for name, value in _filter_headers(request.headers.raw)
            if name != b"host"
        ]
        headers.append((b"host", self.upstream_host))

        has_body = "content-length" in request.headers or "transfer-encoding" in request.headers
        return self._client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if has_body else None,
        )

    async def forward(self, request: Request) -> Response:
        url = self.upstream_url_for(request_target(request.scope))
        upstream_request = self._build_request(request, url)

        try:
            upstream = await self._client.send(upstream_request, stream=True)
        except httpx.HTTPError as e:
            logger.error(f"Proxy request {request.method} {url} failed: {e!r}")
            return Response(status_code=502)

        logger.debug(f"Proxy {request.method} {url} -> {upstream.status_code} {upstream.reason_phrase}")
        response = StreamingResponse(
            self._relay(upstream, url),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = _filter_headers(upstream.headers.raw)
        return response

    async def _relay(self, upstream: httpx.Response, url: str) -> AsyncIterator[bytes]:
        try:
            async for chunk in upstream.aiter_raw():
                yield chunk
        except httpx.HTTPError as e:
            # Only this connection is dropped; the server keeps running.
            logger.error(f"Proxy response from {url} failed mid-stream: {e!r}")
            raise
        finally:
            await upstream.aclose()
