from __future__ import annotations

import json
import logging

from fastapi import Request, Response, status
from fastapi.responses import FileResponse
from starlette.types import ASGIApp, Receive, Scope, Send

from registry_proxy.core.dependencies import get_forwarder, get_store
from registry_proxy.domain.routing import LocalMetadata, LocalTarball, Proxy, classify, request_target
from registry_proxy.services.proxy import ProxyForwarder
from registry_proxy.storage.registry_store import RegistryStore

logger = logging.getLogger(__name__)

ABBREVIATED_METADATA_MEDIA_TYPE = "application/vnd.npm.install-v1+json"
TARBALL_MEDIA_TYPE = "application/octet-stream"


# ---------------------------------------------------------------------------
# Handlers
# ---------------------------------------------------------------------------

async def serve_tarball(decision: LocalTarball, store: RegistryStore) -> Response:
    record = decision.record
    if not decision.matches:
        logger.debug(f"Unknown tarball {decision.filename} for {record.name}, expected {record.tarball_filename}")
        return Response(status_code=status.HTTP_404_NOT_FOUND)

    await store.access_log.local(record.name, "tar")
    # A read error mid-transfer only drops the connection.
    return FileResponse(path=str(record.object_path), media_type=TARBALL_MEDIA_TYPE)


async def serve_metadata(decision: LocalMetadata, store: RegistryStore) -> Response:
    record = decision.record
    body = json.dumps(record.metadata.to_document(), indent=1)
    await store.access_log.local(record.name, "metadata")
    return Response(content=body, media_type=ABBREVIATED_METADATA_MEDIA_TYPE)


async def forward(decision: Proxy, request: Request, store: RegistryStore, forwarder: ProxyForwarder) -> Response:
    await store.access_log.proxied(decision.package)
    return await forwarder.forward(request)


# ---------------------------------------------------------------------------
# Catch-all registry dispatch
# ---------------------------------------------------------------------------

async def handle_request(request: Request, store: RegistryStore, forwarder: ProxyForwarder) -> Response:
    """
    Serve a locally ingested package or relay the request upstream.

    Only GET is supported; every request is recorded in the access log
    before anything else happens.
    """
    target = request_target(request.scope)
    await store.access_log.request(request.method, target)

    if request.method != "GET":
        return Response(status_code=status.HTTP_405_METHOD_NOT_ALLOWED, headers={"Allow": "GET"})

    decision = classify(target, store)
    if isinstance(decision, LocalTarball):
        return await serve_tarball(decision, store)
    if isinstance(decision, LocalMetadata):
        return await serve_metadata(decision, store)
    return await forward(decision, request, store, forwarder)


class RegistryMiddleware:
    """
    Answers every HTTP request before routing, whatever its method or path
    bytes (``PROPFIND``, ``%0A``), so each one reaches the access log.
    """

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        request = Request(scope, receive)
        response = await handle_request(request, get_store(request), get_forwarder(request))
        await response(scope, receive, send)
