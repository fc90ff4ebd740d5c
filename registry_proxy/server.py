"""
Registry server lifecycle.

uninitialized -> ingesting -> bound -> ready -> serving -> closed

The listening socket is bound on an ephemeral loopback port before uvicorn
starts, so the final address is known while tarball URLs are rewritten. The
readiness marker is written only after uvicorn is accepting connections.
"""
from __future__ import annotations

import asyncio
import logging
import socket
from typing import Optional

import uvicorn

from registry_proxy.core.config import RegistrySettings
from registry_proxy.main import create_app
from registry_proxy.services.ingestor import ArchiveIngestor
from registry_proxy.services.proxy import ProxyForwarder
from registry_proxy.storage.registry_store import RegistryStore

logger = logging.getLogger(__name__)

STARTUP_POLL_INTERVAL = 0.01


def format_address(host: str, port: int) -> str:
    if ":" in host:
        host = f"[{host}]"
    return f"http://{host}:{port}"


class RegistryServer:
    """
    Owns the store, the forwarder and the listening socket for one run.
    """

    def __init__(
        self,
        settings: RegistrySettings,
        forwarder: Optional[ProxyForwarder] = None,
        ingestor: Optional[ArchiveIngestor] = None,
    ):
        self.settings = settings
        self.store = RegistryStore(settings.work_dir)
        self.ingestor = ingestor or ArchiveIngestor(self.store.objects_dir)
        self.forwarder = forwarder or ProxyForwarder(settings.upstream_url)

        self._socket: Optional[socket.socket] = None
        self._server: Optional[uvicorn.Server] = None
        self._stop_requested = False

    @property
    def address(self) -> Optional[str]:
        return self.store.address

    def stop(self) -> None:
        """Ask a running server to shut down."""
        self._stop_requested = True
        if self._server is not None:
            self._server.should_exit = True

    async def run(self) -> None:
        """
        Ingest, bind, publish readiness and serve until stopped.

        Ingestion or configuration failures propagate before any socket is
        bound.
        """
        try:
            await self.store.populate(self.ingestor, self.settings.packages)

            self._socket = self._bind_socket()
            host, port = self._socket.getsockname()[:2]
            self.store.bind(format_address(self.settings.host, port))
            logger.info(f"Listening on {host}:{port}")

            app = create_app(self.store, self.forwarder)
            config = uvicorn.Config(app, log_config=None, lifespan="off", access_log=False)
            self._server = uvicorn.Server(config)
            if self._stop_requested:
                self._server.should_exit = True

            serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))
            await self._wait_until_started(serve_task)

            self.store.mark_ready()
            self.store.mark_serving()
            await serve_task
        finally:
            await self._close()

    def _bind_socket(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.settings.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.settings.host, 0))
        except OSError:
            sock.close()
            raise
        return sock

    async def _wait_until_started(self, serve_task: asyncio.Task) -> None:
        while not self._server.started:
            if serve_task.done():
                # Surfaces the startup exception, if any.
                await serve_task
                raise RuntimeError("Registry server exited before it started serving")
            await asyncio.sleep(STARTUP_POLL_INTERVAL)

    async def _close(self) -> None:
        try:
            await self.forwarder.aclose()
        except Exception as e:
            logger.error(f"Failed to close upstream client: {e}")

        if self._socket is not None:
            try:
                self._socket.close()
            except OSError as e:
                logger.error(f"Failed to close listening socket: {e}")
            self._socket = None

        self.store.mark_closed()
        logger.info("Registry server closed")
