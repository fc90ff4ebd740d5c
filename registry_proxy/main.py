import logging

from fastapi import FastAPI

from registry_proxy.api.registry import RegistryMiddleware
from registry_proxy.services.proxy import ProxyForwarder
from registry_proxy.storage.registry_store import RegistryStore

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )


def create_app(store: RegistryStore, forwarder: ProxyForwarder) -> FastAPI:
    """
    Build the registry application around an already populated store.

    The store and forwarder are owned by the caller; the app only keeps
    references to them for request handling.
    """
    app = FastAPI(
        title="npm Registry Proxy",
        version="0.1.0",
        description="Serves locally ingested npm packages and proxies everything else upstream.",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.store = store
    app.state.forwarder = forwarder
    app.add_middleware(RegistryMiddleware)
    logger.debug(f"Registry app created for packages: {', '.join(store.names())}")
    return app
