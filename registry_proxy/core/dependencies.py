from fastapi import Request

from registry_proxy.services.proxy import ProxyForwarder
from registry_proxy.storage.registry_store import RegistryStore


def get_store(request: Request) -> RegistryStore:
    return request.app.state.store


def get_forwarder(request: Request) -> ProxyForwarder:
    return request.app.state.forwarder
