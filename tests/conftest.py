from __future__ import annotations

import io
import json
import tarfile
from pathlib import Path
from typing import Optional

import httpx
import pytest

from registry_proxy.services.ingestor import ArchiveIngestor
from registry_proxy.services.proxy import ProxyForwarder
from registry_proxy.storage.registry_store import RegistryStore

UPSTREAM_URL = "https://registry.example.org"


def _add_file(tar: tarfile.TarFile, name: str, data: bytes) -> None:
    info = tarfile.TarInfo(name)
    info.size = len(data)
    info.mtime = 0
    tar.addfile(info, io.BytesIO(data))


def write_package_tgz(
    path: Path,
    name: str,
    version: str = "1.0.0",
    manifest: Optional[dict] = None,
    manifest_bytes: Optional[bytes] = None,
    root: str = "package",
) -> Path:
    """Write an npm-pack style archive with a package.json under ``root``."""
    if manifest_bytes is None:
        data = {"name": name, "version": version}
        data.update(manifest or {})
        manifest_bytes = json.dumps(data).encode("utf-8")

    prefix = f"{root}/" if root else ""
    with tarfile.open(path, "w:gz") as tar:
        _add_file(tar, f"{prefix}package.json", manifest_bytes)
        _add_file(tar, f"{prefix}index.js", f"module.exports = '{name}';\n".encode("utf-8"))
    return path


@pytest.fixture
def make_tgz(tmp_path):
    archives = tmp_path / "archives"
    archives.mkdir()

    def _make(name: str, version: str = "1.0.0", filename: Optional[str] = None, **kwargs) -> Path:
        filename = filename or f"{name.replace('/', '-').lstrip('@')}-{version}.tgz"
        return write_package_tgz(archives / filename, name, version, **kwargs)

    return _make


@pytest.fixture
def work_dir(tmp_path) -> Path:
    return tmp_path / "registry"


@pytest.fixture
def store(work_dir) -> RegistryStore:
    return RegistryStore(work_dir)


@pytest.fixture
def ingestor(store) -> ArchiveIngestor:
    return ArchiveIngestor(store.objects_dir)


class _UpstreamBody(httpx.AsyncByteStream):
    """Response body that is still unread, as it would be from a real upstream."""

    def __init__(self, data: bytes):
        self._data = data

    async def __aiter__(self):
        yield self._data


class UpstreamRecorder:
    """Fake upstream registry behind an httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail:
            raise httpx.ConnectError("upstream unreachable", request=request)
        body = json.dumps({"upstream": True, "path": request.url.raw_path.decode("ascii")}).encode("utf-8")
        return httpx.Response(
            200,
            headers={
                "content-type": "application/json",
                "content-length": str(len(body)),
                "x-upstream": "yes",
            },
            stream=_UpstreamBody(body),
        )

    def forwarder(self) -> ProxyForwarder:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return ProxyForwarder(UPSTREAM_URL, client=client)


@pytest.fixture
def upstream() -> UpstreamRecorder:
    return UpstreamRecorder()
