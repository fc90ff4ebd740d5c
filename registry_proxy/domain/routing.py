"""
Request classification.

Registry paths look like ``/<name>``, ``/<name>/<anything>`` or
``/<name>/<anything>/<tarball>``. The middle segment (``-`` for tarballs, a
version or dist-tag otherwise) is not interpreted. Classification turns a raw
request path into one of three decisions, each consumed by its own handler.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Tuple, Union
from urllib.parse import quote, unquote

from registry_proxy.domain.models import PackageRecord
from registry_proxy.storage.registry_store import RegistryStore


@dataclass(frozen=True)
class LocalTarball:
    record: PackageRecord
    filename: str

    @property
    def matches(self) -> bool:
        return self.filename == self.record.tarball_filename


@dataclass(frozen=True)
class LocalMetadata:
    record: PackageRecord


@dataclass(frozen=True)
class Proxy:
    package: str


RouteDecision = Union[LocalTarball, LocalMetadata, Proxy]


def request_target(scope: Mapping[str, Any]) -> str:
    """
    The undecoded path of an ASGI request, with ``?query`` appended when a
    query string is present.
    """
    raw_path = scope.get("raw_path")
    if raw_path:
        path = raw_path.decode("latin-1")
    else:
        path = quote(scope.get("path", "/"), safe="/%@:+$,;=&!~*'()")
    # Some ASGI servers include the query in raw_path.
    path = path.split("?", 1)[0]
    query = (scope.get("query_string") or b"").decode("latin-1")
    return f"{path}?{query}" if query else path


def _decode(segment: str) -> str:
    return unquote(segment, encoding="utf-8", errors="strict")


def split_registry_path(raw_path: str) -> Tuple[str, Optional[str]]:
    """
    Return the decoded package name and tarball filename (if any) of a raw
    request path. Segments are decoded after splitting, so ``@scope%2fname``
    stays one segment.

    Raises ``ValueError`` if a segment is not valid percent-encoded UTF-8.
    """
    path = raw_path.split("?", 1)[0]
    segments = path.split("/")
    name = _decode(segments[1]) if len(segments) > 1 else ""
    tarball = _decode(segments[3]) if len(segments) > 3 and segments[3] else None
    return name, tarball


def classify(raw_path: str, store: RegistryStore) -> RouteDecision:
    try:
        name, tarball = split_registry_path(raw_path)
    except (UnicodeDecodeError, ValueError):
        return Proxy(package=raw_path)

    record = store.get(name) if name else None
    if record is None:
        return Proxy(package=name)
    if tarball is not None:
        return LocalTarball(record=record, filename=tarball)
    return LocalMetadata(record=record)
