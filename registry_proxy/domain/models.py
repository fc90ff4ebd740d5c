"""
Pydantic models for the registry proxy.

This module defines the data models used throughout the application:
- The subset of a package.json manifest that the registry republishes
- The npm abbreviated metadata document ("corgi" format)
- The in-memory record kept for every ingested package
- The server lifecycle phases

Wire names that are not valid Python identifiers (``dist-tags``,
``_hasShrinkwrap``, camelCase dependency fields) are declared as aliases, so
documents must be dumped with ``by_alias=True``.
"""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, PrivateAttr, field_validator

from registry_proxy.domain.errors import RegistryStateError


# ---------------------------------------------------------------------------
# Manifest Models
# ---------------------------------------------------------------------------


class PackageManifest(BaseModel):
    """
    The fields of an archive's package.json that end up in registry metadata.

    Every optional field defaults to an empty mapping/sequence when it is
    absent or null. Unknown keys are ignored.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    version: str
    dependencies: Dict[str, str] = Field(default_factory=dict)
    dev_dependencies: Dict[str, str] = Field(default_factory=dict, alias="devDependencies")
    peer_dependencies: Dict[str, str] = Field(default_factory=dict, alias="peerDependencies")
    optional_dependencies: Dict[str, str] = Field(default_factory=dict, alias="optionalDependencies")
    bundle_dependencies: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("bundleDependencies", "bundledDependencies", "bundle_dependencies"),
    )
    bin: Dict[str, str] = Field(default_factory=dict)
    directories: Dict[str, Any] = Field(default_factory=dict)
    engines: Dict[str, Any] = Field(default_factory=dict)

    @field_validator(
        "dependencies",
        "dev_dependencies",
        "peer_dependencies",
        "optional_dependencies",
        "directories",
        "engines",
        mode="before",
    )
    @classmethod
    def _none_to_empty_mapping(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("bundle_dependencies", mode="before")
    @classmethod
    def _normalize_bundle_dependencies(cls, value: Any, info) -> Any:
        # `true` means "bundle every dependency".
        if value is True:
            return sorted((info.data.get("dependencies") or {}).keys())
        if not isinstance(value, list):
            return []
        return value

    @field_validator("bin", mode="before")
    @classmethod
    def _normalize_bin(cls, value: Any, info) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            # A single executable is named after the unscoped package name.
            name = str(info.data.get("name") or "")
            return {name.rsplit("/", 1)[-1]: value}
        return value


# ---------------------------------------------------------------------------
# Abbreviated Metadata Models
# ---------------------------------------------------------------------------


class DistInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    tarball: str
    shasum: str
    integrity: str


class VersionManifest(BaseModel):
    """A single entry of the ``versions`` map of abbreviated metadata."""

    model_config = ConfigDict(populate_by_name=True)

    name: str
    version: str
    has_shrinkwrap: bool = Field(default=False, alias="_hasShrinkwrap")
    dependencies: Dict[str, str] = Field(default_factory=dict)
    optional_dependencies: Dict[str, str] = Field(default_factory=dict, alias="optionalDependencies")
    dev_dependencies: Dict[str, str] = Field(default_factory=dict, alias="devDependencies")
    bundle_dependencies: List[str] = Field(default_factory=list, alias="bundleDependencies")
    peer_dependencies: Dict[str, str] = Field(default_factory=dict, alias="peerDependencies")
    bin: Dict[str, str] = Field(default_factory=dict)
    directories: Dict[str, Any] = Field(default_factory=dict)
    dist: DistInfo
    engines: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_manifest(cls, manifest: PackageManifest, dist: DistInfo) -> "VersionManifest":
        return cls(
            name=manifest.name,
            version=manifest.version,
            dependencies=dict(manifest.dependencies),
            optional_dependencies=dict(manifest.optional_dependencies),
            dev_dependencies=dict(manifest.dev_dependencies),
            bundle_dependencies=list(manifest.bundle_dependencies),
            peer_dependencies=dict(manifest.peer_dependencies),
            bin=dict(manifest.bin),
            directories=dict(manifest.directories),
            dist=dist,
            engines=dict(manifest.engines),
        )


class PackageMetadata(BaseModel):
    """
    Abbreviated package metadata, served with the
    ``application/vnd.npm.install-v1+json`` content type.
    """

    model_config = ConfigDict(populate_by_name=True)

    dist_tags: Dict[str, str] = Field(alias="dist-tags")
    modified: str
    name: str
    versions: Dict[str, VersionManifest]

    def to_document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


# ---------------------------------------------------------------------------
# Registry Records
# ---------------------------------------------------------------------------


class PackageRecord(BaseModel):
    """
    One ingested package.

    ``relative_tarball`` is the tarball path relative to the registry root.
    The tarball URL inside ``metadata`` starts out equal to it and is rewritten
    to an absolute URL exactly once, when the server address is known.
    """

    name: str
    version: str
    digest: str
    object_path: Path
    relative_tarball: str
    metadata: PackageMetadata

    _rewritten: bool = PrivateAttr(default=False)

    @property
    def tarball_filename(self) -> str:
        return self.object_path.name

    @property
    def tarball_url(self) -> str:
        return self.metadata.versions[self.version].dist.tarball

    @property
    def is_rewritten(self) -> bool:
        return self._rewritten

    def rewrite_tarball_url(self, address: str) -> str:
        if self._rewritten:
            raise RegistryStateError(f"Tarball URL of {self.name} was already rewritten")
        url = f"{address.rstrip('/')}/{self.relative_tarball}"
        self.metadata.versions[self.version].dist.tarball = url
        self._rewritten = True
        return url


class ServerPhase(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    INGESTING = "ingesting"
    BOUND = "bound"
    READY = "ready"
    SERVING = "serving"
    CLOSED = "closed"

    @property
    def order(self) -> int:
        return list(ServerPhase).index(self)


class AccessEntry(BaseModel):
    """Structured form of an ``access.log`` line."""

    kind: str
    package: Optional[str] = None
    detail: Optional[str] = None

    @classmethod
    def parse(cls, line: str) -> "AccessEntry":
        line = line.rstrip("\n")
        if line.startswith("REQUEST: "):
            return cls(kind="REQUEST", detail=line[len("REQUEST: "):])
        parts = line.split(" ")
        if parts[0] == "LOCAL" and len(parts) >= 3:
            return cls(kind="LOCAL", package=" ".join(parts[1:-1]), detail=parts[-1])
        if parts[0] == "PROXIED" and len(parts) >= 2:
            return cls(kind="PROXIED", package=" ".join(parts[1:]))
        return cls(kind="UNKNOWN", detail=line)
