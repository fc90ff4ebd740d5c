"""
Turn a local package archive into a registry record.

For every configured package the ingestor:
- Extracts the archive with ``tar`` into a private scratch directory
- Reads and validates the package.json manifest
- Copies the archive bytes into the objects directory, named by their digest
- Builds the abbreviated metadata document served for the package
"""
from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import aiofiles
from pydantic import ValidationError

from registry_proxy.domain.errors import (
    ConfigurationError,
    ExtractionError,
    ManifestParseError,
    NameMismatchError,
)
from registry_proxy.domain.models import (
    DistInfo,
    PackageManifest,
    PackageMetadata,
    PackageRecord,
    VersionManifest,
)

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
TAR_COMMAND = "tar"
# `npm pack` puts everything under a top-level package/ directory.
PACKAGE_ROOT = "package"
MANIFEST_FILENAME = "package.json"


def relative_tarball_path(name: str, digest: str) -> str:
    """Tarball path relative to the registry root: ``<name>/-/<digest>.tgz``."""
    return f"{quote(name, safe='')}/-/{digest}.tgz"


class ArchiveIngestor:
    """
    Ingests archives into ``objects_dir``.

    Each call to :meth:`ingest` touches only its own scratch directory and its
    own object file, so calls for distinct packages can run concurrently.
    """

    def __init__(self, objects_dir: Path, tar_command: str = TAR_COMMAND):
        self.objects_dir = Path(objects_dir)
        self.tar_command = tar_command

    async def ingest(self, name: str, archive_path: Path) -> PackageRecord:
        archive_path = Path(archive_path)
        if not archive_path.is_file():
            raise ConfigurationError(f"Archive for package {name} not found: {archive_path}")

        logger.info(f"Ingesting {name} from {archive_path}")
        with tempfile.TemporaryDirectory(prefix="registry-proxy-") as scratch:
            scratch_dir = Path(scratch)
            await self._extract(name, archive_path, scratch_dir)
            manifest = self._read_manifest(name, scratch_dir)

        if manifest.name != name:
            raise NameMismatchError(name, manifest.name)

        object_path, shasum, integrity = await self._store_object(archive_path)
        relative_tarball = relative_tarball_path(name, shasum)

        dist = DistInfo(tarball=relative_tarball, shasum=shasum, integrity=integrity)
        metadata = PackageMetadata(
            dist_tags={"latest": manifest.version},
            modified=datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            name=name,
            versions={manifest.version: VersionManifest.from_manifest(manifest, dist)},
        )

        logger.info(f"Ingested {name}@{manifest.version} ({shasum})")
        return PackageRecord(
            name=name,
            version=manifest.version,
            digest=shasum,
            object_path=object_path,
            relative_tarball=relative_tarball,
            metadata=metadata,
        )

    # ========================================================================
    # Extraction
    # ========================================================================

    async def _extract(self, name: str, archive_path: Path, target_dir: Path) -> None:
        try:
            process = await asyncio.create_subprocess_exec(
                self.tar_command,
                "-xzf",
                str(archive_path),
                "-C",
                str(target_dir),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise ExtractionError(name, 127, f"{self.tar_command} not found: {e}") from e
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        if process.returncode != 0:
            output = (stderr or stdout).decode("utf-8", errors="replace").strip()
            logger.error(f"Failed to extract {archive_path} for {name}: {output}")
            raise ExtractionError(name, process.returncode, output)

    def _find_manifest(self, extracted_dir: Path) -> Optional[Path]:
        for candidate in (extracted_dir / PACKAGE_ROOT / MANIFEST_FILENAME, extracted_dir / MANIFEST_FILENAME):
            if candidate.is_file():
                return candidate
        return None

    def _read_manifest(self, name: str, extracted_dir: Path) -> PackageManifest:
        manifest_path = self._find_manifest(extracted_dir)
        if manifest_path is None:
            raise ManifestParseError(name, f"no {MANIFEST_FILENAME} found in archive")

        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestParseError(name, f"malformed {MANIFEST_FILENAME}: {e}") from e
        if not isinstance(data, dict):
            raise ManifestParseError(name, f"{MANIFEST_FILENAME} is not a JSON object")

        try:
            return PackageManifest.model_validate(data)
        except ValidationError as e:
            raise ManifestParseError(name, f"invalid {MANIFEST_FILENAME}: {e}") from e

    # ========================================================================
    # Object Storage
    # ========================================================================

    async def _store_object(self, archive_path: Path) -> tuple[Path, str, str]:
        """
        Copy the archive into the objects directory while hashing it.

        The copy goes to a temporary file first and is renamed to
        ``<sha1>.tgz`` once the digest is known.
        """
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        tmp_path = self.objects_dir / f"{uuid.uuid4().hex}.tmp"
        sha1 = hashlib.sha1()
        sha512 = hashlib.sha512()

        try:
            async with aiofiles.open(archive_path, "rb") as src, aiofiles.open(tmp_path, "wb") as dst:
                while True:
                    chunk = await src.read(CHUNK_SIZE)
                    if not chunk:
                        break
                    sha1.update(chunk)
                    sha512.update(chunk)
                    await dst.write(chunk)

            shasum = sha1.hexdigest()
            object_path = self.objects_dir / f"{shasum}.tgz"
            tmp_path.replace(object_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink(missing_ok=True)

        integrity = "sha512-" + base64.b64encode(sha512.digest()).decode("ascii")
        return object_path, shasum, integrity
