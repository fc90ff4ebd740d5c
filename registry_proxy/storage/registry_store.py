from __future__ import annotations

import asyncio
import logging
import os
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional

from registry_proxy.domain.errors import RegistryStateError
from registry_proxy.domain.models import PackageRecord, ServerPhase
from registry_proxy.storage.access_log import ACCESS_LOG_FILENAME, AccessLog

if TYPE_CHECKING:
    from registry_proxy.services.ingestor import ArchiveIngestor

logger = logging.getLogger(__name__)

OBJECTS_DIRNAME = "objects"
READY_MARKER_FILENAME = "registry.url.txt"


class RegistryStore:
    """
    Process-wide registry state: the ingested package records, the server
    address and the access log.

    One instance is created at startup and handed to the router and the
    forwarder. Records are only added during :meth:`populate`; afterwards the
    only mutation is the one-time tarball URL rewrite done by :meth:`bind`.
    """

    def __init__(self, work_dir: Path):
        self.work_dir = Path(work_dir)
        self.objects_dir = self.work_dir / OBJECTS_DIRNAME
        self.marker_path = self.work_dir / READY_MARKER_FILENAME
        self.access_log = AccessLog(self.work_dir / ACCESS_LOG_FILENAME)

        self._records: Dict[str, PackageRecord] = {}
        self._address: Optional[str] = None
        self._phase = ServerPhase.UNINITIALIZED

    # ========================================================================
    # Lifecycle
    # ========================================================================

    @property
    def phase(self) -> ServerPhase:
        return self._phase

    @property
    def address(self) -> Optional[str]:
        return self._address

    def _advance(self, phase: ServerPhase) -> None:
        # Phases advance one step at a time; closing is handled by mark_closed.
        if phase.order != self._phase.order + 1:
            raise RegistryStateError(f"Cannot move from {self._phase.value} to {phase.value}")
        logger.debug(f"Registry phase: {self._phase.value} -> {phase.value}")
        self._phase = phase

    def prepare(self) -> None:
        """Create the working area. A stale readiness marker is removed."""
        self.objects_dir.mkdir(parents=True, exist_ok=True)
        self.access_log.touch()
        if self.marker_path.exists():
            self.marker_path.unlink()

    async def populate(self, ingestor: "ArchiveIngestor", packages: Mapping[str, Path]) -> List[PackageRecord]:
        """
        Ingest every configured package concurrently.

        The first failure propagates and the ingestions still running are
        cancelled; startup must not continue with a partial package set.
        """
        self._advance(ServerPhase.INGESTING)
        self.prepare()

        names = list(packages)
        tasks = [asyncio.create_task(ingestor.ingest(name, Path(packages[name]))) for name in names]
        try:
            records = await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        for name, record in zip(names, records):
            self._records[name] = record

        logger.info(f"Ingested {len(records)} package(s): {', '.join(names)}")
        return list(records)

    def bind(self, address: str) -> None:
        """
        Record the server address and rewrite every tarball URL to absolute
        form. Must complete before the registry is marked ready.
        """
        self._advance(ServerPhase.BOUND)
        self._address = address.rstrip("/")
        for record in self._records.values():
            url = record.rewrite_tarball_url(self._address)
            logger.debug(f"Tarball of {record.name}: {url}")

    def mark_ready(self) -> None:
        """
        Publish the readiness marker. The file appears atomically so a waiter
        never reads a partial URL.
        """
        if self._address is None:
            raise RegistryStateError("Cannot mark the registry ready before it is bound")
        self._advance(ServerPhase.READY)

        tmp_path = self.marker_path.with_name(self.marker_path.name + ".tmp")
        tmp_path.write_text(self._address, encoding="utf-8")
        os.replace(tmp_path, self.marker_path)
        logger.info(f"Registry ready at {self._address}")

    def mark_serving(self) -> None:
        self._advance(ServerPhase.SERVING)

    def mark_closed(self) -> None:
        if self._phase is not ServerPhase.CLOSED:
            self._phase = ServerPhase.CLOSED

    # ========================================================================
    # Lookup
    # ========================================================================

    def __contains__(self, name: object) -> bool:
        return name in self._records

    def __len__(self) -> int:
        return len(self._records)

    def get(self, name: str) -> Optional[PackageRecord]:
        return self._records.get(name)

    def names(self) -> List[str]:
        return sorted(self._records)

    def records(self) -> List[PackageRecord]:
        return [self._records[name] for name in self.names()]

    def find_by_digest(self, digest: str) -> Optional[PackageRecord]:
        """Look a record up by the content digest of its archive."""
        digest = digest.lower()
        if digest.endswith(".tgz"):
            digest = digest[: -len(".tgz")]
        for record in self._records.values():
            if record.digest == digest:
                return record
        return None
