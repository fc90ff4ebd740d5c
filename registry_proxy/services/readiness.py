"""
Helpers for processes that drive a registry running elsewhere.

They only rely on the files the server leaves in its working directory:
``registry.url.txt`` for readiness and ``access.log`` for verification.
"""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiofiles

from registry_proxy.domain.errors import LocalServeAssertionError, ReadinessTimeoutError
from registry_proxy.domain.models import AccessEntry
from registry_proxy.storage.access_log import ACCESS_LOG_FILENAME, log_package_name
from registry_proxy.storage.registry_store import READY_MARKER_FILENAME

logger = logging.getLogger(__name__)

DEFAULT_READY_TIMEOUT = 60.0
DEFAULT_POLL_INTERVAL = 0.5


async def wait_for_ready(
    work_dir: Path,
    timeout: float = DEFAULT_READY_TIMEOUT,
    interval: float = DEFAULT_POLL_INTERVAL,
) -> str:
    """
    Block until the registry in ``work_dir`` has published its address.

    Returns the base URL; raises ReadinessTimeoutError after ``timeout``
    seconds.
    """
    marker = Path(work_dir) / READY_MARKER_FILENAME
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout

    while True:
        if marker.is_file():
            async with aiofiles.open(marker, "r", encoding="utf-8") as f:
                url = (await f.read()).strip()
            logger.debug(f"Registry ready at {url}")
            return url

        remaining = deadline - loop.time()
        if remaining <= 0:
            raise ReadinessTimeoutError(marker, timeout)
        await asyncio.sleep(min(interval, remaining))


def read_access_log(work_dir: Path) -> str:
    path = Path(work_dir) / ACCESS_LOG_FILENAME
    # newline="" keeps a stray "\r" inside its line instead of starting a new one.
    with open(path, encoding="utf-8", newline="") as f:
        return f.read()


def assert_served_from_local(work_dir: Path, package: str) -> None:
    """
    Check that ``package`` was resolved and downloaded from its local archive.

    Both a metadata and a tarball request must have been served locally and no
    request for it may have gone upstream.
    """
    try:
        log_text = read_access_log(work_dir)
    except FileNotFoundError:
        raise LocalServeAssertionError(package, "no access log found", "")

    logged_name = log_package_name(package)
    served = {"metadata": False, "tar": False}
    proxied = False
    for line in log_text.split("\n"):
        if not line:
            continue
        entry = AccessEntry.parse(line)
        if entry.package != logged_name:
            continue
        if entry.kind == "LOCAL" and entry.detail in served:
            served[entry.detail] = True
        elif entry.kind == "PROXIED":
            proxied = True

    if proxied:
        raise LocalServeAssertionError(package, "it was proxied to the upstream registry", log_text)
    missing = [kind for kind, seen in served.items() if not seen]
    if missing:
        raise LocalServeAssertionError(package, f"no local {' or '.join(missing)} request", log_text)
