from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import List
from urllib.parse import quote

import aiofiles

logger = logging.getLogger(__name__)

ACCESS_LOG_FILENAME = "access.log"

_CONTROL_CHARS = re.compile(r"[\x00-\x20\x7f]")


def log_package_name(name: str) -> str:
    """
    Form in which a package name is written to the access log.

    Ordinary and scoped names are unchanged; anything that could break a
    line apart (control characters, spaces) is percent-encoded.
    """
    return quote(name, safe="@/")


def _escape_target(target: str) -> str:
    return _CONTROL_CHARS.sub(lambda m: "%{:02X}".format(ord(m.group(0))), target)


class AccessLog:
    """
    Append-only audit trail of how requests were handled.

    Lines are kept in memory and appended to ``access.log``. Each append is a
    single write of a complete line, serialized by a lock so concurrent
    handlers never interleave partial lines. Write failures propagate.
    """

    def __init__(self, path: Path):
        self.path = path
        self._lines: List[str] = []
        self._lock = asyncio.Lock()

    @property
    def lines(self) -> List[str]:
        return list(self._lines)

    def touch(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    async def append(self, line: str) -> None:
        if "\n" in line or "\r" in line:
            raise ValueError(f"Access log line must not contain line breaks: {line!r}")
        async with self._lock:
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(line + "\n")
            self._lines.append(line)
        logger.debug(line)

    async def request(self, method: str, raw_path: str) -> None:
        await self.append(f"REQUEST: {_escape_target(method)} {_escape_target(raw_path)}")

    async def local(self, package: str, kind: str) -> None:
        await self.append(f"LOCAL {log_package_name(package)} {kind}")

    async def proxied(self, package: str) -> None:
        await self.append(f"PROXIED {log_package_name(package)}")
