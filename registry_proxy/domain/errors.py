"""
Exception hierarchy for the registry proxy.

Startup errors (configuration and ingestion) are fatal and abort the server
before it starts listening. Readiness and assertion errors are only raised to
the waiting caller and never affect a running server.
"""

from __future__ import annotations


class RegistryProxyError(Exception):
    """Base class for all registry proxy errors."""


class ConfigurationError(RegistryProxyError):
    """A required package archive source is missing or the package set is invalid."""


class IngestionError(RegistryProxyError):
    """An archive could not be turned into a package record."""

    def __init__(self, package: str, message: str):
        super().__init__(f"{package}: {message}")
        self.package = package


class ExtractionError(IngestionError):
    """The extraction subprocess exited with a non-zero status."""

    def __init__(self, package: str, returncode: int, output: str):
        super().__init__(package, f"failed to extract archive (exit code {returncode}): {output}")
        self.returncode = returncode
        self.output = output


class ManifestParseError(IngestionError):
    """The archive has no package.json, or it could not be parsed."""


class NameMismatchError(IngestionError):
    def __init__(self, package: str, manifest_name: str):
        super().__init__(
            package,
            f"package name mismatch: {package} is called {manifest_name} in its package.json",
        )
        self.manifest_name = manifest_name


class RegistryStateError(RegistryProxyError):
    """An operation was attempted in the wrong lifecycle phase."""


class ReadinessTimeoutError(RegistryProxyError):
    def __init__(self, marker_path, timeout: float):
        super().__init__(f"registry was not ready after {timeout:.1f}s (no {marker_path})")
        self.marker_path = marker_path
        self.timeout = timeout


class LocalServeAssertionError(RegistryProxyError):
    """A package was not served entirely from its local archive."""

    def __init__(self, package: str, reason: str, log_text: str):
        super().__init__(f"{package} was not served from the local archive: {reason}")
        self.package = package
        self.reason = reason
        self.log_text = log_text
