"""
Configuration for the registry proxy.

Settings come from environment variables, an optional YAML file and explicit
command-line overrides. Every configured package must resolve to an archive
path; a missing source is a fatal startup error.
"""

from __future__ import annotations

import logging
import os
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import yaml
from pydantic import BaseModel, Field

from registry_proxy.domain.errors import ConfigurationError

logger = logging.getLogger(__name__)

WORK_DIR_ENV_VAR = "REGISTRY_PROXY_WORK_DIR"
UPSTREAM_ENV_VAR = "REGISTRY_PROXY_UPSTREAM"
PACKAGES_ENV_VAR = "REGISTRY_PROXY_PACKAGES"
LOG_LEVEL_ENV_VAR = "REGISTRY_PROXY_LOG_LEVEL"

PUBLIC_NPM_REGISTRY = "https://registry.npmjs.org"
DEFAULT_WORK_DIR = Path(".registry-proxy")
DEFAULT_HOST = "127.0.0.1"


def archive_env_var(package: str) -> str:
    """
    Environment variable holding the archive path of a package,
    e.g. ``playwright-core`` -> ``PLAYWRIGHT_CORE_TGZ``.
    """
    base = package.replace("@", "")
    base = re.sub(r"[^A-Za-z0-9]", "_", base).upper()
    return f"{base}_TGZ"


def parse_package_option(value: str) -> Tuple[str, str]:
    """Parse a ``name=path`` command-line option."""
    name, sep, path = value.partition("=")
    name = name.strip()
    path = path.strip()
    if not sep or not name or not path:
        raise ConfigurationError(f"Invalid package option {value!r}, expected NAME=PATH")
    return name, path


class RegistrySettings(BaseModel):
    """
    Effective configuration of one registry proxy process.
    """

    work_dir: Path = Field(
        default=DEFAULT_WORK_DIR,
        description="Private working directory for objects/, access.log and registry.url.txt.",
    )
    upstream_url: str = Field(
        default=PUBLIC_NPM_REGISTRY,
        description="Registry that receives every request for a package that is not served locally.",
    )
    host: str = Field(
        default=DEFAULT_HOST,
        description="Loopback interface the server binds to; the port is always ephemeral.",
    )
    packages: Dict[str, Path] = Field(
        default_factory=dict,
        description="Package name -> path of the .tgz archive to serve for it.",
    )
    log_level: str = Field(default="INFO")

    @classmethod
    def load(
        cls,
        work_dir: Optional[Path] = None,
        upstream_url: Optional[str] = None,
        config_file: Optional[Path] = None,
        package_options: Iterable[str] = (),
        environ: Optional[Mapping[str, str]] = None,
    ) -> "RegistrySettings":
        """
        Build settings from (in order of precedence) explicit arguments,
        a YAML config file and the environment.
        """
        env = os.environ if environ is None else environ
        file_data = _load_config_file(config_file) if config_file else {}

        options = [parse_package_option(opt) for opt in package_options]
        if options:
            pairs = [(name, Path(path)) for name, path in options]
        elif "packages" in file_data:
            pairs = _packages_from_mapping(file_data.get("packages"), config_file)
        else:
            pairs = _packages_from_env(env)

        packages = _unique_packages(pairs)
        if not packages:
            raise ConfigurationError(
                f"No packages configured (use --package, a config file or {PACKAGES_ENV_VAR})"
            )

        resolved_work_dir = (
            work_dir
            or _optional_path(file_data.get("work_dir"))
            or _optional_path(env.get(WORK_DIR_ENV_VAR))
            or DEFAULT_WORK_DIR
        )
        resolved_upstream = (
            upstream_url
            or file_data.get("upstream_url")
            or env.get(UPSTREAM_ENV_VAR)
            or PUBLIC_NPM_REGISTRY
        )

        return cls(
            work_dir=Path(resolved_work_dir).expanduser(),
            upstream_url=str(resolved_upstream).rstrip("/"),
            host=str(file_data.get("host") or DEFAULT_HOST),
            packages=packages,
            log_level=str(env.get(LOG_LEVEL_ENV_VAR) or file_data.get("log_level") or "INFO").upper(),
        )


def resolve_work_dir(work_dir: Optional[Path] = None, environ: Optional[Mapping[str, str]] = None) -> Path:
    """Working directory for commands that only need to find the registry's files."""
    env = os.environ if environ is None else environ
    if work_dir:
        return Path(work_dir).expanduser()
    env_path = env.get(WORK_DIR_ENV_VAR)
    if env_path:
        return Path(env_path).expanduser()
    return DEFAULT_WORK_DIR


def _optional_path(value) -> Optional[Path]:
    return Path(value) if value else None


def _load_config_file(path: Path) -> dict:
    try:
        data = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise ConfigurationError(f"Config file not found: {path}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse config file {path}: {e}") from e
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    return data


def _packages_from_mapping(value, config_file: Optional[Path]) -> List[Tuple[str, Path]]:
    if not isinstance(value, dict):
        raise ConfigurationError(f"'packages' in {config_file} must be a mapping of name -> archive path")
    base_dir = Path(config_file).parent if config_file else Path(".")
    pairs = []
    for name, path in value.items():
        if not path:
            raise ConfigurationError(f"No archive configured for package {name}")
        archive = Path(str(path)).expanduser()
        if not archive.is_absolute():
            archive = base_dir / archive
        pairs.append((str(name), archive))
    return pairs


def _packages_from_env(env: Mapping[str, str]) -> List[Tuple[str, Path]]:
    names = [n.strip() for n in (env.get(PACKAGES_ENV_VAR) or "").split(",") if n.strip()]
    pairs = []
    for name in names:
        var = archive_env_var(name)
        path = env.get(var)
        if not path:
            raise ConfigurationError(f"Missing archive for package {name}: set {var}")
        pairs.append((name, Path(path).expanduser()))
    return pairs


def _unique_packages(pairs: List[Tuple[str, Path]]) -> Dict[str, Path]:
    packages: Dict[str, Path] = {}
    for name, path in pairs:
        if name in packages:
            raise ConfigurationError(f"Package {name} is configured more than once")
        packages[name] = path
    return packages
