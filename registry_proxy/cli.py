"""registry-proxy CLI: run the registry and verify how packages were served."""

import asyncio
import sys
from pathlib import Path

import click

from registry_proxy import __version__
from registry_proxy.core.config import RegistrySettings, resolve_work_dir
from registry_proxy.domain.errors import (
    LocalServeAssertionError,
    ReadinessTimeoutError,
    RegistryProxyError,
)
from registry_proxy.services.readiness import (
    DEFAULT_POLL_INTERVAL,
    DEFAULT_READY_TIMEOUT,
    assert_served_from_local,
    wait_for_ready,
)

work_dir_option = click.option(
    "--work-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Registry working directory (default: $REGISTRY_PROXY_WORK_DIR or ./.registry-proxy)",
)


@click.group()
@click.version_option(version=__version__)
def main():
    """npm registry proxy that serves selected packages from local archives."""


# ── Start ────────────────────────────────────────────────────────────


@main.command()
@work_dir_option
@click.option("--config", "config_file", type=click.Path(dir_okay=False, path_type=Path), default=None,
              help="YAML file with a 'packages' mapping of name -> archive path")
@click.option("--package", "packages", multiple=True, metavar="NAME=PATH",
              help="Serve NAME from the archive at PATH (repeatable)")
@click.option("--upstream", default=None, help="Upstream registry URL")
def start(work_dir, config_file, packages, upstream):
    """Ingest the configured archives and serve until interrupted."""
    from registry_proxy.main import configure_logging
    from registry_proxy.server import RegistryServer

    try:
        settings = RegistrySettings.load(
            work_dir=work_dir,
            upstream_url=upstream,
            config_file=config_file,
            package_options=packages,
        )
    except RegistryProxyError as e:
        raise click.ClickException(str(e))

    configure_logging(settings.log_level)
    server = RegistryServer(settings)
    try:
        asyncio.run(server.run())
    except RegistryProxyError as e:
        raise click.ClickException(str(e))
    except KeyboardInterrupt:
        click.echo("Interrupted", err=True)


# ── Wait for ready ───────────────────────────────────────────────────


@main.command("wait-for-ready")
@work_dir_option
@click.option("--timeout", type=float, default=DEFAULT_READY_TIMEOUT, show_default=True,
              help="Seconds to wait before giving up")
@click.option("--interval", type=float, default=DEFAULT_POLL_INTERVAL, show_default=True,
              help="Seconds between checks")
def wait_for_ready_command(work_dir, timeout, interval):
    """Block until the registry is ready, then print its URL."""
    directory = resolve_work_dir(work_dir)
    try:
        url = asyncio.run(wait_for_ready(directory, timeout=timeout, interval=interval))
    except ReadinessTimeoutError as e:
        raise click.ClickException(str(e))
    click.echo(url)


# ── Assert served locally ────────────────────────────────────────────


@main.command("assert-served-from-local-tgz")
@click.argument("package")
@work_dir_option
def assert_served_from_local_tgz(package, work_dir):
    """Succeed only if PACKAGE was served from its local archive and never proxied."""
    directory = resolve_work_dir(work_dir)
    try:
        assert_served_from_local(directory, package)
    except LocalServeAssertionError as e:
        click.echo(str(e), err=True)
        click.echo("Access log:", err=True)
        click.echo(e.log_text or "(empty)", err=True)
        sys.exit(1)
    click.echo(f"{package} was served from the local archive")


if __name__ == "__main__":
    main()
