import logging
import os
from urllib.parse import urlparse, urlunparse

import click
from rich.logging import RichHandler
from rich.table import Table

from .constants import (
    DEFAULT_BINARY_NAME,
    DEFAULT_DRY_RUN_PORT,
    DEFAULT_MANAGEMENT_PATH,
    DEFAULT_PROXY_ARGS,
    DEFAULT_PROXY_PORT,
    DEFAULT_RELEASE_FEED_URL,
    DOWNLOAD_TIMEOUT,
    JOURNAL_FILE,
    MAX_INSTALLED_VERSIONS,
    METADATA_TIMEOUT,
    PROBE_TIMEOUT,
    STARTUP_ATTEMPTS,
    STARTUP_INTERVAL,
)
from .core import UpgradeOrchestrator, console
from .errors import (
    CannotDeleteCurrentVersion,
    InvalidStateTransition,
    UpgradeError,
    VersionNotInstalled,
)
from .errors_catalog import actionable_error
from .models import CandidateVersion, OrchestratorState
from .services.compatibility import CompatibilityProbe
from .services.config_loader import ConfigLoader
from .services.download import DownloadService
from .services.filesystem import FileSystemService
from .services.http_session import build_session
from .services.journal import UpgradeJournal
from .services.management_client import ManagementClient
from .services.release_catalog import PlatformMatcher, ReleaseCatalog
from .services.supervisor import ProcessSupervisor
from .services.validation import ValidationService
from .services.version_store import VersionStore

DEFAULT_CONFIG_FILE = ".proxyupgrader.yml"

logger = logging.getLogger("proxyupgrader")


def _resolve_option(cli_value, config, key, default=None):
    if cli_value is not None:
        return cli_value
    if key in config:
        return config[key]
    return default


def _with_port(url: str, port: int) -> str:
    parsed = urlparse(url)
    host = parsed.hostname or "127.0.0.1"
    return urlunparse(parsed._replace(netloc=f"{host}:{port}"))


logging.basicConfig(
    level="INFO",
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(rich_tracebacks=True, show_level=False, show_path=False)],
)


def resolve_settings(cli_values, config_values):
    proxy_port = int(_resolve_option(None, config_values, "proxy_port", DEFAULT_PROXY_PORT))
    dry_run_port = int(_resolve_option(None, config_values, "dry_run_port", DEFAULT_DRY_RUN_PORT))
    management_url = _resolve_option(
        cli_values.get("management_url"),
        config_values,
        "management_url",
        f"http://127.0.0.1:{proxy_port}{DEFAULT_MANAGEMENT_PATH}",
    )
    return {
        "root_dir": os.path.expanduser(
            _resolve_option(
                cli_values.get("root_dir"),
                config_values,
                "root_dir",
                os.path.join("~", ".proxyupgrader"),
            )
        ),
        "binary_name": _resolve_option(None, config_values, "binary_name", DEFAULT_BINARY_NAME),
        "management_url": management_url,
        "management_key": _resolve_option(
            cli_values.get("management_key"), config_values, "management_key"
        ),
        "release_feed_url": _resolve_option(
            cli_values.get("release_feed_url"),
            config_values,
            "release_feed_url",
            DEFAULT_RELEASE_FEED_URL,
        ),
        "proxy_port": proxy_port,
        "dry_run_port": dry_run_port,
        "max_installed_versions": int(
            _resolve_option(None, config_values, "max_installed_versions", MAX_INSTALLED_VERSIONS)
        ),
        "download_timeout": float(
            _resolve_option(None, config_values, "download_timeout", DOWNLOAD_TIMEOUT)
        ),
        "metadata_timeout": float(
            _resolve_option(None, config_values, "metadata_timeout", METADATA_TIMEOUT)
        ),
        "probe_timeout": float(_resolve_option(None, config_values, "probe_timeout", PROBE_TIMEOUT)),
        "startup_attempts": int(
            _resolve_option(None, config_values, "startup_attempts", STARTUP_ATTEMPTS)
        ),
        "startup_interval": float(
            _resolve_option(None, config_values, "startup_interval", STARTUP_INTERVAL)
        ),
        "include_prereleases": bool(
            _resolve_option(None, config_values, "include_prereleases", True)
        ),
        "allow_insecure_http": bool(
            _resolve_option(
                cli_values.get("allow_insecure_http"),
                config_values,
                "allow_insecure_http",
                False,
            )
        ),
        "proxy_args": list(_resolve_option(None, config_values, "proxy_args", DEFAULT_PROXY_ARGS)),
        "verbose": bool(_resolve_option(cli_values.get("verbose"), config_values, "verbose", False)),
        "log_file": _resolve_option(cli_values.get("log_file"), config_values, "log_file"),
    }


def build_orchestrator(settings) -> UpgradeOrchestrator:
    root_dir = settings["root_dir"]
    filesystem_service = FileSystemService(logger=logger, console=console)
    version_store = VersionStore(
        root_dir,
        logger=logger,
        filesystem_service=filesystem_service,
        binary_name=settings["binary_name"],
    )

    feed_session = build_session()
    release_catalog = ReleaseCatalog(
        settings["release_feed_url"],
        session=feed_session,
        logger=logger,
        timeout=settings["metadata_timeout"],
    )
    download_service = DownloadService(
        validation_service=ValidationService(allow_insecure_http=settings["allow_insecure_http"]),
        logger=logger,
        console=console,
        session=feed_session,
        timeout=settings["download_timeout"],
    )
    supervisor = ProcessSupervisor(
        logger=logger,
        run_dir=os.path.join(root_dir, "run"),
        proxy_args=settings["proxy_args"],
    )

    dry_run_port = settings["dry_run_port"]
    client = ManagementClient(
        settings["management_url"],
        auth_key=settings["management_key"],
        timeout=settings["probe_timeout"],
    )
    dry_run_client = ManagementClient(
        _with_port(settings["management_url"], dry_run_port),
        auth_key=settings["management_key"],
        timeout=settings["probe_timeout"],
    )

    return UpgradeOrchestrator(
        version_store=version_store,
        release_catalog=release_catalog,
        download_service=download_service,
        supervisor=supervisor,
        probe=CompatibilityProbe(client, logger=logger),
        dry_run_probe=CompatibilityProbe(
            dry_run_client,
            logger=logger,
            is_running=lambda: supervisor.is_running(dry_run_port),
        ),
        journal=UpgradeJournal(os.path.join(root_dir, JOURNAL_FILE), logger=logger),
        proxy_port=settings["proxy_port"],
        dry_run_port=dry_run_port,
        max_installed_versions=settings["max_installed_versions"],
        startup_attempts=settings["startup_attempts"],
        startup_interval=settings["startup_interval"],
        platform_matcher=PlatformMatcher(),
        include_prereleases=settings["include_prereleases"],
    )


def _configure_logging(verbose: bool, log_file):
    if verbose:
        logging.getLogger().setLevel(logging.DEBUG)
        logger.setLevel(logging.DEBUG)
    else:
        logger.setLevel(logging.INFO)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter("%(asctime)s [%(levelname)s] %(message)s"))
        logger.addHandler(file_handler)


def _exit_code(result) -> int:
    if result.succeeded:
        return 0
    if result.fatal:
        return 2
    return 1


def _report(result):
    if result.succeeded:
        return
    label = "Fatal" if result.fatal else "Error"
    console.print(f"[bold red]{label}:[/bold red] {result.error}")


@click.group()
@click.option(
    "--config",
    required=False,
    type=click.Path(),
    help="Path to a YAML configuration file. Defaults to .proxyupgrader.yml if present.",
)
@click.option("--root-dir", required=False, type=click.Path(), help="Managed installation root.")
@click.option("--management-url", required=False, help="Base URL of the proxy management API.")
@click.option(
    "--management-key",
    required=False,
    envvar="PROXYUPGRADER_MANAGEMENT_KEY",
    help="Bearer key for the proxy management API.",
)
@click.option("--release-feed-url", required=False, help="Release feed returning a JSON list.")
@click.option(
    "--allow-insecure-http",
    is_flag=True,
    default=None,
    help="Allow HTTP download URLs (insecure). By default only HTTPS URLs are accepted.",
)
@click.option("--verbose", is_flag=True, default=None, help="Enable verbose logging")
@click.option("--log-file", type=click.Path(), help="Path to log file")
@click.pass_context
def main(
    ctx,
    config,
    root_dir,
    management_url,
    management_key,
    release_feed_url,
    allow_insecure_http,
    verbose,
    log_file,
):
    """Manage verified upgrades of the local proxy binary."""
    try:
        resolved_config = config
        if resolved_config is None:
            default_config_path = os.path.join(os.getcwd(), DEFAULT_CONFIG_FILE)
            if os.path.exists(default_config_path):
                resolved_config = default_config_path

        config_values = ConfigLoader().load(resolved_config)
    except UpgradeError as exc:
        raise click.ClickException(str(exc)) from exc

    settings = resolve_settings(
        {
            "root_dir": root_dir,
            "management_url": management_url,
            "management_key": management_key,
            "release_feed_url": release_feed_url,
            "allow_insecure_http": allow_insecure_http,
            "verbose": verbose,
            "log_file": log_file,
        },
        config_values,
    )
    _configure_logging(settings["verbose"], settings["log_file"])
    ctx.obj = settings


def _orchestrator(ctx) -> UpgradeOrchestrator:
    return build_orchestrator(ctx.obj)


@main.command()
@click.pass_context
def status(ctx):
    """Show the current version and the health of the running proxy."""
    orchestrator = _orchestrator(ctx)
    current = orchestrator.version_store.current_version()
    result = orchestrator.probe.check_compatibility()
    console.print(f"Current version: [bold]{current or '<none>'}[/bold]")
    colour = "green" if result.is_compatible else "red"
    console.print(f"Proxy: [{colour}]{result.description}[/{colour}]")


@main.command()
@click.pass_context
def start(ctx):
    """Start the current version if it is not already running."""
    result = _orchestrator(ctx).start()
    _report(result)
    raise SystemExit(_exit_code(result))


@main.command()
@click.pass_context
def releases(ctx):
    """List releases from the release feed."""
    orchestrator = _orchestrator(ctx)
    catalog = orchestrator.release_catalog
    matcher = orchestrator.platform_matcher
    try:
        items = catalog.fetch_releases()
    except UpgradeError as exc:
        raise click.ClickException(str(exc)) from exc

    table = Table(title=f"Releases ({matcher.label})")
    table.add_column("Version")
    table.add_column("Prerelease")
    table.add_column("Installable")
    for release in items:
        candidate = catalog.select_compatible([release], matcher)
        table.add_row(
            release.version,
            "yes" if release.prerelease else "",
            "yes" if candidate else "no",
        )
    console.print(table)


@main.command()
@click.pass_context
def check(ctx):
    """Check whether a newer verified release is available."""
    try:
        candidate = _orchestrator(ctx).check_for_update()
    except UpgradeError as exc:
        raise click.ClickException(str(exc)) from exc

    if candidate is None:
        console.print("[green]Proxy is up to date.[/green]")
    else:
        console.print(f"[blue]Update available:[/blue] {candidate.version}")


@main.command()
@click.option("--version", "target_version", required=False, help="Release version to install.")
@click.option("--url", "binary_url", required=False, help="Direct binary URL (requires --sha256).")
@click.option("--sha256", required=False, help="Expected SHA-256 of the binary at --url.")
@click.pass_context
def upgrade(ctx, target_version, binary_url, sha256):
    """Install or upgrade to the latest (or a given) verified release."""
    orchestrator = _orchestrator(ctx)
    started = orchestrator.start()
    if not started.succeeded and orchestrator.version_store.current_version() is not None:
        _report(started)
        raise SystemExit(_exit_code(started))

    try:
        if binary_url:
            if not target_version or not sha256:
                raise click.ClickException("--url requires both --version and --sha256.")
            validation = ValidationService()
            candidate = CandidateVersion(
                version=target_version,
                sha256=validation.require_sha256(sha256, "--sha256"),
                download_url=binary_url,
            )
        elif target_version:
            candidate = orchestrator.release_catalog.find_candidate(
                target_version, orchestrator.platform_matcher
            )
        else:
            candidate = None

        if candidate is None:
            result = orchestrator.upgrade_to_latest()
        elif orchestrator.state is OrchestratorState.IDLE:
            result = orchestrator.install(candidate)
        else:
            result = orchestrator.begin_upgrade(candidate)
    except (UpgradeError, InvalidStateTransition) as exc:
        raise click.ClickException(str(exc)) from exc

    _report(result)
    if result.succeeded:
        console.print(f"[green]Current version: {orchestrator.version_store.current_version()}[/green]")
    raise SystemExit(_exit_code(result))


@main.command(name="list")
@click.pass_context
def list_versions(ctx):
    """List installed versions."""
    installed = _orchestrator(ctx).installed_versions()
    if not installed:
        console.print("No proxy versions installed.")
        return

    table = Table()
    table.add_column("Version")
    table.add_column("Installed at")
    table.add_column("Current")
    for item in installed:
        table.add_row(item.version, item.installed_at.isoformat(), "*" if item.is_current else "")
    console.print(table)


@main.command()
@click.argument("version")
@click.pass_context
def delete(ctx, version):
    """Delete an installed, non-current version."""
    try:
        _orchestrator(ctx).delete_version(version)
    except CannotDeleteCurrentVersion as exc:
        raise click.ClickException(actionable_error("cannot_delete_current", version=version)) from exc
    except VersionNotInstalled as exc:
        raise click.ClickException(actionable_error("version_not_installed", version=version)) from exc
    except UpgradeError as exc:
        raise click.ClickException(str(exc)) from exc
    console.print(f"Deleted proxy {version}.")


@main.command()
@click.pass_context
def prune(ctx):
    """Apply the retention policy to installed versions."""
    evicted = _orchestrator(ctx).prune()
    if evicted:
        console.print(f"Removed: {', '.join(evicted)}")
    else:
        console.print("Nothing to remove.")


if __name__ == "__main__":
    main()
