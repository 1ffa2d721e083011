"""CLI for pitwall: run the notifier daemon and manage its database."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from pathlib import Path

import click

from pitwall.config import ConfigError, PitwallConfig, load_config

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("pitwall.toml")

_config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path),
    default=DEFAULT_CONFIG_PATH,
    show_default=True,
    help="Path to pitwall.toml",
)


def _load_or_exit(config_path: Path) -> PitwallConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Invalid configuration: {exc}", err=True)
        sys.exit(2)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """pitwall: keeps a Discord channel in sync with the race calendar."""
    logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(name)s: %(message)s")


@cli.command()
@_config_option
def run(config_path: Path) -> None:
    """Run the notifier until SIGINT/SIGTERM."""
    config = _load_or_exit(config_path)
    click.echo(f"Starting pitwall from {config_path}")
    asyncio.run(_run_daemon(config))


@cli.command("check-config")
@_config_option
def check_config(config_path: Path) -> None:
    """Parse the config file and print the effective settings."""
    config = _load_or_exit(config_path)
    click.echo(f"Database:          {config.db_name}")
    click.echo(f"Poll interval:     {config.poll_interval_seconds:g}s")
    click.echo(f"Calendar interval: {config.calendar_interval_seconds:g}s")
    click.echo(f"Migrations:        {'on' if config.run_migrations else 'off'}")
    click.echo(f"Attachment:        {config.attachment or '(none)'}")
    click.echo(f"Logging:           {config.logging.level} ({config.logging.format})")
    click.echo(f"{'Series':<12} {'Channel':<22} {'Role'}")
    click.echo("-" * 56)
    for series in config.series:
        click.echo(f"{series.series.value:<12} {series.channel_id:<22} {series.role_id or '-'}")


@cli.command()
@_config_option
def migrate(config_path: Path) -> None:
    """Upgrade the database schema to the latest revision."""
    from pitwall.db import ConnectionSettings
    from pitwall.migrations import run_migrations

    config = _load_or_exit(config_path)
    settings = ConnectionSettings.from_env(config.db_name)
    asyncio.run(run_migrations(settings.url))
    click.echo(f"Database {settings.database} is up to date")


async def _run_daemon(config: PitwallConfig) -> None:
    """Start the daemon and block until a shutdown signal arrives."""
    from pitwall.daemon import NotifierDaemon
    from pitwall.errors import StartupError

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    daemon = NotifierDaemon(config)
    try:
        await daemon.start()
    except StartupError as exc:
        click.echo(f"Startup failed: {exc}", err=True)
        sys.exit(1)

    await shutdown_event.wait()
    await daemon.shutdown()


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
