"""CLI for calbridge — serve the API and manage encryption keys."""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import click
import uvicorn

from calbridge.cipher import generate_key
from calbridge.config import ConfigError, load_config
from calbridge.core.logging import configure_logging
from calbridge.core.telemetry import init_telemetry

logger = logging.getLogger(__name__)


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """calbridge — calendar integration and availability service."""


@cli.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calbridge.toml (defaults to ./calbridge.toml when present)",
)
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port")
def serve(config_path: Path | None, host: str, port: int) -> None:
    """Run the HTTP API."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=Path(config.logging.log_root) if config.logging.log_root else None,
    )
    init_telemetry("calbridge")

    from calbridge.api.app import create_app

    app = create_app(config)
    logger.info("Starting calbridge on %s:%d", host, port)
    uvicorn.run(app, host=host, port=port, log_config=None, timeout_graceful_shutdown=5)


@cli.command()
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to calbridge.toml (defaults to ./calbridge.toml when present)",
)
@click.option("--revision", default="head", show_default=True, help="Target revision")
def migrate(config_path: Path | None, revision: str) -> None:
    """Apply database migrations."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    configure_logging(level=config.logging.level, fmt=config.logging.format)

    from calbridge.migrations import database_url, run_migrations

    run_migrations(database_url(config.database), revision)
    click.echo(f"Database migrated to {revision}")


@cli.command("generate-key")
def generate_key_cmd() -> None:
    """Print a new random token encryption key (hex) for CALBRIDGE_ENCRYPTION_KEY."""
    click.echo(generate_key())


def main() -> None:
    cli()


if __name__ == "__main__":
    main()
