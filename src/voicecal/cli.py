"""CLI for voicecal — run the API server and manage the database schema."""

from __future__ import annotations

import asyncio
import logging
import sys
from pathlib import Path

import click
import uvicorn

from voicecal import __version__
from voicecal.config import AppConfig, ConfigError, load_config
from voicecal.core.logging import configure_logging

logger = logging.getLogger(__name__)

_CONFIG_OPTION = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to a TOML config file (default: $VOICECAL_CONFIG or environment only)",
)


def _load(config_path: Path | None) -> AppConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(
        level=config.logging.level,
        fmt=config.logging.format,
        log_root=config.logging.log_root,
    )
    return config


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """voicecal — voice-driven Google Calendar assistant backend."""


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port")
@_CONFIG_OPTION
def serve(host: str, port: int, config_path: Path | None) -> None:
    """Run the HTTP API server."""
    from voicecal.api.app import create_app

    config = _load(config_path)
    app = create_app(config)
    click.echo(f"voicecal API listening on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=None)


@cli.command("init-db")
@_CONFIG_OPTION
def init_db(config_path: Path | None) -> None:
    """Create the database tables if they do not exist."""
    config = _load(config_path)
    asyncio.run(_init_db(config))
    click.echo("Database schema is up to date")


async def _init_db(config: AppConfig) -> None:
    from voicecal.db import create_pool
    from voicecal.storage import ensure_schema

    pool = await create_pool(config.database)
    try:
        await ensure_schema(pool)
    finally:
        await pool.close()


if __name__ == "__main__":
    cli()
