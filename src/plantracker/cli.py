"""CLI for the PlanTracker scheduling engine."""

from __future__ import annotations

import asyncio
import sys
from pathlib import Path

import click
import uvicorn

from plantracker import __version__
from plantracker.config import ConfigError, PlanTrackerConfig, load_config
from plantracker.core.logging import configure_logging
from plantracker.db import Database, ensure_schema

_CONFIG_OPTION = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to plantracker.toml (defaults to $PLANTRACKER_CONFIG or ./plantracker.toml)",
)


def _load(config_path: Path | None) -> PlanTrackerConfig:
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
    """PlanTracker calendar availability and meeting scheduling."""


@cli.command()
@_CONFIG_OPTION
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port")
def serve(config_path: Path | None, host: str, port: int) -> None:
    """Run the scheduling HTTP API."""
    from plantracker.api.app import create_app

    config = _load(config_path)
    app = create_app(config)
    server = uvicorn.Server(
        uvicorn.Config(app, host=host, port=port, log_config=None, access_log=False)
    )
    server.run()


@cli.command("init-db")
@_CONFIG_OPTION
def init_db(config_path: Path | None) -> None:
    """Create the scheduling tables if they do not exist."""
    config = _load(config_path)
    asyncio.run(_init_db(config))
    click.echo("Scheduling schema is up to date.")


async def _init_db(config: PlanTrackerConfig) -> None:
    database = Database.from_config(config.database)
    pool = await database.connect()
    try:
        await ensure_schema(pool)
    finally:
        await database.close()


@cli.command("check-config")
@_CONFIG_OPTION
def check_config(config_path: Path | None) -> None:
    """Validate the configuration and print the effective values."""
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)

    scheduling = config.scheduling
    click.echo(f"Config file:        {config.source or '(defaults)'}")
    click.echo(f"Timezone:           {scheduling.timezone}")
    click.echo(
        f"Working hours:      {scheduling.working_hours_start:02d}:00-"
        f"{scheduling.working_hours_end:02d}:00"
    )
    click.echo(f"Default duration:   {scheduling.default_duration_minutes} min")
    click.echo(f"Max suggestions:    {scheduling.default_max_suggestions}")
    click.echo(f"Refresh margin:     {scheduling.refresh_margin_minutes} min")
    click.echo(f"Max concurrency:    {scheduling.max_concurrency}")
    click.echo(f"Request timeout:    {scheduling.request_timeout_seconds:g}s")
    click.echo(f"Provider:           {scheduling.provider}")
    click.echo(f"Google client id:   {config.google.client_id or '(unset)'}")
    click.echo(f"Google secret:      {'(set)' if config.google.client_secret else '(unset)'}")
    click.echo(f"Calendar id:        {config.google.calendar_id}")
    click.echo(f"Database url:       {'(set)' if config.database.url else '(from DATABASE_URL)'}")
    click.echo(f"Logging:            {config.logging.level} ({config.logging.format})")
