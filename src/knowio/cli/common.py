"""Shared helpers for CLI commands: config, logging, and runtime setup."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from knowio.app import Runtime, build_runtime
from knowio.cli.errors import err_config, err_no_db, err_storage
from knowio.config import KnowioConfig, load_config
from knowio.errors import ConfigError, StorageError
from knowio.logging_setup import configure_logging
from knowio.telemetry import LoggingTelemetry

console = Console()

DEFAULT_DB = Path(".knowio.db")


def load_settings() -> KnowioConfig:
    """Load config from CWD and configure logging, exiting on bad config."""
    try:
        cfg = load_config()
    except ConfigError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)
    configure_logging(cfg.logging.level, json=cfg.logging.json)
    return cfg


def open_runtime(db: Path, cfg: KnowioConfig, *, create: bool = False) -> Runtime:
    """Build the runtime for *db*; exits if it is missing and *create* is False."""
    if not create and not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)
    try:
        return build_runtime(cfg, db, telemetry=LoggingTelemetry())
    except StorageError as exc:
        console.print(err_storage(str(exc)))
        raise typer.Exit(1)
