"""Shared CLI helpers: console, logging setup and orchestrator construction."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler

from worldsync.core.config import SyncConfig, load_config
from worldsync.core.errors import ConfigError
from worldsync.sync.orchestrator import SyncOrchestrator

console = Console()
err_console = Console(stderr=True)

LOG_FILE = "worldsync.log"
FILE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def configure_logging(verbose: bool = False, log_dir: Path | None = None) -> None:
    """Route ``worldsync.*`` loggers to the terminal (rich) and, optionally, a log file."""
    logger = logging.getLogger("worldsync")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    terminal = RichHandler(console=err_console, show_path=False, markup=False)
    terminal.setLevel(logging.DEBUG if verbose else logging.WARNING)
    logger.addHandler(terminal)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_dir / LOG_FILE, encoding="utf-8")
        except OSError as exc:
            err_console.print(f"[yellow]Logging to file disabled:[/yellow] {exc}")
            return
        file_handler.setLevel(logging.DEBUG if verbose else logging.INFO)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)


def load_config_or_exit(config_path: Optional[Path] = None) -> SyncConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        console.print(f"[red]Configuration error:[/red] {exc}")
        raise typer.Exit(1)


def open_orchestrator(ctx: typer.Context) -> SyncOrchestrator:
    """Build an orchestrator from the config selected by the global options."""
    options = ctx.obj or {}
    config = load_config_or_exit(options.get("config_path"))
    configure_logging(options.get("verbose", False), config.log_dir)
    return SyncOrchestrator.from_config(config)


def format_time(value) -> str:
    if value is None:
        return "-"
    return value.astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


__all__ = [
    "configure_logging",
    "console",
    "err_console",
    "format_time",
    "load_config_or_exit",
    "open_orchestrator",
]
