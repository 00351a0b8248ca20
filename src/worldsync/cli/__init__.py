"""worldsync command line interface."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer

from worldsync import __version__
from worldsync.cli.commands import snapshot, sync

app = typer.Typer(
    name="worldsync",
    help="Share one game world between hosts, one host at a time.",
    no_args_is_help=True,
)


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"worldsync {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    ctx: typer.Context,
    config: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file (default: ~/.worldsync/config.yaml)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show debug logging"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    ctx.obj = {"config_path": config, "verbose": verbose}


sync.register(app)
app.add_typer(snapshot.app)


def main() -> None:
    app()


__all__ = ["app", "main"]
