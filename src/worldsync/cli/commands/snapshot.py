"""Local snapshot commands."""

from __future__ import annotations

from typing import Optional

import typer
from rich.table import Table

from worldsync.cli.helpers import console, format_time, open_orchestrator
from worldsync.core.errors import WorldSyncError
from worldsync.sync.models import SNAPSHOT_KINDS

app = typer.Typer(name="snapshot", help="Create, list, verify and restore local world snapshots.", no_args_is_help=True)


def _size(num_bytes: int) -> str:
    value = float(num_bytes)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{num_bytes} B"


@app.command("create")
def create_cmd(
    ctx: typer.Context,
    session_key: str = typer.Argument(..., help="Session (world profile) key"),
    kind: str = typer.Option("manual", "--kind", help="auto, manual or pre-shutdown"),
) -> None:
    """Snapshot the session's world directory."""
    if kind not in SNAPSHOT_KINDS:
        console.print(f"[red]❌ Unknown snapshot kind:[/red] {kind}")
        raise typer.Exit(1)
    orchestrator = open_orchestrator(ctx)
    try:
        info = orchestrator.create_snapshot(session_key, kind)  # type: ignore[arg-type]
    except (WorldSyncError, OSError) as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()
    console.print(f"✅ Snapshot [cyan]{info.id}[/cyan] created ({_size(info.size_bytes)})")


@app.command("list")
def list_cmd(
    ctx: typer.Context,
    session_key: Optional[str] = typer.Argument(None, help="Only snapshots of this session key"),
) -> None:
    """List snapshots, newest first."""
    orchestrator = open_orchestrator(ctx)
    try:
        snapshots = orchestrator.snapshots.list(session_key)
        stats = orchestrator.snapshots.stats(session_key)
    finally:
        orchestrator.close()

    if not snapshots:
        console.print("[yellow]No snapshots found[/yellow]")
        return

    table = Table(title="Snapshots", show_header=True)
    table.add_column("ID", style="cyan")
    table.add_column("Session", style="green")
    table.add_column("Kind")
    table.add_column("Taken")
    table.add_column("Size", justify="right")
    table.add_column("Revision")
    for info in snapshots:
        table.add_row(
            info.id,
            info.session_key,
            info.kind,
            format_time(info.timestamp),
            _size(info.size_bytes),
            (info.revision_id or "-")[:12],
        )
    console.print(table)
    console.print(f"[dim]{stats.count} snapshots, {_size(stats.total_bytes)} total[/dim]")


@app.command("restore")
def restore_cmd(
    ctx: typer.Context,
    session_key: str = typer.Argument(..., help="Session (world profile) key"),
    snapshot_id: str = typer.Argument(..., help="Snapshot ID (see `worldsync snapshot list`)"),
) -> None:
    """Replace the session's world with a snapshot (requires the lease)."""
    orchestrator = open_orchestrator(ctx)
    try:
        info = orchestrator.restore_snapshot(session_key, snapshot_id)
    except (WorldSyncError, OSError) as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()
    console.print(f"✅ Restored snapshot [cyan]{info.id}[/cyan] taken {format_time(info.timestamp)}")


@app.command("verify")
def verify_cmd(
    ctx: typer.Context,
    session_key: str = typer.Argument(..., help="Session (world profile) key"),
    snapshot_id: str = typer.Argument(..., help="Snapshot ID"),
) -> None:
    """Check a snapshot against the content hash recorded when it was taken."""
    orchestrator = open_orchestrator(ctx)
    try:
        intact = orchestrator.snapshots.verify(session_key, snapshot_id)
    except WorldSyncError as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()

    if not intact:
        console.print(f"[red]❌ Snapshot {snapshot_id} is damaged (content hash mismatch)[/red]")
        raise typer.Exit(1)
    console.print(f"✅ Snapshot {snapshot_id} verified")


@app.command("delete")
def delete_cmd(
    ctx: typer.Context,
    session_key: str = typer.Argument(..., help="Session (world profile) key"),
    snapshot_id: str = typer.Argument(..., help="Snapshot ID"),
) -> None:
    """Delete one snapshot."""
    orchestrator = open_orchestrator(ctx)
    try:
        orchestrator.snapshots.delete(session_key, snapshot_id)
    except WorldSyncError as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()
    console.print(f"✅ Snapshot {snapshot_id} deleted")
