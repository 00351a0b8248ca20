"""Session, lease and history commands."""

from __future__ import annotations

import threading
from typing import Optional

import httpx
import typer
from rich.panel import Panel
from rich.table import Table

from worldsync.cli.helpers import console, format_time, open_orchestrator
from worldsync.core.errors import WorldSyncError
from worldsync.sync.models import SessionResult


def _print_result(result: SessionResult, action: str) -> None:
    if result.success:
        console.print(f"✅ {action} [bold]{result.session_key}[/bold]")
        if result.revision_id:
            console.print(f"Revision: [cyan]{result.revision_id[:12]}[/cyan] ({result.changed_count} files changed)")
        for warning in result.warnings:
            console.print(f"[yellow]⚠️  {warning}[/yellow]")
        return

    if result.conflict is not None:
        conflict = result.conflict
        console.print(
            Panel(
                f"Held by: [bold]{conflict.holder_label or conflict.holder_id}[/bold]\n"
                f"Holder ID: {conflict.holder_id}\n"
                f"Since: {format_time(conflict.acquired_at)}\n"
                f"Expires: {format_time(conflict.expires_at)}\n"
                f"Reason: {conflict.reason or '-'}",
                title="🔒 World is locked",
                border_style="yellow",
            )
        )
    console.print(f"[red]❌ {result.error}[/red]")
    if result.retryable:
        console.print("[dim]This can be retried.[/dim]")
    raise typer.Exit(1)


def status(ctx: typer.Context) -> None:
    """Show lease and sync state."""
    orchestrator = open_orchestrator(ctx)
    try:
        lease = orchestrator.get_lease_state()
        state = orchestrator.get_sync_state()
    except (WorldSyncError, httpx.HTTPError) as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()

    if lease.held:
        lease_lines = [
            f"[cyan]Held by:[/cyan] {lease.holder_label} ({lease.holder_id})",
            f"[cyan]Since:[/cyan] {format_time(lease.acquired_at)}",
            f"[cyan]Expires:[/cyan] {format_time(lease.expires_at)}",
            f"[cyan]Reason:[/cyan] {lease.reason or '-'}",
        ]
        if lease.holder_id == orchestrator.coordinator.holder_id:
            lease_lines.append("[green]This host holds the lease[/green]")
    else:
        lease_lines = ["[green]Free[/green]"]

    sync_lines = [
        f"[cyan]Last sync:[/cyan] {format_time(state.last_sync_time)}",
        f"[cyan]Revision:[/cyan] {state.last_revision_id or '-'}",
        f"[cyan]Session:[/cyan] {state.session_key or '-'}",
        f"[cyan]Pending changes:[/cyan] {'yes' if state.pending_changes else 'no'}",
    ]
    if state.last_error:
        sync_lines.append(f"[red]Last error:[/red] {state.last_error}")

    console.print(Panel("\n".join(lease_lines), title="Lease"))
    console.print(Panel("\n".join(sync_lines), title="Sync"))


def begin(
    ctx: typer.Context,
    session_key: str = typer.Argument(..., help="Session (world profile) key"),
) -> None:
    """Acquire the lease and download the latest world."""
    orchestrator = open_orchestrator(ctx)
    try:
        result = orchestrator.begin_session(session_key)
    finally:
        orchestrator.close()
    _print_result(result, "Session started:")
    console.print(
        f"[dim]Lease held until it expires or `worldsync end {session_key}`; "
        "use `worldsync host` to keep it refreshed.[/dim]"
    )


def end(
    ctx: typer.Context,
    session_key: str = typer.Argument(..., help="Session (world profile) key"),
) -> None:
    """Upload the world and release the lease."""
    orchestrator = open_orchestrator(ctx)
    try:
        result = orchestrator.end_session(session_key)
    finally:
        orchestrator.close()
    _print_result(result, "Session ended:")


def host(
    ctx: typer.Context,
    session_key: str = typer.Argument(..., help="Session (world profile) key"),
) -> None:
    """Begin a session, keep the lease refreshed until Ctrl+C, then end it."""
    orchestrator = open_orchestrator(ctx)
    stop = threading.Event()
    try:
        result = orchestrator.begin_session(session_key)
        _print_result(result, "Hosting")
        console.print("[dim]Press Ctrl+C to upload the world and release the lease.[/dim]")
        try:
            while not stop.wait(1.0):
                if orchestrator.session_compromised:
                    console.print("[red]❌ Lease lost; stop the game server now. Changes will not be uploaded.[/red]")
                    raise typer.Exit(1)
        except KeyboardInterrupt:
            console.print("Stopping...")
        _print_result(orchestrator.end_session(session_key), "Session ended:")
    finally:
        orchestrator.close()


def release(
    ctx: typer.Context,
    force: bool = typer.Option(False, "--force", help="Delete the lease whoever holds it"),
    reason: str = typer.Option("manual release", "--reason", help="Reason recorded for a forced release"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Release this host's lease, or force-release a crashed host's lease."""
    orchestrator = open_orchestrator(ctx)
    try:
        if force:
            lease = orchestrator.get_lease_state()
            if lease.held:
                console.print(
                    f"[yellow]Lease held by {lease.holder_label} ({lease.holder_id}) "
                    f"until {format_time(lease.expires_at)}[/yellow]"
                )
            if not yes:
                typer.confirm(
                    "Force release deletes the lease even if its holder is still running. Continue?",
                    abort=True,
                )
            released = orchestrator.emergency_release(reason)
        else:
            released = orchestrator.coordinator.release()
    except (WorldSyncError, httpx.HTTPError) as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()

    if not released:
        console.print("[red]❌ Lease not released (held by another host or changed concurrently)[/red]")
        raise typer.Exit(1)
    console.print("✅ Lease released")


def history(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Number of revisions to show"),
    session: Optional[str] = typer.Option(None, "--session", help="Only revisions of this session key"),
) -> None:
    """Show world revision history, newest first."""
    orchestrator = open_orchestrator(ctx)
    try:
        revisions = orchestrator.get_history(limit, session_key=session)
    except WorldSyncError as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()

    if not revisions:
        console.print("[yellow]No revisions found[/yellow]")
        return

    table = Table(title="World History", show_header=True)
    table.add_column("Revision", style="cyan")
    table.add_column("Date")
    table.add_column("Session", style="green")
    table.add_column("Author")
    table.add_column("Message")
    for revision in revisions:
        table.add_row(
            revision.revision_id[:12],
            format_time(revision.timestamp),
            revision.session_key,
            revision.author_label,
            revision.summary,
        )
    console.print(table)


def restore(
    ctx: typer.Context,
    revision: str = typer.Argument(..., help="Revision to restore shared history to"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
) -> None:
    """Reset the shared world to a historical revision (rewrites remote history)."""
    if not yes:
        typer.confirm(
            f"Restoring {revision} force-pushes over newer history (a backup branch is kept). Continue?",
            abort=True,
        )
    orchestrator = open_orchestrator(ctx)
    try:
        restored = orchestrator.restore_to_revision(revision)
    except WorldSyncError as exc:
        console.print(f"[red]❌ {exc}[/red]")
        raise typer.Exit(1)
    finally:
        orchestrator.close()
    console.print(f"✅ Restored to [cyan]{restored.revision_id[:12]}[/cyan]: {restored.summary}")


def register(app: typer.Typer) -> None:
    app.command()(status)
    app.command()(begin)
    app.command()(end)
    app.command()(host)
    app.command()(release)
    app.command()(history)
    app.command()(restore)
