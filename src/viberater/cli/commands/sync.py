"""Sync commands - queue replay, cache refresh and connection status."""

from __future__ import annotations

from datetime import timedelta

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from viberater.cli import helpers
from viberater.sync.engine import OfflineError
from viberater.sync.store import QueueStats

app = typer.Typer(help="Synchronize the local cache with the server")


def humanize_timedelta(td: timedelta) -> str:
    """Convert a timedelta into a concise human-readable string.

    Examples: '2s', '45s', '3m 12s', '2h 5m', '1d 4h', '3d'
    """
    total_seconds = int(td.total_seconds())
    if total_seconds < 0:
        return "0s"

    days, remainder = divmod(total_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)

    if days > 0:
        return f"{days}d {hours}h" if hours > 0 else f"{days}d"
    if hours > 0:
        return f"{hours}h {minutes}m" if minutes > 0 else f"{hours}h"
    if minutes > 0:
        return f"{minutes}m {seconds}s" if seconds > 0 else f"{minutes}m"
    return f"{seconds}s"


def format_queue_health(stats: QueueStats, target_console: Console) -> None:
    """Render queue health as a Rich panel plus per-resource and per-method tables.

    Args:
        stats: Aggregate queue statistics from LocalStore.get_queue_stats()
        target_console: Rich Console to print to (allows testing with captured output)
    """
    summary_lines: list[str] = [
        f"[bold]Queue Depth:[/bold]   {stats.total_queued:,} operation(s)",
        f"[bold]Retried:[/bold]       {stats.total_retried:,}",
        f"[bold]Dead-lettered:[/bold] {stats.total_dead:,}",
    ]
    if stats.oldest_op_age is not None:
        summary_lines.append(f"[bold]Oldest:[/bold]        {humanize_timedelta(stats.oldest_op_age)} ago")

    target_console.print(
        Panel(
            "\n".join(summary_lines),
            title="Queue Health",
            border_style="cyan",
            expand=False,
        )
    )

    for title, column, counts in (
        ("By Resource", "Resource", stats.by_resource),
        ("By Method", "Method", stats.by_method),
    ):
        if not counts:
            continue
        table = Table(title=title, show_header=True, header_style="bold", expand=False)
        table.add_column(column, style="dim")
        table.add_column("Count", justify="right")
        for key, count in sorted(counts.items(), key=lambda item: (-item[1], item[0])):
            table.add_row(key, str(count))
        target_console.print(table)


@app.command()
def now(
    strict: bool = typer.Option(
        True,
        "--strict/--no-strict",
        help="Exit non-zero when operations fail or the server is unreachable",
    ),
) -> None:
    """Replay queued offline operations against the server.

    Examples:
        viberater sync now
        viberater sync now --no-strict
    """
    console = helpers.console

    async def _run() -> int:
        async with helpers.open_runtime() as runtime:
            queue_size = await runtime.store.queue_size()
            if queue_size == 0:
                console.print("[dim]Queue is empty, nothing to sync.[/dim]")
                return 0

            if not await runtime.probe.check():
                console.print(
                    f"[yellow]Server unreachable.[/yellow] {queue_size} operation(s) stay queued."
                )
                return 1

            console.print(f"Syncing {queue_size} queued operation(s)...")
            result = await runtime.engine.sync()
            if result is None:
                console.print("[yellow]Sync skipped.[/yellow]")
                return 1

            console.print(
                f"[green]Synced:[/green] {result.synced}  "
                f"[yellow]Deferred:[/yellow] {result.deferred}  "
                f"[red]Failed:[/red] {result.failed}  "
                f"[red]Dead-lettered:[/red] {result.dead_lettered}"
            )
            for message in result.error_messages:
                console.print(f"  [yellow]{message}[/yellow]")
            if result.dead_lettered:
                console.print("[dim]Inspect with 'viberater queue list --dead'.[/dim]")
            return 1 if (result.failed or result.dead_lettered) else 0

    exit_code = helpers.run_or_exit(_run)
    if strict and exit_code:
        raise typer.Exit(exit_code)


@app.command()
def pull() -> None:
    """Refresh the local cache with the server's ideas, projects and tasks."""
    console = helpers.console

    async def _run() -> None:
        async with helpers.open_runtime() as runtime:
            if not await runtime.probe.check():
                raise OfflineError(f"Server unreachable: {runtime.remote.server_url}")
            counts = await runtime.engine.pull_from_server()
            console.print(
                f"[green]✓[/green] Pulled {counts['ideas']} idea(s), "
                f"{counts['projects']} project(s), {counts['tasks']} task(s)"
            )

    helpers.run_or_exit(_run)


@app.command()
def status(
    check_connection: bool = typer.Option(
        False,
        "--check",
        "-c",
        help="Test connection to server (may be slow if server is unreachable)",
    ),
) -> None:
    """Show sync queue status, configuration and auth info.

    Examples:
        viberater sync status
        viberater sync status --check
    """
    console = helpers.console

    async def _run() -> None:
        async with helpers.open_runtime() as runtime:
            stats = await runtime.store.get_queue_stats()

            console.print()
            console.print("[cyan]viberater Sync Status[/cyan]")
            console.print()

            table = Table(show_header=False, box=None)
            table.add_column("Key", style="dim")
            table.add_column("Value")

            queue_color = "green" if stats.total_queued == 0 else "yellow"
            table.add_row("Queue", f"[{queue_color}]{stats.total_queued} operation(s)[/{queue_color}]")
            if stats.total_dead:
                table.add_row("Dead-lettered", f"[red]{stats.total_dead} operation(s)[/red]")

            username = runtime.remote.credentials.get_username() if runtime.remote.credentials else None
            has_token = bool(runtime.remote.credentials and runtime.remote.credentials.get_access_token())
            if has_token:
                table.add_row("Auth", f"[green]Authenticated[/green]{f' as {username}' if username else ''}")
            else:
                table.add_row("Auth", "[yellow]Not authenticated[/yellow]")

            table.add_row("Server URL", runtime.remote.server_url)
            table.add_row("Config File", str(runtime.config.config_file))
            table.add_row("Database", str(runtime.store.db_path))

            if check_connection:
                online = await runtime.probe.check()
                table.add_row("Ping", "[green]Reachable[/green]" if online else "[red]Unreachable[/red]")

            console.print(table)
            console.print()

            if stats.total_queued or stats.total_dead:
                format_queue_health(stats, console)
                console.print()
            else:
                console.print("[green]Queue empty -- all changes synced.[/green]")
                console.print()

            if not check_connection:
                console.print("[dim]Use 'viberater sync status --check' to test connectivity.[/dim]")
                console.print()

    helpers.run_or_exit(_run)
