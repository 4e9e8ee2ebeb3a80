"""Queue commands for inspecting and repairing the offline sync queue."""

from __future__ import annotations

from datetime import datetime, timezone

import typer
from rich.table import Table

from viberater.cli import helpers
from viberater.cli.commands.sync import humanize_timedelta

app = typer.Typer(help="Inspect and repair the offline sync queue")


def _age(timestamp_ms: int) -> str:
    created = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return humanize_timedelta(datetime.now(tz=timezone.utc) - created)


@app.command("list")
def list_command(
    dead: bool = typer.Option(False, "--dead", help="Show dead-lettered operations instead of pending ones"),
    as_json: bool = typer.Option(False, "--json", help="Render operations as JSON"),
) -> None:
    """List queued operations in replay order."""
    console = helpers.console

    async def _run() -> None:
        async with helpers.open_runtime() as runtime:
            ops = await (runtime.store.dead_ops() if dead else runtime.store.pending_ops())

        if as_json:
            helpers.print_json({"operations": [op.to_dict() for op in ops]})
            return

        if not ops:
            console.print("[dim]No dead-lettered operations.[/dim]" if dead else "[dim]Queue is empty.[/dim]")
            return

        table = Table(title="Dead-lettered Operations" if dead else "Pending Operations", expand=False)
        table.add_column("#", justify="right")
        table.add_column("Method")
        table.add_column("Resource")
        table.add_column("Entity", style="cyan")
        table.add_column("Retries", justify="right")
        table.add_column("Age", style="dim")
        table.add_column("Last Error", style="yellow")
        for op in ops:
            table.add_row(
                str(op.id),
                op.method.value,
                op.resource.value,
                op.entity_id,
                str(op.retry_count),
                _age(op.timestamp),
                op.last_error or "",
            )
        console.print(table)

    helpers.run_or_exit(_run)


@app.command("retry")
def retry_command(
    op_id: int = typer.Argument(..., help="Queue id of a dead-lettered operation"),
) -> None:
    """Return a dead-lettered operation to the pending queue."""

    async def _run() -> None:
        async with helpers.open_runtime() as runtime:
            if not await runtime.store.requeue(op_id):
                raise ValueError(f"Operation #{op_id} is not dead-lettered")
        helpers.console.print(f"[green]✓[/green] Operation #{op_id} requeued")

    helpers.run_or_exit(_run)


@app.command("purge")
def purge_command(
    dead: bool = typer.Option(False, "--dead", help="Also discard dead-lettered operations"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
) -> None:
    """Remove synced operations (and, with --dead, dead-lettered ones)."""
    if dead and not yes:
        typer.confirm("Discard all dead-lettered operations? Their changes will be lost.", abort=True)

    async def _run() -> None:
        async with helpers.open_runtime() as runtime:
            removed = await runtime.store.purge_synced()
            discarded = await runtime.store.purge_dead() if dead else 0
        helpers.console.print(f"Removed {removed} synced operation(s)")
        if dead:
            helpers.console.print(f"Discarded {discarded} dead-lettered operation(s)")

    helpers.run_or_exit(_run)
