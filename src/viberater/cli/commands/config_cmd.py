"""Config commands - show and change sync settings in ~/.viberater/config.toml."""

from __future__ import annotations

from urllib.parse import urlparse

import typer
from rich.table import Table

from viberater.cli import helpers
from viberater.sync.config import SERVER_URL_ENV_VAR, SyncConfig

app = typer.Typer(help="Show or change sync configuration")


@app.command()
def show(as_json: bool = typer.Option(False, "--json", help="Render configuration as JSON")) -> None:
    """Display the resolved sync configuration."""
    config = SyncConfig()
    values = config.as_dict()
    if as_json:
        helpers.print_json(values)
        return

    table = Table(title="Sync Configuration", show_header=False, expand=False)
    table.add_column("Key", style="dim")
    table.add_column("Value", style="cyan")
    for key, value in values.items():
        table.add_row(key, str(value))
    helpers.console.print(table)
    helpers.console.print(f"[dim]Config File: {config.config_file}[/dim]")


@app.command("set-server")
def set_server(url: str = typer.Argument(..., help="Server URL, e.g. https://viberater.example.com")) -> None:
    """Set the server URL used for syncing.

    Examples:
        viberater config set-server https://viberater.example.com
        viberater config set-server http://localhost:3000
    """
    normalized_url = url.strip().rstrip("/")
    parsed = urlparse(normalized_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        typer.secho(
            "Invalid server URL. Use a full URL, for example: https://viberater.example.com",
            fg=typer.colors.RED,
            err=True,
        )
        raise typer.Exit(1)

    SyncConfig().set_server_url(normalized_url)
    helpers.console.print(f"[green]✓[/green] Sync server set to [cyan]{normalized_url}[/cyan]")
    helpers.console.print(f"[dim]{SERVER_URL_ENV_VAR} still takes precedence when set.[/dim]")
