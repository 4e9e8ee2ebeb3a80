"""viberater command line: sync, queue, config and auth command groups."""

from __future__ import annotations

import logging

import typer
from rich.console import Console
from rich.logging import RichHandler

from viberater import __version__
from viberater.cli.commands import auth, config_cmd, queue, sync

app = typer.Typer(
    name="viberater",
    help="Offline-first sync client for viberater ideas, projects and tasks",
    add_completion=False,
    no_args_is_help=True,
)
app.add_typer(sync.app, name="sync")
app.add_typer(queue.app, name="queue")
app.add_typer(config_cmd.app, name="config")
app.add_typer(auth.app, name="auth")


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"viberater {__version__}")
        raise typer.Exit()


@app.callback()
def callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log sync activity to stderr"),
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version and exit"
    ),
) -> None:
    """Configure logging for all commands."""
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(message)s",
            handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        )


def main() -> None:
    app()


if __name__ == "__main__":
    main()
