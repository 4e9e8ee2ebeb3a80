"""Auth commands - sign in to the viberater server and out again."""

from __future__ import annotations

import typer

from viberater.cli import helpers

app = typer.Typer(help="Manage the session used for syncing")


@app.command()
def login(
    email: str = typer.Option(..., "--email", "-e", prompt=True, help="Account email"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, help="Account password"),
) -> None:
    """Sign in and store access and refresh tokens in ~/.viberater/credentials."""

    async def _run() -> None:
        async with helpers.open_runtime() as runtime:
            user = await runtime.remote.login(email, password)
        name = user.get("name") or user.get("email") or email
        helpers.console.print(f"[green]✓[/green] Signed in as [cyan]{name}[/cyan]")

    helpers.run_or_exit(_run)


@app.command()
def logout() -> None:
    """Revoke the session on the server and remove stored tokens."""

    async def _run() -> None:
        async with helpers.open_runtime() as runtime:
            await runtime.remote.logout()
        helpers.console.print("[green]✓[/green] Signed out")

    helpers.run_or_exit(_run)
