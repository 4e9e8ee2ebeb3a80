"""Shared plumbing for viberater CLI commands."""

from __future__ import annotations

import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

import typer
from rich.console import Console

from viberater.sync.config import SyncConfig
from viberater.sync.remote import RemoteError
from viberater.sync.runtime import SyncRuntime, build_runtime

T = TypeVar("T")

console = Console()


def print_json(payload: Any) -> None:
    typer.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


def run_or_exit(fn: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body, turning known failures into exit code 1."""
    try:
        return asyncio.run(fn())
    except (RemoteError, RuntimeError, ValueError) as exc:
        typer.secho(str(exc), fg=typer.colors.RED, err=True)
        raise typer.Exit(1) from exc


@asynccontextmanager
async def open_runtime(config: SyncConfig | None = None) -> AsyncIterator[SyncRuntime]:
    """Build and start a runtime for the duration of one command."""
    runtime = build_runtime(config or SyncConfig())
    await runtime.start()
    try:
        yield runtime
    finally:
        await runtime.stop()
