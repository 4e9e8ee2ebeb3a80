"""SyncRuntime: explicitly constructed owner of the sync components.

One runtime holds the event bus, local store, remote client, connectivity
monitor, sync engine and the application state facade built on top of
them. Nothing is a module-level singleton; callers (the CLI, tests, an
embedding application) build a runtime and pass it around.

Usage:
    from viberater.sync.runtime import build_runtime

    async with build_runtime() as runtime:
        await runtime.state.initialize()
        await runtime.state.create_idea({"title": "X"})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

import httpx

from .auth import CredentialStore
from .config import SyncConfig
from .connectivity import ConnectivityMonitor, HealthProbe
from .engine import SyncEngine
from .events import EventBus
from .remote import RemoteClient
from .store import LocalStore

if TYPE_CHECKING:
    from ..state import DataStore

logger = logging.getLogger(__name__)


@dataclass
class SyncRuntime:
    """Wired set of sync components.

    ``start()`` prepares the database, hooks replay to reconnects and
    optionally starts the health probe. ``stop()`` waits for in-flight
    drains and closes the HTTP client. Both are idempotent.
    """

    config: SyncConfig
    bus: EventBus
    store: LocalStore
    remote: RemoteClient
    monitor: ConnectivityMonitor
    engine: SyncEngine
    probe: HealthProbe
    state: "DataStore"
    started: bool = False
    _detach: Any = field(default=None, init=False, repr=False)

    async def start(self, probe: bool = False) -> None:
        if self.started:
            return
        await self.store.init()
        self._detach = self.monitor.attach(self.engine)
        if probe:
            await self.probe.check()
            self.probe.start()
        self.started = True
        logger.debug("SyncRuntime started (server=%s)", self.remote.server_url)

    async def stop(self) -> None:
        if not self.started:
            await self.remote.aclose()
            return
        await self.probe.stop()
        if self._detach is not None:
            self._detach()
            self._detach = None
        await self.monitor.wait_idle()
        await self.engine.wait_idle()
        await self.remote.aclose()
        self.started = False
        logger.debug("SyncRuntime stopped")

    async def __aenter__(self) -> "SyncRuntime":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.stop()


def build_runtime(
    config: Optional[SyncConfig] = None,
    *,
    credentials: Optional[CredentialStore] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    initially_online: bool = True,
) -> SyncRuntime:
    """Construct every component from *config* without starting anything."""
    from ..state import DataStore

    config = config or SyncConfig()
    bus = EventBus()
    store = LocalStore(config.get_db_path())
    remote = RemoteClient(
        config.get_server_url(),
        credentials=credentials or CredentialStore(config.config_dir / "credentials"),
        timeout=config.get_request_timeout(),
        transport=transport,
    )
    monitor = ConnectivityMonitor(
        initially_online=initially_online,
        debounce_seconds=config.get_debounce_seconds(),
        bus=bus,
    )
    engine = SyncEngine(
        store,
        remote,
        is_online=monitor.is_online,
        bus=bus,
        max_retries=config.get_max_retries(),
    )
    probe = HealthProbe(monitor, remote, interval=config.get_probe_interval())
    state = DataStore(store=store, engine=engine, remote=remote, connectivity=monitor, bus=bus)
    return SyncRuntime(
        config=config,
        bus=bus,
        store=store,
        remote=remote,
        monitor=monitor,
        engine=engine,
        probe=probe,
        state=state,
    )
