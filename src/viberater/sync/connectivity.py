"""Online/offline tracking and reconnect-triggered replay.

``ConnectivityMonitor`` holds the current connectivity flag and fans out
transitions. Going online schedules a replay after a short debounce window
so a flapping link produces one drain, not one per flap. Replays run under
a lock and never overlap.

``HealthProbe`` feeds the monitor by polling the server's ``/health``
endpoint on an interval.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import TYPE_CHECKING, Any, Callable, Optional

from .events import ConnectivityChanged, EventBus

if TYPE_CHECKING:
    from .engine import SyncEngine
    from .remote import RemoteClient

logger = logging.getLogger(__name__)


class ConnectionStatus:
    """Connection status constants"""
    ONLINE = "Online"
    OFFLINE = "Offline"


class ConnectivityMonitor:
    """Tracks connectivity and triggers replay when the link comes back.

    Args:
        initially_online: Starting state.
        debounce_seconds: Quiet period after an online transition before
            ``on_online`` callbacks run. Further transitions inside the
            window restart it.
        bus: Receives a ``ConnectivityChanged`` event per transition.
    """

    def __init__(
        self,
        initially_online: bool = True,
        debounce_seconds: float = 0.5,
        bus: Optional[EventBus] = None,
    ) -> None:
        self._online = initially_online
        self.debounce_seconds = debounce_seconds
        self.bus = bus or EventBus()
        self._online_callbacks: list[Callable[[], Any]] = []
        self._offline_callbacks: list[Callable[[], Any]] = []
        self._pending: Optional[asyncio.Task] = None
        self._replays: set[asyncio.Task] = set()
        self._replay_lock = asyncio.Lock()
        self.replay_count = 0

    def is_online(self) -> bool:
        return self._online

    @property
    def status(self) -> str:
        return ConnectionStatus.ONLINE if self._online else ConnectionStatus.OFFLINE

    def on_online(self, callback: Callable[[], Any]) -> Callable[[], None]:
        """Run *callback* (sync or async) after each debounced online transition."""
        self._online_callbacks.append(callback)
        return lambda: self._remove(self._online_callbacks, callback)

    def on_offline(self, callback: Callable[[], Any]) -> Callable[[], None]:
        self._offline_callbacks.append(callback)
        return lambda: self._remove(self._offline_callbacks, callback)

    @staticmethod
    def _remove(callbacks: list[Callable[[], Any]], callback: Callable[[], Any]) -> None:
        if callback in callbacks:
            callbacks.remove(callback)

    def attach(self, engine: "SyncEngine") -> Callable[[], None]:
        """Drain *engine*'s queue whenever connectivity returns."""
        return self.on_online(engine.sync)

    def set_online(self, online: bool) -> None:
        """Record a connectivity signal. Repeating the current state is a no-op."""
        if online == self._online:
            return
        self._online = online
        logger.info("Connectivity changed: %s", self.status)
        self.bus.publish(ConnectivityChanged(online))

        if online:
            self._schedule_replay()
            return

        self._cancel_pending()
        for callback in list(self._offline_callbacks):
            try:
                callback()
            except Exception:
                logger.exception("Offline callback %r failed", callback)

    # ── Replay scheduling ─────────────────────────────────────────

    def _cancel_pending(self) -> None:
        # Only a replay still inside its debounce window is pending; one that
        # has started runs to completion.
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def _schedule_replay(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop; replay on reconnect skipped")
            return
        self._cancel_pending()
        task = loop.create_task(self._debounced_replay())
        self._pending = task
        self._replays.add(task)
        task.add_done_callback(self._replays.discard)

    async def _debounced_replay(self) -> None:
        await asyncio.sleep(self.debounce_seconds)
        if self._pending is asyncio.current_task():
            self._pending = None
        async with self._replay_lock:
            if not self._online:
                return
            self.replay_count += 1
            logger.debug("Running %d reconnect callback(s)", len(self._online_callbacks))
            for callback in list(self._online_callbacks):
                try:
                    result = callback()
                    if inspect.isawaitable(result):
                        await result
                except Exception:
                    logger.exception("Reconnect callback %r failed", callback)

    async def wait_idle(self) -> None:
        """Wait until no replay is pending or running."""
        while self._replays:
            await asyncio.gather(*list(self._replays), return_exceptions=True)


class HealthProbe:
    """Polls ``RemoteClient.health()`` and feeds the result to a monitor."""

    def __init__(self, monitor: ConnectivityMonitor, remote: "RemoteClient", interval: float = 30.0) -> None:
        self.monitor = monitor
        self.remote = remote
        self.interval = interval
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check(self) -> bool:
        """Probe once and update the monitor. Returns the observed state."""
        online = await self.remote.health()
        self.monitor.set_online(online)
        return online

    def start(self) -> None:
        if self.is_running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.debug("Health probe started (interval=%ss)", self.interval)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.debug("Health probe stopped")

    async def _run(self) -> None:
        while True:
            try:
                await self.check()
            except Exception as exc:
                logger.warning("Health check failed: %s", exc)
                self.monitor.set_online(False)
            await asyncio.sleep(self.interval)
