"""Publish/subscribe bus for sync lifecycle and entity events.

Subscribers are called synchronously in subscription order. A subscriber
that raises is logged and skipped; the publisher and the remaining
subscribers carry on. A subscriber that returns a coroutine has it
scheduled on the running loop and never awaited by the publisher.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, TypeVar

from .models import Record, Resource

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SyncStarted:
    """A drain began. Listeners read queue depth from the store."""


@dataclass(frozen=True)
class SyncCompleted:
    """A drain finished.

    ``attempted`` counts every operation the drain looked at; ``synced``
    only those the server accepted. ``remaining`` is the queue depth left
    behind (deferred and retryable operations).
    """

    attempted: int
    synced: int
    failed: int = 0
    deferred: int = 0
    dead_lettered: int = 0
    remaining: int = 0


@dataclass(frozen=True)
class SyncFailed:
    error: BaseException


@dataclass(frozen=True)
class EntityReconciled:
    """A provisional record was replaced by the server's authoritative copy."""

    resource: Resource
    provisional_id: str
    record: Record


@dataclass(frozen=True)
class EntityApplied:
    """A replayed UPDATE or DELETE reached the server. ``record`` is None for deletes."""

    resource: Resource
    entity_id: str
    record: Optional[Record]


@dataclass(frozen=True)
class ConnectivityChanged:
    online: bool


E = TypeVar("E")
Callback = Callable[[Any], Any]


class EventBus:
    """Typed observer registry keyed by event class."""

    def __init__(self) -> None:
        self._subscribers: dict[type, list[Callback]] = {}
        self._tasks: set[asyncio.Task] = set()

    def subscribe(self, event_type: type[E], callback: Callable[[E], Any]) -> Callable[[], None]:
        """Register *callback* for *event_type*. Returns an unsubscribe function."""
        self._subscribers.setdefault(event_type, []).append(callback)

        def unsubscribe() -> None:
            callbacks = self._subscribers.get(event_type, [])
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    def publish(self, event: Any) -> None:
        for callback in list(self._subscribers.get(type(event), ())):
            try:
                result = callback(event)
            except Exception:
                logger.exception("Subscriber %r failed handling %s", callback, type(event).__name__)
                continue
            if inspect.isawaitable(result):
                self._schedule(result)

    def _schedule(self, awaitable: Any) -> None:
        try:
            loop = asyncio.get_running_loop()
            task = asyncio.ensure_future(awaitable, loop=loop)
        except RuntimeError:
            logger.warning("No running event loop; dropping async subscriber result")
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Async subscriber failed: %s", exc, exc_info=exc)

    def subscriber_count(self, event_type: type) -> int:
        return len(self._subscribers.get(event_type, ()))
