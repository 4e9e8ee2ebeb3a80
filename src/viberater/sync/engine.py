"""Replay of queued offline mutations against the server.

The engine drains the sync queue in FIFO order, one operation at a time.
Each operation is looked up in ``REMOTE_CALLS`` by ``(resource, method)``;
the server's answer is then applied to the local store according to the
operation's variant (``Create`` reconciles a provisional id, ``Update``
stores the returned record, ``Delete`` drops the cached row).

Failures are classified instead of retried blindly: a dropped connection
or a 5xx keeps the operation queued with its retry counter bumped, while a
rejected request is dead-lettered so it cannot loop forever. Dead-lettered
operations stay in the database and can be requeued from the CLI.

Conflict policy: replay unconditionally overwrites. Whatever the server
returns for a replayed write replaces the cached record; there is no
version or timestamp check.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

from .events import EntityApplied, EntityReconciled, EventBus, SyncCompleted, SyncFailed, SyncStarted
from .models import (
    Create,
    Delete,
    Method,
    Operation,
    Record,
    Resource,
    SyncOperation,
    Update,
    is_provisional,
    operation_from_variant,
)
from .remote import ApplicationError, RemoteClient, RemoteError, unwrap
from .store import LocalStore, LocalStoreError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 25

RemoteCall = Callable[[RemoteClient, str, Record], Awaitable[dict[str, Any]]]


class OfflineError(RuntimeError):
    """Raised when an operation needs the server and the client is offline."""


def _create_task(remote: RemoteClient, _entity_id: str, data: Record) -> Awaitable[dict[str, Any]]:
    project_id = data.get("project_id")
    if not project_id:
        raise ApplicationError("Task payload has no project_id")
    return remote.create_task(str(project_id), data)


REMOTE_CALLS: dict[tuple[Resource, Method], RemoteCall] = {
    (Resource.IDEA, Method.CREATE): lambda remote, _id, data: remote.create_idea(data),
    (Resource.IDEA, Method.UPDATE): lambda remote, entity_id, data: remote.update_idea(entity_id, data),
    (Resource.IDEA, Method.DELETE): lambda remote, entity_id, _data: remote.delete_idea(entity_id),
    (Resource.PROJECT, Method.CREATE): lambda remote, _id, data: remote.create_project(data),
    (Resource.PROJECT, Method.UPDATE): lambda remote, entity_id, data: remote.update_project(entity_id, data),
    (Resource.PROJECT, Method.DELETE): lambda remote, entity_id, _data: remote.delete_project(entity_id),
    (Resource.TASK, Method.CREATE): _create_task,
    (Resource.TASK, Method.UPDATE): lambda remote, entity_id, data: remote.update_task(entity_id, data),
    (Resource.TASK, Method.DELETE): lambda remote, entity_id, _data: remote.delete_task(entity_id),
}


@dataclass
class OperationResult:
    """Outcome of replaying one queued operation.

    Attributes:
        op_id: Queue row id.
        status: One of ``"synced"``, ``"deferred"``, ``"failed"``, ``"dead"``.
        error: Human-readable error message (failed and dead only).
    """

    op_id: int
    status: str
    error: Optional[str] = None


@dataclass
class SyncResult:
    """Summary of one drain of the sync queue."""

    attempted: int = 0
    synced: int = 0
    failed: int = 0
    deferred: int = 0
    dead_lettered: int = 0
    remaining: int = 0
    results: list[OperationResult] = field(default_factory=list)

    @property
    def error_messages(self) -> list[str]:
        return [r.error for r in self.results if r.error]

    def record(self, result: OperationResult) -> None:
        self.results.append(result)
        if result.status == "synced":
            self.synced += 1
        elif result.status == "deferred":
            self.deferred += 1
        elif result.status == "dead":
            self.dead_lettered += 1
        else:
            self.failed += 1


class _Deferred(Exception):
    """The operation references a provisional id that has no server id yet."""


class SyncEngine:
    """Drains the sync queue and keeps the local store in step with the server.

    Args:
        store: Local cache and durable queue.
        remote: API client used for replay and pulls.
        is_online: Zero-argument callable reporting current connectivity.
        bus: Event bus for lifecycle and entity events.
        max_retries: Retryable failures allowed before an operation is
            dead-lettered. ``0`` retries forever.
    """

    def __init__(
        self,
        store: LocalStore,
        remote: RemoteClient,
        is_online: Callable[[], bool],
        bus: Optional[EventBus] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self.store = store
        self.remote = remote
        self.is_online = is_online
        self.bus = bus or EventBus()
        self.max_retries = max_retries
        self._syncing = False
        self._drains: set[asyncio.Task] = set()
        self._last_sync: Optional[datetime] = None
        self._last_result: Optional[SyncResult] = None

    @property
    def is_syncing(self) -> bool:
        return self._syncing

    @property
    def last_sync(self) -> Optional[datetime]:
        return self._last_sync

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    # ── Queueing ──────────────────────────────────────────────────

    async def queue_operation(self, op: Union[Operation, SyncOperation]) -> SyncOperation:
        """Persist *op* and, when online, start draining in the background.

        Returns the stored queue row. The drain is not awaited; use
        ``wait_idle()`` to wait for it.
        """
        if not isinstance(op, SyncOperation):
            op = operation_from_variant(op)
        queued = await self.store.enqueue(op)
        if self.is_online():
            self._start_background_drain()
        return queued

    def _start_background_drain(self) -> None:
        task = asyncio.ensure_future(self.sync())
        self._drains.add(task)
        task.add_done_callback(self._on_drain_done)

    def _on_drain_done(self, task: asyncio.Task) -> None:
        self._drains.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("Background sync failed: %s", exc)

    async def wait_idle(self) -> None:
        """Wait for drains started by ``queue_operation``."""
        while self._drains:
            await asyncio.gather(*list(self._drains), return_exceptions=True)

    # ── Drain ─────────────────────────────────────────────────────

    async def sync(self) -> Optional[SyncResult]:
        """Replay every pending operation once.

        Single-flight: returns None without doing anything when a drain is
        already running or the client is offline.
        """
        if self._syncing or not self.is_online():
            return None

        self._syncing = True
        self.bus.publish(SyncStarted())
        try:
            result = await self._drain()
        except asyncio.CancelledError as exc:
            logger.warning("Sync cancelled")
            self.bus.publish(SyncFailed(exc))
            raise
        except Exception as exc:
            logger.error("Sync aborted: %s", exc)
            self.bus.publish(SyncFailed(exc))
            raise
        finally:
            self._syncing = False

        self._last_sync = datetime.now(timezone.utc)
        self._last_result = result
        self.bus.publish(
            SyncCompleted(
                attempted=result.attempted,
                synced=result.synced,
                failed=result.failed,
                deferred=result.deferred,
                dead_lettered=result.dead_lettered,
                remaining=result.remaining,
            )
        )
        return result

    async def _drain(self) -> SyncResult:
        ops = await self.store.pending_ops()
        result = SyncResult(attempted=len(ops))
        if not ops:
            return result

        logger.debug("Draining %d queued operation(s)", len(ops))
        # Entities whose earlier operation did not go through in this drain.
        blocked: set[tuple[Resource, str]] = set()
        for op in ops:
            outcome = await self._replay(op, blocked)
            if outcome.status in ("deferred", "failed"):
                blocked.add((op.resource, op.entity_id))
            result.record(outcome)

        await self.store.purge_synced()
        result.remaining = await self.store.queue_size()
        logger.info(
            "Sync finished: %d synced, %d failed, %d deferred, %d dead-lettered",
            result.synced,
            result.failed,
            result.deferred,
            result.dead_lettered,
        )
        return result

    async def _replay(self, op: SyncOperation, blocked: set[tuple[Resource, str]]) -> OperationResult:
        op_id = op.id
        if op_id is None:
            raise LocalStoreError(f"Queued {op.method.value} {op.resource.value} {op.entity_id} has no id")
        variant = op.to_variant()
        try:
            if (op.resource, op.entity_id) in blocked:
                raise _Deferred(op.entity_id)
            if isinstance(variant, Create) and await self._already_created(variant):
                await self.store.mark_synced(op_id)
                return OperationResult(op_id, "synced")

            target = await self._resolve(variant.entity_id) if not isinstance(variant, Create) else variant.entity_id
            payload = await self._resolve_payload(variant.payload)
            call = REMOTE_CALLS[(op.resource, op.method)]
            try:
                response = await call(self.remote, target, payload)
            except ApplicationError as exc:
                if not (isinstance(variant, Delete) and exc.status_code == 404):
                    raise
                logger.debug("%s %s already gone on server", op.resource.value, target)
                response = {}
            await self._apply(variant, target, response)
        except _Deferred:
            logger.debug("Deferring op #%s: %s %s waits on a pending create", op_id, op.method.value, op.entity_id)
            return OperationResult(op_id, "deferred")
        except LocalStoreError:
            raise
        except Exception as exc:
            return await self._handle_failure(op, op_id, exc)

        await self.store.mark_synced(op_id)
        return OperationResult(op_id, "synced")

    async def _already_created(self, variant: Create) -> bool:
        return await self.store.resolve_id(variant.entity_id) != variant.entity_id

    async def _resolve(self, entity_id: str) -> str:
        resolved = await self.store.resolve_id(entity_id)
        if is_provisional(resolved):
            raise _Deferred(entity_id)
        return resolved

    async def _resolve_payload(self, payload: Record) -> Record:
        project_id = payload.get("project_id")
        if project_id is None or not is_provisional(str(project_id)):
            return payload
        resolved = dict(payload)
        resolved["project_id"] = await self._resolve(str(project_id))
        return resolved

    async def _apply(self, variant: Operation, target: str, response: dict[str, Any]) -> None:
        resource = variant.resource
        if isinstance(variant, Create):
            record = unwrap(response, resource.envelope_key)
            await self.store.reconcile(resource, variant.entity_id, record)
            logger.debug("Reconciled %s %s -> %s", resource.value, variant.entity_id, record.get("id"))
            self.bus.publish(EntityReconciled(resource, variant.entity_id, record))
        elif isinstance(variant, Update):
            record = unwrap(response, resource.envelope_key)
            await self.store.put(resource.collection, record)
            self.bus.publish(EntityApplied(resource, target, record))
        else:
            await self.store.delete(resource.collection, target)
            self.bus.publish(EntityApplied(resource, target, None))

    async def _handle_failure(self, op: SyncOperation, op_id: int, exc: Exception) -> OperationResult:
        message = str(exc) or type(exc).__name__
        retryable = exc.retryable if isinstance(exc, RemoteError) else True

        if not retryable:
            logger.warning("Dead-lettering op #%s (%s %s): %s", op_id, op.method.value, op.resource.value, message)
            await self.store.dead_letter(op_id, message)
            return OperationResult(op_id, "dead", message)

        retry_count = await self.store.record_failure(op_id, message)
        if self.max_retries and retry_count >= self.max_retries:
            logger.warning(
                "Dead-lettering op #%s after %d attempts: %s", op_id, retry_count, message
            )
            await self.store.dead_letter(op_id, message)
            return OperationResult(op_id, "dead", message)

        logger.warning(
            "Replay of op #%s (%s %s) failed, will retry (attempt %d): %s",
            op_id,
            op.method.value,
            op.resource.value,
            retry_count,
            message,
        )
        return OperationResult(op_id, "failed", message)

    # ── Pull ──────────────────────────────────────────────────────

    async def pull_from_server(self) -> dict[str, int]:
        """Refresh the whole local cache from the server.

        Fetches ideas, projects and every project's tasks. Records still
        targeted by pending operations survive the refresh. Returns the
        number of records fetched per collection.
        """
        if not self.is_online():
            raise OfflineError("Cannot pull from server while offline")

        ideas = unwrap(await self.remote.get_ideas(), "ideas")
        await self.store.replace_collection("ideas", ideas)

        projects = unwrap(await self.remote.get_projects(), "projects")
        await self.store.replace_collection("projects", projects)

        task_count = 0
        for project in projects:
            project_id = str(project["id"])
            tasks = unwrap(await self.remote.get_project_tasks(project_id), "tasks")
            await self.store.replace_collection("tasks", tasks, project_id=project_id)
            task_count += len(tasks)

        logger.info("Pulled %d ideas, %d projects, %d tasks", len(ideas), len(projects), task_count)
        return {"ideas": len(ideas), "projects": len(projects), "tasks": task_count}
