"""Application state facade over the local cache, the sync engine and the API.

``DataStore`` is the one place the rest of the application reads and writes
ideas, projects and tasks. Each write goes to the server when the client is
online and falls back to an optimistic local write plus a queued operation
when it is not (or when the server turns out to be unreachable). The
current view is kept in an immutable ``DataState`` snapshot that is swapped
atomically by ``_set``; listeners registered with ``subscribe`` see every
swap.

Usage:
    state = DataStore(store=store, engine=engine, remote=remote,
                      connectivity=monitor, bus=bus)
    await state.initialize()
    idea = await state.create_idea({"title": "X"})
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .sync.connectivity import ConnectivityMonitor
from .sync.engine import OfflineError, SyncEngine, SyncResult
from .sync.events import (
    ConnectivityChanged,
    EntityApplied,
    EntityReconciled,
    EventBus,
    SyncCompleted,
    SyncFailed,
    SyncStarted,
)
from .sync.models import (
    Create,
    Delete,
    Method,
    Record,
    Resource,
    Update,
    is_provisional,
    new_provisional_id,
    now_iso,
)
from .sync.remote import ConnectivityError, RemoteClient, unwrap
from .sync.store import LocalStore

logger = logging.getLogger(__name__)

T = TypeVar("T")

PROMOTED_STATUS = "promoted-to-project"
COMPLETED_STATUS = "completed"


class RequiresConnectivityError(OfflineError):
    """Raised for domain actions that only the server can perform."""


@dataclass(frozen=True)
class DataState:
    """Snapshot of everything the UI renders.

    ``tasks`` maps a project id to that project's tasks.
    """

    ideas: list[Record] = field(default_factory=list)
    projects: list[Record] = field(default_factory=list)
    tasks: dict[str, list[Record]] = field(default_factory=dict)
    loading: bool = False
    error: Optional[str] = None
    is_offline: bool = False
    is_syncing: bool = False
    pending_count: int = 0


def _group_by_project(tasks: list[Record]) -> dict[str, list[Record]]:
    grouped: dict[str, list[Record]] = {}
    for task in tasks:
        grouped.setdefault(str(task.get("project_id")), []).append(task)
    return grouped


def _replace_by_id(records: list[Record], entity_id: str, record: Record) -> list[Record]:
    return [record if r.get("id") == entity_id else r for r in records]


def _without_id(records: list[Record], entity_id: str) -> list[Record]:
    return [r for r in records if r.get("id") != entity_id]


def _contains(records: list[Record], entity_id: str) -> bool:
    return any(r.get("id") == entity_id for r in records)


class DataStore:
    """Offline-aware CRUD facade for ideas, projects and tasks.

    Args:
        store: Local cache and sync queue.
        engine: Queues offline writes and replays them.
        remote: API client for the online path.
        connectivity: Source of the online flag. A ``ConnectivityError``
            on the online path marks the monitor offline.
        bus: Event bus the engine and monitor publish on.
    """

    def __init__(
        self,
        store: LocalStore,
        engine: SyncEngine,
        remote: RemoteClient,
        connectivity: ConnectivityMonitor,
        bus: Optional[EventBus] = None,
    ) -> None:
        self.store = store
        self.engine = engine
        self.remote = remote
        self.connectivity = connectivity
        self.bus = bus or engine.bus
        self._state = DataState(is_offline=not connectivity.is_online())
        self._listeners: list[Callable[[DataState], Any]] = []
        self._initialized = False

        self.bus.subscribe(SyncStarted, self._on_sync_started)
        self.bus.subscribe(SyncCompleted, self._on_sync_completed)
        self.bus.subscribe(SyncFailed, self._on_sync_failed)
        self.bus.subscribe(EntityReconciled, self._on_entity_reconciled)
        self.bus.subscribe(EntityApplied, self._on_entity_applied)
        self.bus.subscribe(ConnectivityChanged, self._on_connectivity_changed)

    # ── State container ───────────────────────────────────────────

    @property
    def state(self) -> DataState:
        return self._state

    def subscribe(self, listener: Callable[[DataState], Any]) -> Callable[[], None]:
        """Call *listener* with each new snapshot. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _set(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception:
                logger.exception("State listener %r failed", listener)

    def clear_error(self) -> None:
        self._set(error=None)

    # ── Helpers ───────────────────────────────────────────────────

    def _online(self) -> bool:
        return self.connectivity.is_online()

    def _went_offline(self, exc: ConnectivityError) -> None:
        logger.warning("Server unreachable, continuing offline: %s", exc)
        self.connectivity.set_online(False)

    async def _write(
        self,
        online: Optional[Callable[[], Awaitable[T]]],
        offline: Callable[[], Awaitable[T]],
    ) -> T:
        """Run *online* when possible, *offline* otherwise.

        A connectivity failure on the online path falls through to
        *offline*. Any other failure is recorded in ``error`` and re-raised.
        """
        try:
            if online is not None and self._online():
                try:
                    return await online()
                except ConnectivityError as exc:
                    self._went_offline(exc)
            return await offline()
        except Exception as exc:
            self._set(error=str(exc))
            raise

    async def _online_only(self, action: str, call: Callable[[], Awaitable[T]]) -> T:
        try:
            if not self._online():
                raise RequiresConnectivityError(f"{action} requires a connection to the server")
            try:
                return await call()
            except ConnectivityError as exc:
                self._went_offline(exc)
                raise RequiresConnectivityError(f"{action} requires a connection to the server") from exc
        except Exception as exc:
            self._set(error=str(exc))
            raise

    async def _pending_count(self) -> int:
        return await self.store.queue_size()

    async def _queue_create(self, resource: Resource, data: Record, **extra: Any) -> Record:
        provisional_id = new_provisional_id()
        payload = {**data, **extra}
        record = {**payload, "id": provisional_id, "created_at": now_iso()}
        await self.store.put(resource.collection, record)
        await self.engine.queue_operation(Create(resource, provisional_id, payload))
        return record

    async def _queue_update(self, resource: Resource, current: Optional[Record], entity_id: str, data: Record) -> Record:
        updated = {**(current or {}), **data, "id": entity_id}
        await self.store.put(resource.collection, updated)
        await self.engine.queue_operation(Update(resource, entity_id, dict(data)))
        return updated

    async def _queue_delete(self, resource: Resource, entity_id: str) -> None:
        await self.store.delete(resource.collection, entity_id)
        await self.engine.queue_operation(Delete(resource, entity_id))

    async def _refresh(
        self,
        collection: str,
        records: list[Record],
        *,
        full_listing: bool,
        project_id: Optional[str] = None,
    ) -> list[Record]:
        """Store a server listing and return it with local-only records in front.

        Records with a queued local change are not overwritten: a pending
        update keeps the cached copy and a pending delete keeps the record
        out of the result until the queue has been replayed.
        """
        pending: dict[str, Method] = {}
        for op in await self.store.pending_ops():
            if op.resource.collection == collection:
                pending[await self.store.resolve_id(op.entity_id)] = op.method
        fresh = [r for r in records if r.get("id") not in pending]

        if full_listing:
            await self.store.replace_collection(collection, fresh, project_id=project_id)
        else:
            await self.store.put_many(collection, fresh)
        cached = (
            await self.store.get_tasks_by_project(project_id)
            if project_id is not None
            else await self.store.get_all(collection)
        )
        by_id = {r.get("id"): r for r in cached}

        merged: list[Record] = []
        for record in records:
            method = pending.get(record.get("id"))
            if method is Method.DELETE:
                continue
            if method is Method.UPDATE:
                record = by_id.get(record.get("id"), record)
            merged.append(record)
        server_ids = {r.get("id") for r in records}
        local_only = [r for r in cached if is_provisional(r.get("id")) and r.get("id") not in server_ids]
        return [*local_only, *merged]

    def _project_tasks(self, project_id: str) -> list[Record]:
        return list(self._state.tasks.get(project_id, []))

    # ── Lifecycle ─────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Prepare the local store and load the cached view. Idempotent."""
        if self._initialized:
            return
        try:
            await self.store.init()
            ideas = await self.store.get_all("ideas")
            projects = await self.store.get_all("projects")
            tasks = await self.store.get_all("tasks")
            pending = await self._pending_count()
        except Exception as exc:
            logger.error("Failed to initialize local store: %s", exc)
            self._set(error=str(exc))
            raise
        self._initialized = True
        self._set(
            ideas=ideas,
            projects=projects,
            tasks=_group_by_project(tasks),
            pending_count=pending,
            is_offline=not self._online(),
        )
        logger.debug(
            "Loaded from cache: %d ideas, %d projects, %d tasks", len(ideas), len(projects), len(tasks)
        )

    async def sync(self) -> Optional[SyncResult]:
        """Drain the queue now. Returns None when skipped (offline or already syncing)."""
        try:
            return await self.engine.sync()
        except Exception as exc:
            self._set(error=str(exc))
            raise

    # ── Ideas ─────────────────────────────────────────────────────

    async def fetch_ideas(self, params: Optional[dict[str, Any]] = None) -> list[Record]:
        self._set(loading=True, error=None)
        error: Optional[str] = None
        ideas: Optional[list[Record]] = None
        if self._online():
            try:
                listing = unwrap(await self.remote.get_ideas(params), "ideas")
                ideas = await self._refresh("ideas", listing, full_listing=not params)
            except Exception as exc:
                if isinstance(exc, ConnectivityError):
                    self._went_offline(exc)
                logger.warning("Fetching ideas failed, using cache: %s", exc)
                error = str(exc)
        if ideas is None:
            ideas = await self.store.get_all("ideas")
        self._set(ideas=ideas, loading=False, error=error)
        return ideas

    async def create_idea(self, data: Record) -> Record:
        async def online() -> Record:
            idea = unwrap(await self.remote.create_idea(data), "idea")
            await self.store.put("ideas", idea)
            self._set(ideas=[idea, *self._state.ideas])
            return idea

        async def offline() -> Record:
            idea = await self._queue_create(Resource.IDEA, data)
            pending = await self._pending_count()
            self._set(ideas=[idea, *self._state.ideas], pending_count=pending)
            return idea

        return await self._write(online, offline)

    async def update_idea(self, idea_id: str, data: Record) -> Record:
        entity_id = await self.store.resolve_id(idea_id)
        current = next((i for i in self._state.ideas if i.get("id") in (idea_id, entity_id)), None)

        async def online() -> Record:
            idea = unwrap(await self.remote.update_idea(entity_id, data), "idea")
            await self.store.put("ideas", idea)
            self._set(ideas=_replace_by_id(self._state.ideas, entity_id, idea))
            return idea

        async def offline() -> Record:
            base = current or await self.store.get("ideas", entity_id)
            idea = await self._queue_update(Resource.IDEA, base, entity_id, data)
            pending = await self._pending_count()
            self._set(ideas=_replace_by_id(self._state.ideas, entity_id, idea), pending_count=pending)
            return idea

        return await self._write(None if is_provisional(entity_id) else online, offline)

    async def delete_idea(self, idea_id: str) -> None:
        entity_id = await self.store.resolve_id(idea_id)

        async def online() -> None:
            await self.remote.delete_idea(entity_id)
            await self.store.delete("ideas", entity_id)
            self._set(ideas=_without_id(self._state.ideas, entity_id))

        async def offline() -> None:
            await self._queue_delete(Resource.IDEA, entity_id)
            pending = await self._pending_count()
            self._set(ideas=_without_id(self._state.ideas, entity_id), pending_count=pending)

        await self._write(None if is_provisional(entity_id) else online, offline)

    async def promote_idea(self, idea_id: str, project_plan: Record) -> Record:
        """Turn an idea into a project with tasks. Online only.

        The idea's new status, the project and its tasks land in state in
        a single update.
        """
        entity_id = await self.store.resolve_id(idea_id)

        async def call() -> Record:
            if is_provisional(entity_id):
                raise RequiresConnectivityError("Idea has not been synced to the server yet")
            response = await self.remote.promote_idea(entity_id, project_plan)
            project = unwrap(response, "project")
            tasks = list(response.get("tasks") or [])

            await self.store.put("projects", project)
            if tasks:
                await self.store.put_many("tasks", tasks)
            cached_idea = await self.store.get("ideas", entity_id)
            if cached_idea is not None:
                await self.store.put("ideas", {**cached_idea, "status": PROMOTED_STATUS})

            project_id = str(project["id"])
            self._set(
                ideas=[
                    {**idea, "status": PROMOTED_STATUS} if idea.get("id") == entity_id else idea
                    for idea in self._state.ideas
                ],
                projects=[project, *self._state.projects],
                tasks={**self._state.tasks, project_id: tasks} if tasks else self._state.tasks,
            )
            return project

        return await self._online_only("Promoting an idea", call)

    # ── Projects ──────────────────────────────────────────────────

    async def fetch_projects(self, params: Optional[dict[str, Any]] = None) -> list[Record]:
        self._set(loading=True, error=None)
        error: Optional[str] = None
        projects: Optional[list[Record]] = None
        if self._online():
            try:
                listing = unwrap(await self.remote.get_projects(params), "projects")
                projects = await self._refresh("projects", listing, full_listing=not params)
            except Exception as exc:
                if isinstance(exc, ConnectivityError):
                    self._went_offline(exc)
                logger.warning("Fetching projects failed, using cache: %s", exc)
                error = str(exc)
        if projects is None:
            projects = await self.store.get_all("projects")
        self._set(projects=projects, loading=False, error=error)
        return projects

    async def create_project(self, data: Record) -> Record:
        async def online() -> Record:
            project = unwrap(await self.remote.create_project(data), "project")
            await self.store.put("projects", project)
            self._set(projects=[project, *self._state.projects])
            return project

        async def offline() -> Record:
            project = await self._queue_create(Resource.PROJECT, data)
            pending = await self._pending_count()
            self._set(projects=[project, *self._state.projects], pending_count=pending)
            return project

        return await self._write(online, offline)

    async def update_project(self, project_id: str, data: Record) -> Record:
        entity_id = await self.store.resolve_id(project_id)
        current = next((p for p in self._state.projects if p.get("id") in (project_id, entity_id)), None)

        async def online() -> Record:
            project = unwrap(await self.remote.update_project(entity_id, data), "project")
            await self.store.put("projects", project)
            self._set(projects=_replace_by_id(self._state.projects, entity_id, project))
            return project

        async def offline() -> Record:
            base = current or await self.store.get("projects", entity_id)
            project = await self._queue_update(Resource.PROJECT, base, entity_id, data)
            pending = await self._pending_count()
            self._set(projects=_replace_by_id(self._state.projects, entity_id, project), pending_count=pending)
            return project

        return await self._write(None if is_provisional(entity_id) else online, offline)

    async def delete_project(self, project_id: str) -> None:
        entity_id = await self.store.resolve_id(project_id)

        async def online() -> None:
            await self.remote.delete_project(entity_id)
            await self.store.delete("projects", entity_id)
            self._set(projects=_without_id(self._state.projects, entity_id))

        async def offline() -> None:
            await self._queue_delete(Resource.PROJECT, entity_id)
            pending = await self._pending_count()
            self._set(projects=_without_id(self._state.projects, entity_id), pending_count=pending)

        await self._write(None if is_provisional(entity_id) else online, offline)

    async def demote_project(self, project_id: str) -> Record:
        """Turn a project back into an idea. Online only."""
        entity_id = await self.store.resolve_id(project_id)

        async def call() -> Record:
            if is_provisional(entity_id):
                raise RequiresConnectivityError("Project has not been synced to the server yet")
            idea = unwrap(await self.remote.demote_project(entity_id), "idea")
            await self.store.delete("projects", entity_id)
            await self.store.put("ideas", idea)

            idea_id = idea.get("id")
            ideas = self._state.ideas
            tasks = {k: v for k, v in self._state.tasks.items() if k != entity_id}
            self._set(
                projects=_without_id(self._state.projects, entity_id),
                ideas=_replace_by_id(ideas, idea_id, idea) if _contains(ideas, idea_id) else [idea, *ideas],
                tasks=tasks,
            )
            return idea

        return await self._online_only("Demoting a project", call)

    # ── Tasks ─────────────────────────────────────────────────────

    async def fetch_project_tasks(self, project_id: str) -> list[Record]:
        entity_id = await self.store.resolve_id(project_id)
        error: Optional[str] = None
        tasks: Optional[list[Record]] = None
        if self._online() and not is_provisional(entity_id):
            try:
                listing = unwrap(await self.remote.get_project_tasks(entity_id), "tasks")
                tasks = await self._refresh("tasks", listing, full_listing=True, project_id=entity_id)
            except Exception as exc:
                if isinstance(exc, ConnectivityError):
                    self._went_offline(exc)
                logger.warning("Fetching tasks for %s failed, using cache: %s", entity_id, exc)
                error = str(exc)
        if tasks is None:
            tasks = await self.store.get_tasks_by_project(entity_id)
        changes: dict[str, Any] = {"tasks": {**self._state.tasks, entity_id: tasks}}
        if error is not None:
            changes["error"] = error
        self._set(**changes)
        return tasks

    async def create_task(self, project_id: str, data: Record) -> Record:
        entity_id = await self.store.resolve_id(project_id)

        async def online() -> Record:
            task = unwrap(await self.remote.create_task(entity_id, data), "task")
            await self.store.put("tasks", task)
            self._set(tasks={**self._state.tasks, entity_id: [*self._project_tasks(entity_id), task]})
            return task

        async def offline() -> Record:
            task = await self._queue_create(Resource.TASK, data, project_id=entity_id)
            pending = await self._pending_count()
            self._set(
                tasks={**self._state.tasks, entity_id: [*self._project_tasks(entity_id), task]},
                pending_count=pending,
            )
            return task

        return await self._write(None if is_provisional(entity_id) else online, offline)

    async def _current_task(self, project_id: str, task_id: str) -> Optional[Record]:
        current = next((t for t in self._project_tasks(project_id) if t.get("id") == task_id), None)
        return current or await self.store.get("tasks", task_id)

    async def update_task(self, project_id: str, task_id: str, data: Record) -> Record:
        project_key = await self.store.resolve_id(project_id)
        entity_id = await self.store.resolve_id(task_id)

        async def online() -> Record:
            task = unwrap(await self.remote.update_task(entity_id, data), "task")
            await self.store.put("tasks", task)
            self._set(
                tasks={**self._state.tasks, project_key: _replace_by_id(self._project_tasks(project_key), entity_id, task)}
            )
            return task

        async def offline() -> Record:
            base = await self._current_task(project_key, entity_id) or {"project_id": project_key}
            task = await self._queue_update(Resource.TASK, base, entity_id, data)
            pending = await self._pending_count()
            self._set(
                tasks={**self._state.tasks, project_key: _replace_by_id(self._project_tasks(project_key), entity_id, task)},
                pending_count=pending,
            )
            return task

        return await self._write(None if is_provisional(entity_id) else online, offline)

    async def delete_task(self, project_id: str, task_id: str) -> None:
        project_key = await self.store.resolve_id(project_id)
        entity_id = await self.store.resolve_id(task_id)

        async def online() -> None:
            await self.remote.delete_task(entity_id)
            await self.store.delete("tasks", entity_id)
            self._set(tasks={**self._state.tasks, project_key: _without_id(self._project_tasks(project_key), entity_id)})

        async def offline() -> None:
            await self._queue_delete(Resource.TASK, entity_id)
            pending = await self._pending_count()
            self._set(
                tasks={**self._state.tasks, project_key: _without_id(self._project_tasks(project_key), entity_id)},
                pending_count=pending,
            )

        await self._write(None if is_provisional(entity_id) else online, offline)

    async def complete_task(self, project_id: str, task_id: str) -> Record:
        """Mark a task completed.

        Offline this is queued as an UPDATE of ``status`` and the completion
        time is stamped locally.
        """
        project_key = await self.store.resolve_id(project_id)
        entity_id = await self.store.resolve_id(task_id)

        async def online() -> Record:
            task = unwrap(await self.remote.complete_task(entity_id), "task")
            await self.store.put("tasks", task)
            self._set(
                tasks={**self._state.tasks, project_key: _replace_by_id(self._project_tasks(project_key), entity_id, task)}
            )
            return task

        async def offline() -> Record:
            base = await self._current_task(project_key, entity_id) or {"project_id": project_key}
            task = {**base, "id": entity_id, "status": COMPLETED_STATUS, "completed_at": now_iso()}
            await self.store.put("tasks", task)
            await self.engine.queue_operation(Update(Resource.TASK, entity_id, {"status": COMPLETED_STATUS}))
            pending = await self._pending_count()
            self._set(
                tasks={**self._state.tasks, project_key: _replace_by_id(self._project_tasks(project_key), entity_id, task)},
                pending_count=pending,
            )
            return task

        return await self._write(None if is_provisional(entity_id) else online, offline)

    # ── Event handlers ────────────────────────────────────────────

    def _on_sync_started(self, _event: SyncStarted) -> None:
        self._set(is_syncing=True)

    def _on_sync_completed(self, event: SyncCompleted) -> None:
        self._set(is_syncing=False, pending_count=event.remaining)

    def _on_sync_failed(self, event: SyncFailed) -> None:
        self._set(is_syncing=False, error=str(event.error))

    def _on_connectivity_changed(self, event: ConnectivityChanged) -> None:
        self._set(is_offline=not event.online)

    def _on_entity_reconciled(self, event: EntityReconciled) -> None:
        old_id = event.provisional_id
        record = event.record
        new_id = str(record.get("id"))

        if event.resource is Resource.IDEA:
            if _contains(self._state.ideas, old_id):
                self._set(ideas=_replace_by_id(self._state.ideas, old_id, record))
        elif event.resource is Resource.PROJECT:
            tasks = dict(self._state.tasks)
            moved = tasks.pop(old_id, None)
            if moved is not None:
                tasks[new_id] = [
                    *tasks.get(new_id, []),
                    *({**task, "project_id": new_id} for task in moved),
                ]
            if _contains(self._state.projects, old_id) or moved is not None:
                self._set(projects=_replace_by_id(self._state.projects, old_id, record), tasks=tasks)
        else:
            tasks = {
                key: _replace_by_id(items, old_id, record) if _contains(items, old_id) else items
                for key, items in self._state.tasks.items()
            }
            if tasks != self._state.tasks:
                self._set(tasks=tasks)

    def _on_entity_applied(self, event: EntityApplied) -> None:
        entity_id = event.entity_id
        record = event.record

        def apply(items: list[Record]) -> list[Record]:
            if not _contains(items, entity_id):
                return items
            if record is None:
                return _without_id(items, entity_id)
            return _replace_by_id(items, entity_id, record)

        if event.resource is Resource.IDEA:
            self._set(ideas=apply(self._state.ideas))
        elif event.resource is Resource.PROJECT:
            self._set(projects=apply(self._state.projects))
        else:
            self._set(tasks={key: apply(items) for key, items in self._state.tasks.items()})
