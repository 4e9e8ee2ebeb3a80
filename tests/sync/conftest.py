"""Shared fixtures for sync module tests."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, Optional

import pytest

from viberater.state import DataStore
from viberater.sync.connectivity import ConnectivityMonitor
from viberater.sync.engine import SyncEngine
from viberater.sync.events import EventBus
from viberater.sync.remote import ApplicationError, ConnectivityError
from viberater.sync.store import LocalStore


class FakeRemote:
    """In-memory stand-in for RemoteClient.

    Holds server-side ideas, projects and tasks, issues ids like
    ``idea-1``, records every call and can be told to fail.
    """

    def __init__(self) -> None:
        self.server_url = "http://fake-server"
        self.credentials = None
        self.ideas: dict[str, dict[str, Any]] = {}
        self.projects: dict[str, dict[str, Any]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.reachable = True
        self.failures: dict[str, list[Exception]] = {}
        self.gate: Optional[asyncio.Event] = None
        self._next_id = 1

    def fail(self, method: str, exc: Exception, times: int = 1) -> None:
        self.failures.setdefault(method, []).extend([exc] * times)

    def called(self, method: str) -> list[tuple[Any, ...]]:
        return [call for call in self.calls if call[0] == method]

    async def _enter(self, method: str, *args: Any) -> None:
        self.calls.append((method, *args))
        if self.gate is not None:
            await self.gate.wait()
        if not self.reachable:
            raise ConnectivityError(f"{method}: connection refused")
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def _new_id(self, prefix: str) -> str:
        value = f"{prefix}-{self._next_id}"
        self._next_id += 1
        return value

    @staticmethod
    def _require(collection: dict[str, dict[str, Any]], entity_id: str, label: str) -> dict[str, Any]:
        if entity_id not in collection:
            raise ApplicationError(f"{label} not found", status_code=404)
        return collection[entity_id]

    async def health(self) -> bool:
        self.calls.append(("health",))
        return self.reachable

    # ideas

    async def get_ideas(self, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        await self._enter("get_ideas", params)
        return {"ideas": [dict(i) for i in self.ideas.values()]}

    async def create_idea(self, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create_idea", dict(data))
        idea = {"status": "idea", **data, "id": self._new_id("idea")}
        self.ideas[idea["id"]] = idea
        return {"idea": dict(idea)}

    async def update_idea(self, idea_id: str, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("update_idea", idea_id, dict(data))
        idea = self._require(self.ideas, idea_id, "Idea")
        idea.update(data)
        return {"idea": dict(idea)}

    async def delete_idea(self, idea_id: str) -> dict[str, Any]:
        await self._enter("delete_idea", idea_id)
        self._require(self.ideas, idea_id, "Idea")
        del self.ideas[idea_id]
        return {"success": True}

    async def promote_idea(self, idea_id: str, project_plan: dict[str, Any]) -> dict[str, Any]:
        await self._enter("promote_idea", idea_id, dict(project_plan))
        idea = self._require(self.ideas, idea_id, "Idea")
        idea["status"] = "promoted-to-project"
        project = {"id": self._new_id("project"), "title": project_plan.get("title", idea.get("title")), "idea_id": idea_id}
        self.projects[project["id"]] = project
        tasks = []
        for item in project_plan.get("tasks", []):
            task = {**item, "id": self._new_id("task"), "project_id": project["id"], "status": "todo"}
            self.tasks[task["id"]] = task
            tasks.append(dict(task))
        return {"project": dict(project), "tasks": tasks}

    # projects

    async def get_projects(self, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        await self._enter("get_projects", params)
        return {"projects": [dict(p) for p in self.projects.values()]}

    async def create_project(self, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create_project", dict(data))
        project = {**data, "id": self._new_id("project")}
        self.projects[project["id"]] = project
        return {"project": dict(project)}

    async def update_project(self, project_id: str, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("update_project", project_id, dict(data))
        project = self._require(self.projects, project_id, "Project")
        project.update(data)
        return {"project": dict(project)}

    async def delete_project(self, project_id: str) -> dict[str, Any]:
        await self._enter("delete_project", project_id)
        self._require(self.projects, project_id, "Project")
        del self.projects[project_id]
        return {"success": True}

    async def demote_project(self, project_id: str) -> dict[str, Any]:
        await self._enter("demote_project", project_id)
        project = self.projects.pop(project_id, None)
        if project is None:
            raise ApplicationError("Project not found", status_code=404)
        idea_id = project.get("idea_id") or self._new_id("idea")
        idea = {**self.ideas.get(idea_id, {}), "id": idea_id, "title": project.get("title"), "status": "idea"}
        self.ideas[idea_id] = idea
        return {"idea": dict(idea)}

    # tasks

    async def get_project_tasks(self, project_id: str) -> dict[str, Any]:
        await self._enter("get_project_tasks", project_id)
        return {"tasks": [dict(t) for t in self.tasks.values() if t.get("project_id") == project_id]}

    async def create_task(self, project_id: str, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("create_task", project_id, dict(data))
        self._require(self.projects, project_id, "Project")
        task = {"status": "todo", **data, "id": self._new_id("task"), "project_id": project_id}
        self.tasks[task["id"]] = task
        return {"task": dict(task)}

    async def update_task(self, task_id: str, data: dict[str, Any]) -> dict[str, Any]:
        await self._enter("update_task", task_id, dict(data))
        task = self._require(self.tasks, task_id, "Task")
        task.update(data)
        return {"task": dict(task)}

    async def delete_task(self, task_id: str) -> dict[str, Any]:
        await self._enter("delete_task", task_id)
        self._require(self.tasks, task_id, "Task")
        del self.tasks[task_id]
        return {"success": True}

    async def complete_task(self, task_id: str) -> dict[str, Any]:
        await self._enter("complete_task", task_id)
        task = self._require(self.tasks, task_id, "Task")
        task.update({"status": "completed", "completed_at": "2026-01-01T00:00:00+00:00"})
        return {"task": dict(task)}


@pytest.fixture
def fake_remote() -> FakeRemote:
    return FakeRemote()


@pytest.fixture
def local_store(tmp_path: Path) -> LocalStore:
    """LocalStore with its schema created under tmp_path."""
    store = LocalStore(tmp_path / "local.db")
    store._init_db()
    return store


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def monitor(bus: EventBus) -> ConnectivityMonitor:
    return ConnectivityMonitor(initially_online=True, debounce_seconds=0.01, bus=bus)


@pytest.fixture
def engine(local_store: LocalStore, fake_remote: FakeRemote, monitor: ConnectivityMonitor, bus: EventBus) -> SyncEngine:
    return SyncEngine(local_store, fake_remote, is_online=monitor.is_online, bus=bus, max_retries=3)


@pytest.fixture
def data_store(
    local_store: LocalStore,
    engine: SyncEngine,
    fake_remote: FakeRemote,
    monitor: ConnectivityMonitor,
    bus: EventBus,
) -> DataStore:
    return DataStore(store=local_store, engine=engine, remote=fake_remote, connectivity=monitor, bus=bus)
