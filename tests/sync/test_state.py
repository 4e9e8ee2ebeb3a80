"""Tests for the DataStore facade"""

from __future__ import annotations

import pytest

from viberater.state import DataState, DataStore, RequiresConnectivityError
from viberater.sync.models import is_provisional
from viberater.sync.remote import ApplicationError


async def _seed_server_idea(fake_remote, data_store: DataStore, idea_id: str = "idea-100") -> str:
    fake_remote.ideas[idea_id] = {"id": idea_id, "title": "Garden planner", "status": "idea"}
    await data_store.fetch_ideas()
    return idea_id


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_initialize_loads_cache_grouped_by_project(self, data_store, local_store):
        await local_store.put_many("projects", [{"id": "p1"}, {"id": "p2"}])
        await local_store.put_many(
            "tasks",
            [
                {"id": "t1", "project_id": "p1"},
                {"id": "t2", "project_id": "p2"},
                {"id": "t3", "project_id": "p1"},
            ],
        )

        await data_store.initialize()
        await data_store.initialize()

        state = data_store.state
        assert [p["id"] for p in state.projects] == ["p1", "p2"]
        assert {k: [t["id"] for t in v] for k, v in state.tasks.items()} == {"p1": ["t1", "t3"], "p2": ["t2"]}
        assert state.pending_count == 0
        assert not state.is_offline

    def test_state_is_immutable(self):
        state = DataState()

        with pytest.raises(AttributeError):
            state.loading = True  # type: ignore[misc]

    @pytest.mark.asyncio
    async def test_connectivity_changes_are_reflected(self, data_store, monitor):
        monitor.set_online(False)

        assert data_store.state.is_offline

    @pytest.mark.asyncio
    async def test_listener_sees_snapshots_and_can_unsubscribe(self, data_store):
        seen = []
        unsubscribe = data_store.subscribe(seen.append)

        data_store.clear_error()
        unsubscribe()
        data_store.clear_error()

        assert len(seen) == 1
        assert isinstance(seen[0], DataState)


class TestOfflineRoundTrip:

    @pytest.mark.asyncio
    async def test_create_offline_then_reconnect(self, data_store, monitor, engine, local_store, fake_remote):
        await data_store.initialize()
        monitor.attach(engine)
        monitor.set_online(False)

        idea = await data_store.create_idea({"title": "X"})

        assert is_provisional(idea["id"])
        assert data_store.state.pending_count == 1
        assert [i["id"] for i in await local_store.get_all("ideas")] == [idea["id"]]
        assert fake_remote.calls == []

        monitor.set_online(True)
        await monitor.wait_idle()

        ideas = data_store.state.ideas
        assert len(ideas) == 1
        assert not is_provisional(ideas[0]["id"])
        assert ideas[0]["title"] == "X"
        assert data_store.state.pending_count == 0
        assert not data_store.state.is_syncing
        assert await local_store.queue_size() == 0

    @pytest.mark.asyncio
    async def test_offline_project_and_task_reconcile_together(self, data_store, monitor, engine, fake_remote):
        await data_store.initialize()
        monitor.attach(engine)
        monitor.set_online(False)

        project = await data_store.create_project({"title": "P"})
        task = await data_store.create_task(project["id"], {"title": "T"})
        assert task["project_id"] == project["id"]

        monitor.set_online(True)
        await monitor.wait_idle()

        server_project = data_store.state.projects[0]
        assert not is_provisional(server_project["id"])
        assert project["id"] not in data_store.state.tasks
        tasks = data_store.state.tasks[server_project["id"]]
        assert len(tasks) == 1
        assert not is_provisional(tasks[0]["id"])
        assert tasks[0]["project_id"] == server_project["id"]

    @pytest.mark.asyncio
    async def test_write_to_provisional_id_is_queued_behind_create(self, data_store, monitor, engine, fake_remote):
        monitor.set_online(False)
        idea = await data_store.create_idea({"title": "draft"})
        monitor.set_online(True)
        await monitor.wait_idle()

        await data_store.update_idea(idea["id"], {"title": "final"})
        await engine.wait_idle()

        assert [call[0] for call in fake_remote.calls] == ["create_idea", "update_idea"]
        server_id = fake_remote.called("update_idea")[0][1]
        assert fake_remote.ideas[server_id]["title"] == "final"

    @pytest.mark.asyncio
    async def test_unreachable_server_falls_back_to_queue(self, data_store, monitor, fake_remote, local_store):
        fake_remote.reachable = False

        idea = await data_store.create_idea({"title": "X"})

        assert is_provisional(idea["id"])
        assert not monitor.is_online()
        assert data_store.state.is_offline
        assert await local_store.queue_size() == 1
        assert len(fake_remote.called("create_idea")) == 1


class TestReads:

    @pytest.mark.asyncio
    async def test_fetch_online_replaces_cache(self, data_store, fake_remote, local_store):
        await local_store.put("projects", {"id": "gone"})
        fake_remote.projects["project-1"] = {"id": "project-1", "title": "P"}

        projects = await data_store.fetch_projects()

        assert [p["id"] for p in projects] == ["project-1"]
        assert [p["id"] for p in await local_store.get_all("projects")] == ["project-1"]
        assert not data_store.state.loading
        assert data_store.state.error is None

    @pytest.mark.asyncio
    async def test_filtered_fetch_keeps_other_cached_rows(self, data_store, fake_remote, local_store):
        await local_store.put("ideas", {"id": "idea-old", "status": "archived"})
        fake_remote.ideas["idea-1"] = {"id": "idea-1", "status": "idea"}

        await data_store.fetch_ideas({"status": "idea"})

        ids = {i["id"] for i in await local_store.get_all("ideas")}
        assert ids == {"idea-old", "idea-1"}

    @pytest.mark.asyncio
    async def test_fetch_falls_back_to_cache_when_unreachable(self, data_store, fake_remote, local_store, monitor):
        await local_store.put_many("projects", [{"id": "p1"}, {"id": "p2"}])
        fake_remote.reachable = False

        projects = await data_store.fetch_projects()

        assert [p["id"] for p in projects] == ["p1", "p2"]
        assert data_store.state.error is not None
        assert not data_store.state.loading
        assert not monitor.is_online()

    @pytest.mark.asyncio
    async def test_fetch_offline_reads_cache_without_error(self, data_store, fake_remote, local_store, monitor):
        await local_store.put("ideas", {"id": "idea-1"})
        monitor.set_online(False)

        ideas = await data_store.fetch_ideas()

        assert [i["id"] for i in ideas] == ["idea-1"]
        assert data_store.state.error is None
        assert fake_remote.calls == []

    @pytest.mark.asyncio
    async def test_fetch_keeps_local_only_records_first(self, data_store, fake_remote, monitor):
        monitor.set_online(False)
        draft = await data_store.create_idea({"title": "offline draft"})
        fake_remote.ideas["idea-1"] = {"id": "idea-1", "title": "server"}
        monitor.set_online(True)
        await monitor.wait_idle()

        ideas = await data_store.fetch_ideas()

        assert [i["id"] for i in ideas] == [draft["id"], "idea-1"]

    @pytest.mark.asyncio
    async def test_fetch_keeps_queued_update_and_delete(self, data_store, fake_remote, local_store, monitor):
        fake_remote.ideas["idea-101"] = {"id": "idea-101", "title": "Bike rack", "status": "idea"}
        renamed_id = await _seed_server_idea(fake_remote, data_store)
        monitor.set_online(False)
        await data_store.update_idea(renamed_id, {"title": "Renamed"})
        await data_store.delete_idea("idea-101")
        monitor.set_online(True)
        await monitor.wait_idle()

        ideas = await data_store.fetch_ideas()

        assert ideas == [{"id": renamed_id, "title": "Renamed", "status": "idea"}]
        assert data_store.state.ideas == ideas
        assert (await local_store.get("ideas", renamed_id))["title"] == "Renamed"
        assert await local_store.get("ideas", "idea-101") is None
        assert await local_store.queue_size() == 2

    @pytest.mark.asyncio
    async def test_fetch_project_tasks(self, data_store, fake_remote):
        fake_remote.tasks["task-1"] = {"id": "task-1", "project_id": "project-1"}

        tasks = await data_store.fetch_project_tasks("project-1")

        assert [t["id"] for t in tasks] == ["task-1"]
        assert data_store.state.tasks["project-1"] == tasks


class TestWrites:

    @pytest.mark.asyncio
    async def test_online_create_uses_server_record(self, data_store, local_store, fake_remote):
        idea = await data_store.create_idea({"title": "X"})

        assert idea["id"] == "idea-1"
        assert data_store.state.ideas == [idea]
        assert await local_store.queue_size() == 0

    @pytest.mark.asyncio
    async def test_rejected_write_sets_error_and_skips_local_write(self, data_store, fake_remote, local_store):
        fake_remote.fail("create_idea", ApplicationError("Title is required", status_code=400))

        with pytest.raises(ApplicationError):
            await data_store.create_idea({})

        assert data_store.state.error == "Title is required"
        assert data_store.state.ideas == []
        assert await local_store.get_all("ideas") == []
        assert await local_store.queue_size() == 0

    @pytest.mark.asyncio
    async def test_offline_update_and_delete(self, data_store, fake_remote, local_store, monitor):
        idea_id = await _seed_server_idea(fake_remote, data_store)
        monitor.set_online(False)

        updated = await data_store.update_idea(idea_id, {"title": "Renamed"})
        assert updated == {"id": idea_id, "title": "Renamed", "status": "idea"}
        assert data_store.state.ideas == [updated]

        await data_store.delete_idea(idea_id)
        assert data_store.state.ideas == []
        assert await local_store.get("ideas", idea_id) is None
        assert data_store.state.pending_count == 2

    @pytest.mark.asyncio
    async def test_complete_task_offline(self, data_store, local_store, monitor):
        await local_store.put("tasks", {"id": "task-5", "project_id": "project-1", "status": "todo"})
        await data_store.initialize()
        monitor.set_online(False)

        task = await data_store.complete_task("project-1", "task-5")

        assert task["status"] == "completed"
        assert task["completed_at"]
        assert data_store.state.tasks["project-1"] == [task]
        ops = await local_store.pending_ops()
        assert [(op.entity_id, op.data) for op in ops] == [("task-5", {"status": "completed"})]

    @pytest.mark.asyncio
    async def test_complete_task_online(self, data_store, fake_remote):
        fake_remote.projects["project-1"] = {"id": "project-1"}
        fake_remote.tasks["task-1"] = {"id": "task-1", "project_id": "project-1", "status": "todo"}
        await data_store.fetch_project_tasks("project-1")

        task = await data_store.complete_task("project-1", "task-1")

        assert task["status"] == "completed"
        assert data_store.state.tasks["project-1"] == [task]


class TestDomainActions:

    @pytest.mark.asyncio
    async def test_promote_updates_state_in_one_step(self, data_store, fake_remote):
        idea_id = await _seed_server_idea(fake_remote, data_store)
        snapshots = []
        data_store.subscribe(snapshots.append)

        project = await data_store.promote_idea(
            idea_id, {"title": "Garden", "tasks": [{"title": "Buy seeds"}, {"title": "Dig beds"}]}
        )

        assert len(snapshots) == 1
        state = snapshots[0]
        assert state.ideas[0]["status"] == "promoted-to-project"
        assert state.projects == [project]
        assert [t["title"] for t in state.tasks[project["id"]]] == ["Buy seeds", "Dig beds"]

    @pytest.mark.asyncio
    async def test_demote_removes_project_and_restores_idea(self, data_store, fake_remote):
        idea_id = await _seed_server_idea(fake_remote, data_store)
        project = await data_store.promote_idea(idea_id, {"title": "Garden", "tasks": [{"title": "Dig"}]})

        idea = await data_store.demote_project(project["id"])

        assert idea["id"] == idea_id
        assert data_store.state.projects == []
        assert project["id"] not in data_store.state.tasks
        assert [i["id"] for i in data_store.state.ideas] == [idea_id]
        assert data_store.state.ideas[0]["status"] == "idea"

    @pytest.mark.asyncio
    async def test_promote_offline_is_refused(self, data_store, fake_remote, monitor, local_store):
        idea_id = await _seed_server_idea(fake_remote, data_store)
        monitor.set_online(False)

        with pytest.raises(RequiresConnectivityError):
            await data_store.promote_idea(idea_id, {"title": "Garden"})

        assert data_store.state.error is not None
        assert await local_store.queue_size() == 0
        assert fake_remote.called("promote_idea") == []

    @pytest.mark.asyncio
    async def test_demote_unreachable_is_refused(self, data_store, fake_remote, monitor):
        fake_remote.reachable = False

        with pytest.raises(RequiresConnectivityError):
            await data_store.demote_project("project-1")

        assert not monitor.is_online()
