"""
Tests for the FastAPI read endpoints, websocket broadcasting and event ingest.
"""

import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from taskboard import api
from taskboard.api import BroadcastPublisher, ConnectionManager, app
from taskboard.errors import NotifierError
from taskboard.events import Event
from taskboard.models import CreateTaskRequest


@pytest.fixture
def client(temp_db_path, monkeypatch):
    """TestClient running the app lifespan against a temporary database."""
    monkeypatch.setenv("TASKBOARD_DATABASE_PATH", temp_db_path)
    monkeypatch.setenv("TASKBOARD_NOTIFY_BASE_DELAY", "0")
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def seeded(client):
    """Seed a small board through the service hosted by the app."""
    service = api.service_instance
    db = service.db
    project_id = db.create_project("Web", "Served over HTTP")
    todo = db.create_column(project_id, "Todo", holds_ready_tasks=True)
    doing = db.create_column(project_id, "Doing", holds_in_progress_tasks=True)
    db.create_column(project_id, "Done", holds_completed_tasks=True)
    db.create_label(project_id, "api")

    blocker = service.create_task(CreateTaskRequest(title="Build endpoint", column_id=todo, position=1))
    blocked = service.create_task(CreateTaskRequest(
        title="Document endpoint", column_id=todo, position=2, blocked_by_ids=[blocker.id]))
    working = service.create_task(CreateTaskRequest(title="Wire websocket", column_id=doing, position=1))

    return {
        "service": service,
        "project_id": project_id,
        "todo": todo,
        "doing": doing,
        "blocker": blocker,
        "blocked": blocked,
        "working": working,
    }


class TestReadEndpoints:

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database_connected"] is True

    def test_service_unavailable_without_lifespan(self):
        plain_client = TestClient(app)
        assert plain_client.get("/healthz").status_code == 503

    def test_board(self, client, seeded):
        response = client.get(f"/api/projects/{seeded['project_id']}/board")
        assert response.status_code == 200
        body = response.json()

        assert body["project"]["name"] == "Web"
        assert [column["name"] for column in body["columns"]] == ["Todo", "Doing", "Done"]
        todo_titles = [task["title"] for task in body["tasks"][str(seeded["todo"])]]
        assert todo_titles == ["Build endpoint", "Document endpoint"]
        assert body["tasks"][str(seeded["todo"])][1]["is_blocked"] is True

    def test_board_search(self, client, seeded):
        response = client.get(f"/api/projects/{seeded['project_id']}/board", params={"q": "websocket"})
        tasks = response.json()["tasks"]
        assert list(tasks) == [str(seeded["doing"])]

    def test_unknown_project(self, client):
        for path in ("board", "tree", "ready", "blocked", "in-progress", "columns", "labels", "references"):
            assert client.get(f"/api/projects/9999/{path}").status_code == 404

    def test_ready_blocked_in_progress(self, client, seeded):
        base = f"/api/projects/{seeded['project_id']}"
        assert [t["id"] for t in client.get(f"{base}/ready").json()] == [seeded["blocker"].id]
        assert [t["id"] for t in client.get(f"{base}/blocked").json()] == [seeded["blocked"].id]
        assert [t["id"] for t in client.get(f"{base}/in-progress").json()] == [seeded["working"].id]

    def test_tree(self, client, seeded):
        forest = client.get(f"/api/projects/{seeded['project_id']}/tree").json()
        roots = {node["id"]: node for node in forest}
        assert set(roots) == {seeded["blocked"].id, seeded["working"].id}
        child = roots[seeded["blocked"].id]["children"][0]
        assert child["id"] == seeded["blocker"].id
        assert child["relation_label"] == "Blocker"

    def test_columns_labels_references(self, client, seeded):
        base = f"/api/projects/{seeded['project_id']}"
        columns = client.get(f"{base}/columns").json()
        assert columns[0]["holds_ready_tasks"] is True
        assert [label["name"] for label in client.get(f"{base}/labels").json()] == ["api"]
        references = client.get(f"{base}/references").json()
        assert [ref["ticket_number"] for ref in references] == [1, 2, 3]

    def test_relation_types(self, client):
        types = client.get("/api/relation-types").json()
        assert [(t["id"], t["is_blocking"]) for t in types] == [(1, False), (2, True), (3, False)]

    def test_task_detail(self, client, seeded):
        response = client.get(f"/api/tasks/{seeded['blocked'].id}")
        assert response.status_code == 200
        detail = response.json()
        assert detail["title"] == "Document endpoint"
        assert detail["is_blocked"] is True
        assert detail["child_tasks"][0]["id"] == seeded["blocker"].id

    def test_task_detail_errors(self, client):
        missing = client.get("/api/tasks/9999")
        assert missing.status_code == 404
        assert missing.json()["detail"] == "task not found"
        assert client.get("/api/tasks/0").status_code == 400


class TestWebSocketUpdates:

    def test_subscriber_receives_project_events(self, client, seeded):
        project_id = seeded["project_id"]
        with client.websocket_connect(f"/ws/updates?project_id={project_id}") as websocket:
            assert websocket.receive_json() == {"type": "connected", "project_id": project_id}

            seeded["service"].move_task_to_next_column(seeded["blocker"].id)

            message = websocket.receive_json()
            assert message["type"] == "db_changed"
            assert message["project_id"] == project_id

    def test_events_filtered_by_project(self, client, seeded):
        service = seeded["service"]
        other_project = service.db.create_project("Elsewhere")
        other_column = service.db.create_column(other_project, "Inbox")

        with client.websocket_connect(f"/ws/updates?project_id={other_project}") as websocket:
            websocket.receive_json()

            # Not delivered: different project
            service.move_task_to_next_column(seeded["blocker"].id)
            service.create_task(CreateTaskRequest(title="Other", column_id=other_column, position=1))

            message = websocket.receive_json()
            assert message["project_id"] == other_project

    def test_subscribe_to_all_projects(self, client, seeded):
        with client.websocket_connect("/ws/updates") as websocket:
            assert websocket.receive_json()["project_id"] == 0
            seeded["service"].move_task_up(seeded["blocked"].id)
            assert websocket.receive_json()["project_id"] == seeded["project_id"]

    def test_posted_event_is_broadcast(self, client, seeded):
        project_id = seeded["project_id"]
        with client.websocket_connect(f"/ws/updates?project_id={project_id}") as websocket:
            websocket.receive_json()

            response = client.post("/api/events", json={"type": "db_changed", "project_id": project_id})

            assert response.status_code == 200
            assert response.json() == {"delivered": 1}
            assert websocket.receive_json()["project_id"] == project_id

    def test_posted_event_validation(self, client):
        assert client.post("/api/events", json={"type": "something_else", "project_id": 1}).status_code == 422


class TestConnectionManager:
    """ConnectionManager with mocked websockets."""

    @staticmethod
    def mock_websocket():
        websocket = MagicMock()
        websocket.accept = AsyncMock()
        websocket.send_text = AsyncMock()
        return websocket

    @pytest.mark.asyncio
    async def test_connect_registers_and_confirms(self):
        manager = ConnectionManager()
        websocket = self.mock_websocket()

        await manager.connect(websocket, project_id=5)

        websocket.accept.assert_awaited_once()
        assert json.loads(websocket.send_text.await_args[0][0]) == {"type": "connected", "project_id": 5}
        assert manager.get_connection_count() == 1

    @pytest.mark.asyncio
    async def test_broadcast_filters_by_project(self):
        manager = ConnectionManager()
        first, second, everything = self.mock_websocket(), self.mock_websocket(), self.mock_websocket()
        await manager.connect(first, project_id=1)
        await manager.connect(second, project_id=2)
        await manager.connect(everything, project_id=0)

        delivered = await manager.broadcast_event(Event(project_id=1))

        assert delivered == 2
        assert first.send_text.await_count == 2
        assert second.send_text.await_count == 1
        assert everything.send_text.await_count == 2

    @pytest.mark.asyncio
    async def test_failed_send_drops_connection(self):
        manager = ConnectionManager()
        healthy, broken = self.mock_websocket(), self.mock_websocket()
        await manager.connect(healthy, project_id=1)
        await manager.connect(broken, project_id=1)
        broken.send_text.side_effect = RuntimeError("socket closed")

        delivered = await manager.broadcast_event(Event(project_id=1))

        assert delivered == 1
        assert manager.get_connection_count() == 1

    @pytest.mark.asyncio
    async def test_broadcast_without_connections(self):
        assert await ConnectionManager().broadcast_event(Event(project_id=1)) == 0

    @pytest.mark.asyncio
    async def test_publisher_on_loop_thread_schedules_task(self):
        manager = ConnectionManager()
        websocket = self.mock_websocket()
        await manager.connect(websocket, project_id=3)
        publisher = BroadcastPublisher(manager, asyncio.get_running_loop())

        publisher.send_event(Event(project_id=3))
        await asyncio.sleep(0.01)

        assert websocket.send_text.await_count == 2

    @pytest.mark.asyncio
    async def test_publisher_keeps_scheduled_tasks_until_done(self):
        manager = ConnectionManager()
        release = asyncio.Event()

        async def slow_broadcast(event):
            await release.wait()
            return 0

        manager.broadcast_event = slow_broadcast
        publisher = BroadcastPublisher(manager, asyncio.get_running_loop())

        publisher.send_event(Event(project_id=1))
        publisher.send_event(Event(project_id=2))
        await asyncio.sleep(0)
        assert len(publisher._pending) == 2

        release.set()
        await asyncio.gather(*publisher._pending)
        await asyncio.sleep(0)
        assert publisher._pending == set()

    def test_publisher_with_closed_loop(self):
        loop = asyncio.new_event_loop()
        loop.close()
        publisher = BroadcastPublisher(ConnectionManager(), loop)
        with pytest.raises(NotifierError):
            publisher.send_event(Event(project_id=1))
