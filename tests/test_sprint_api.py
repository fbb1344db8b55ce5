"""Tests for the sprint API endpoints."""

from __future__ import annotations

from pathlib import Path

import pytest
from httpx import ASGITransport, AsyncClient

from sprint_runner.server.api import create_app

NOTES = {"summary": "Schema created", "files_changed": ["db/schema.sql"], "design_decisions": []}


def _definition() -> dict:
    return {
        "sprint": {"id": "api-sprint", "name": "API sprint"},
        "tasks": [
            {"id": "db", "name": "Schema", "status": "pending", "phase": "build", "assigned_role": "dev",
             "estimated_effort": 2},
            {"id": "api", "name": "API", "status": "pending", "phase": "build", "assigned_role": "dev",
             "dependencies": ["db"], "estimated_effort": 3},
            {"id": "docs", "name": "Docs", "status": "pending", "phase": "docs", "assigned_role": "writer",
             "estimated_effort": 4},
        ],
    }


@pytest.fixture
def app(tmp_path: Path):
    """Create a test app with a temp project directory."""
    project_dir = tmp_path / "test_project"
    project_dir.mkdir()
    return create_app(project_dir=project_dir, enable_cors=False)


@pytest.fixture
async def client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c


@pytest.fixture
async def loaded(client: AsyncClient) -> AsyncClient:
    resp = await client.post("/api/sprint/load", json={"definition": _definition()})
    assert resp.status_code == 201
    return client


@pytest.mark.anyio
class TestSprintEndpoints:
    async def test_root(self, client: AsyncClient) -> None:
        resp = await client.get("/")
        assert resp.status_code == 200
        assert resp.json()["name"] == "Sprint Runner"

    async def test_status_without_sprint(self, client: AsyncClient) -> None:
        resp = await client.get("/api/sprint")
        assert resp.status_code == 404
        assert resp.json()["detail"]["kind"] == "task_not_found"

    async def test_load_rejects_invalid_definition(self, client: AsyncClient) -> None:
        data = _definition()
        data["tasks"][0]["dependencies"] = ["api"]
        resp = await client.post("/api/sprint/load", json={"definition": data})
        assert resp.status_code == 400
        detail = resp.json()["detail"]
        assert detail["kind"] == "cycle_error"
        assert detail["remediation"]

    async def test_load_refuses_open_sprint(self, loaded: AsyncClient) -> None:
        resp = await loaded.post("/api/sprint/load", json={"definition": _definition()})
        assert resp.status_code == 409
        resp = await loaded.post("/api/sprint/load", json={"definition": _definition(), "force": True})
        assert resp.status_code == 201

    async def test_status(self, loaded: AsyncClient) -> None:
        resp = await loaded.get("/api/sprint")
        assert resp.status_code == 200
        data = resp.json()
        assert data["sprint"]["id"] == "api-sprint"
        assert data["total"] == 3
        assert data["counts"]["pending"] == 3

    async def test_graph_views(self, loaded: AsyncClient) -> None:
        resp = await loaded.get("/api/sprint/ready")
        assert [t["id"] for t in resp.json()["tasks"]] == ["db", "docs"]

        resp = await loaded.get("/api/sprint/critical-path")
        assert resp.json()["critical_path"] == ["db", "api"]

        resp = await loaded.get("/api/sprint/critical-path", params={"tie_break": "sideways"})
        assert resp.status_code == 400

        resp = await loaded.get("/api/sprint/plan")
        assert resp.json()["batches"] == [["db", "docs"], ["api"]]
        assert resp.json()["max_parallelism"] == 2

    async def test_list_and_get_tasks(self, loaded: AsyncClient) -> None:
        resp = await loaded.get("/api/sprint/tasks", params={"status": "pending"})
        assert resp.json()["total"] == 3
        resp = await loaded.get("/api/sprint/tasks/api")
        assert resp.json()["task"]["dependencies"] == ["db"]
        resp = await loaded.get("/api/sprint/tasks/nope")
        assert resp.status_code == 404


@pytest.mark.anyio
class TestLifecycleEndpoints:
    async def test_start_complete_flow(self, loaded: AsyncClient) -> None:
        resp = await loaded.post("/api/sprint/tasks/db/start", json={"session_id": "s-1"})
        assert resp.status_code == 200
        assert resp.json()["changed"] is True
        assert resp.json()["task"]["session_id"] == "s-1"

        resp = await loaded.post("/api/sprint/tasks/db/start", json={"session_id": "s-1"})
        assert resp.json()["changed"] is False

        resp = await loaded.post("/api/sprint/tasks/db/complete", json={"completion_notes": NOTES})
        assert resp.status_code == 200
        assert resp.json()["task"]["status"] == "completed"

        resp = await loaded.get("/api/sprint/ready")
        assert [t["id"] for t in resp.json()["tasks"]] == ["api", "docs"]

    async def test_start_blocked_by_dependency(self, loaded: AsyncClient) -> None:
        resp = await loaded.post("/api/sprint/tasks/api/start")
        assert resp.status_code == 409
        detail = resp.json()["detail"]
        assert detail["kind"] == "transition_error"
        assert detail["details"]["unmet_dependencies"] == ["db"]

    async def test_complete_without_notes_returns_template(self, loaded: AsyncClient) -> None:
        await loaded.post("/api/sprint/tasks/docs/start")
        resp = await loaded.post("/api/sprint/tasks/docs/complete", json={})
        assert resp.status_code == 422
        detail = resp.json()["detail"]
        assert detail["kind"] == "validation_error"
        assert set(detail["template"]) >= {"summary", "files_changed", "design_decisions"}

    async def test_complete_accepts_yaml_text(self, loaded: AsyncClient) -> None:
        await loaded.post("/api/sprint/tasks/docs/start")
        resp = await loaded.post(
            "/api/sprint/tasks/docs/complete",
            json={"completion_notes": "summary: written\nfilesChanged: [README.md]\n"},
        )
        assert resp.status_code == 200
        assert resp.json()["task"]["completion_notes"]["files_changed"] == ["README.md"]

    async def test_defer(self, loaded: AsyncClient) -> None:
        await loaded.post("/api/sprint/tasks/docs/start")
        resp = await loaded.post("/api/sprint/tasks/docs/defer", json={"reason": ""})
        assert resp.status_code == 422
        resp = await loaded.post("/api/sprint/tasks/docs/defer", json={"reason": "no writer"})
        assert resp.status_code == 200
        assert resp.json()["task"]["deferred_reason"] == "no writer"

    async def test_unknown_task(self, loaded: AsyncClient) -> None:
        resp = await loaded.post("/api/sprint/tasks/ghost/start")
        assert resp.status_code == 404

    async def test_progress_and_events(self, loaded: AsyncClient) -> None:
        await loaded.post("/api/sprint/tasks/db/start")
        resp = await loaded.get("/api/sprint/tasks/db/progress")
        assert resp.json() == {"task_id": "db", "progress": [], "signal": None, "invalidated": []}
        resp = await loaded.get("/api/sprint/events", params={"task_id": "db"})
        assert [e["type"] for e in resp.json()["task_events"]] == ["task.loaded", "task.started"]

    async def test_close_and_conflicts(self, loaded: AsyncClient) -> None:
        resp = await loaded.post("/api/sprint/conflicts/resolve", json={"artifact": "a.py"})
        assert resp.status_code == 404
        resp = await loaded.post("/api/sprint/close")
        assert resp.json()["sprint"]["closed"] is True
        resp = await loaded.post("/api/sprint/tasks/db/start")
        assert resp.status_code == 409
