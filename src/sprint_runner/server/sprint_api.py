"""Sprint API endpoints.

A FastAPI router exposing the same lifecycle operations as the CLI, mounted
under ``/api/sprint`` by :func:`create_app`. Rejected operations return the
structured error payload (kind, message, remediation) as the ``detail`` of a
4xx response.
"""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query
from loguru import logger
from pydantic import BaseModel, Field

from ..constants import (
    ERROR_KIND_ARTIFACT_CONFLICT,
    ERROR_KIND_CYCLE,
    ERROR_KIND_NOT_FOUND,
    ERROR_KIND_SCHEMA,
    ERROR_KIND_SESSION_CONFLICT,
    ERROR_KIND_TRANSITION,
    ERROR_KIND_VALIDATION,
)
from ..errors import SprintRunnerError
from ..task_engine.engine import OperationResult


_STATUS_BY_KIND = {
    ERROR_KIND_NOT_FOUND: 404,
    ERROR_KIND_TRANSITION: 409,
    ERROR_KIND_SESSION_CONFLICT: 409,
    ERROR_KIND_ARTIFACT_CONFLICT: 409,
    ERROR_KIND_VALIDATION: 422,
    ERROR_KIND_SCHEMA: 400,
    ERROR_KIND_CYCLE: 400,
}


# ---------------------------------------------------------------------------
# Pydantic request / response models
# ---------------------------------------------------------------------------

class LoadRequest(BaseModel):
    definition: dict[str, Any]
    force: bool = False


class StartRequest(BaseModel):
    session_id: Optional[str] = None


class CompleteRequest(BaseModel):
    completion_notes: Any = None


class DeferRequest(BaseModel):
    reason: str = ""


class ResolveConflictRequest(BaseModel):
    artifact: str


class TaskResponse(BaseModel):
    task: dict[str, Any]
    changed: bool = False


class TaskListResponse(BaseModel):
    tasks: list[dict[str, Any]]
    total: int


class PlanResponse(BaseModel):
    batches: list[list[str]]
    critical_path: list[str]
    max_parallelism: int


class ProgressResponse(BaseModel):
    task_id: str
    progress: list[dict[str, Any]]
    signal: Optional[dict[str, Any]] = None
    invalidated: list[dict[str, Any]] = Field(default_factory=list)


def _http_error(error: dict[str, Any]) -> HTTPException:
    status_code = _STATUS_BY_KIND.get(str(error.get("kind")), 400)
    return HTTPException(status_code=status_code, detail=error)


def _task_response(result: OperationResult) -> TaskResponse:
    if not result.ok:
        raise _http_error(result.error or {})
    assert result.task is not None
    return TaskResponse(task=result.task.to_dict(), changed=result.changed)


# ---------------------------------------------------------------------------
# Router factory
# ---------------------------------------------------------------------------

def create_sprint_router(get_runtime: Any) -> APIRouter:
    """Create the sprint API router.

    Parameters
    ----------
    get_runtime:
        A callable ``(project_dir_param: str | None) -> SprintRuntime`` that
        resolves the runtime for the current request's project directory.
    """
    router = APIRouter(prefix="/api/sprint", tags=["sprint"])

    # ------------------------------------------------------------------
    # Sprint
    # ------------------------------------------------------------------

    @router.get("")
    async def get_status(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        engine = get_runtime(project_dir).engine
        if not engine.store.exists():
            raise HTTPException(
                status_code=404,
                detail={"kind": ERROR_KIND_NOT_FOUND, "message": "No sprint is loaded"},
            )
        return engine.status()

    @router.post("/load", status_code=201)
    async def load_sprint(body: LoadRequest, project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        engine = get_runtime(project_dir).engine
        try:
            sprint = engine.load(body.definition, force=body.force)
        except SprintRunnerError as exc:
            logger.warning("Sprint load rejected: {}", exc.message)
            raise _http_error(exc.to_dict()) from exc
        return {"sprint": sprint.sprint_record(), "total": len(sprint.tasks)}

    @router.post("/close")
    async def close_sprint(project_dir: Optional[str] = Query(None)) -> dict[str, Any]:
        engine = get_runtime(project_dir).engine
        try:
            return {"sprint": engine.close_sprint()}
        except SprintRunnerError as exc:
            raise _http_error(exc.to_dict()) from exc

    @router.post("/conflicts/resolve")
    async def resolve_conflict(
        body: ResolveConflictRequest,
        project_dir: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        engine = get_runtime(project_dir).engine
        cleared = engine.resolve_conflict(body.artifact)
        if not cleared:
            raise HTTPException(
                status_code=404,
                detail={"kind": ERROR_KIND_NOT_FOUND, "message": f"No open conflict on {body.artifact}"},
            )
        return {"artifact": body.artifact, "cleared": cleared}

    @router.get("/events")
    async def get_events(
        project_dir: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=1000),
        task_id: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        engine = get_runtime(project_dir).engine
        return {
            "task_events": engine.get_recent_events(limit, task_id=task_id),
            "sprint_log": [] if task_id else engine.get_sprint_log(limit),
        }

    # ------------------------------------------------------------------
    # Graph views
    # ------------------------------------------------------------------

    @router.get("/ready", response_model=TaskListResponse)
    async def get_ready(project_dir: Optional[str] = Query(None)) -> TaskListResponse:
        runtime = get_runtime(project_dir)
        ready = {t.id: t for t in runtime.engine.ready()}
        queue = [ready[tid] for tid in runtime.scheduler.get_queue() if tid in ready]
        data = [t.to_dict() for t in queue]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/critical-path")
    async def get_critical_path(
        project_dir: Optional[str] = Query(None),
        tie_break: Optional[str] = Query(None),
    ) -> dict[str, Any]:
        engine = get_runtime(project_dir).engine
        try:
            path = engine.critical_path(tie_break)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"critical_path": path, "tie_break": tie_break or engine.settings.critical_path_tie_break}

    @router.get("/plan", response_model=PlanResponse)
    async def get_plan(project_dir: Optional[str] = Query(None)) -> PlanResponse:
        engine = get_runtime(project_dir).engine
        graph = engine.graph()
        plan = graph.execution_batches()
        return PlanResponse(
            batches=plan.batches,
            critical_path=graph.critical_path(engine.settings.critical_path_tie_break),
            max_parallelism=plan.max_parallelism,
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    @router.get("/tasks", response_model=TaskListResponse)
    async def list_tasks(
        project_dir: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
    ) -> TaskListResponse:
        engine = get_runtime(project_dir).engine
        data = [t.to_dict() for t in engine.list_tasks(status=status)]
        return TaskListResponse(tasks=data, total=len(data))

    @router.get("/tasks/{task_id}", response_model=TaskResponse)
    async def get_task(task_id: str, project_dir: Optional[str] = Query(None)) -> TaskResponse:
        engine = get_runtime(project_dir).engine
        task = engine.get_task(task_id)
        if task is None:
            raise HTTPException(
                status_code=404,
                detail={"kind": ERROR_KIND_NOT_FOUND, "message": f"Task {task_id} not found", "task_id": task_id},
            )
        return TaskResponse(task=task.to_dict())

    @router.get("/tasks/{task_id}/progress", response_model=ProgressResponse)
    async def get_progress(task_id: str, project_dir: Optional[str] = Query(None)) -> ProgressResponse:
        channel = get_runtime(project_dir).channel
        signal = channel.read_signal(task_id)
        return ProgressResponse(
            task_id=task_id,
            progress=[r.to_dict() for r in channel.progress(task_id)],
            signal=signal.to_dict() if signal else None,
            invalidated=[s.to_dict() for s in channel.invalidated(task_id)],
        )

    @router.post("/tasks/{task_id}/start", response_model=TaskResponse)
    async def start_task(
        task_id: str,
        body: Optional[StartRequest] = None,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_runtime(project_dir).engine
        session_id = body.session_id if body else None
        return _task_response(engine.start(task_id, session_id))

    @router.post("/tasks/{task_id}/complete", response_model=TaskResponse)
    async def complete_task(
        task_id: str,
        body: CompleteRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_runtime(project_dir).engine
        return _task_response(engine.complete(task_id, body.completion_notes))

    @router.post("/tasks/{task_id}/defer", response_model=TaskResponse)
    async def defer_task(
        task_id: str,
        body: DeferRequest,
        project_dir: Optional[str] = Query(None),
    ) -> TaskResponse:
        engine = get_runtime(project_dir).engine
        return _task_response(engine.defer(task_id, body.reason))

    return router
