"""Task engine: lifecycle operations over the persisted sprint.

This is the primary entry point for task manipulation. It wraps
:class:`TaskStore` with the sprint loader, the dependency graph and the
:class:`LifecycleValidator`, and records every change as a JSONL event.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from ..config import RunnerSettings
from ..constants import ARTIFACTS_DIR, SPRINT_LOG_FILE, TASK_EVENTS_FILE
from ..errors import SchemaError, SprintRunnerError, TaskNotFoundError, TransitionError
from ..io_utils import _append_jsonl, _iter_jsonl
from ..utils import _now_iso
from .graph import DependencyGraph
from .lifecycle import LifecycleValidator
from .model import Task, TaskStatus
from .sprint import SprintDefinition, load_sprint_definition, parse_sprint_definition
from .store import TaskStore


@dataclass
class OperationResult:
    """Outcome of a lifecycle operation."""

    ok: bool
    task: Optional[Task] = None
    changed: bool = False
    error: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "changed": self.changed,
            "task": self.task.to_dict() if self.task else None,
            "error": self.error,
        }


class TaskEngine:
    """Manage the lifecycle of the tasks in one sprint.

    Parameters
    ----------
    state_dir:
        Path to the ``.sprint_runner/`` directory.
    settings:
        Resolved runner settings (critical-path tie-break policy).
    """

    def __init__(self, state_dir: Path, settings: Optional[RunnerSettings] = None) -> None:
        self.store = TaskStore(state_dir)
        self.settings = settings or RunnerSettings()
        self.validator = LifecycleValidator()
        self._state_dir = state_dir
        self._events_path = state_dir / ARTIFACTS_DIR / TASK_EVENTS_FILE
        self._sprint_log_path = state_dir / ARTIFACTS_DIR / SPRINT_LOG_FILE

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    # ------------------------------------------------------------------
    # Event logs
    # ------------------------------------------------------------------

    def _emit_event(self, event_type: str, task: Task, **details: Any) -> None:
        """Append a task runtime event."""
        payload: dict[str, Any] = {
            "timestamp": _now_iso(),
            "type": event_type,
            "task_id": task.id,
            "status": task.status.value,
        }
        if details:
            payload["details"] = details
        try:
            _append_jsonl(self._events_path, payload)
        except OSError:
            logger.exception("Failed to append task event {} for {}", event_type, task.id)

    def log_sprint_event(self, event_type: str, **details: Any) -> None:
        """Append a sprint-level event (merges, conflicts, scheduling rounds)."""
        payload: dict[str, Any] = {"timestamp": _now_iso(), "type": event_type}
        payload.update(details)
        try:
            _append_jsonl(self._sprint_log_path, payload)
        except OSError:
            logger.exception("Failed to append sprint event {}", event_type)

    def get_recent_events(self, limit: int = 100, *, task_id: Optional[str] = None) -> list[dict[str, Any]]:
        if limit < 1:
            return []
        events = [
            e for e in _iter_jsonl(self._events_path)
            if task_id is None or str(e.get("task_id")) == task_id
        ]
        return events[-limit:]

    def get_sprint_log(self, limit: int = 100) -> list[dict[str, Any]]:
        if limit < 1:
            return []
        return list(_iter_jsonl(self._sprint_log_path))[-limit:]

    # ------------------------------------------------------------------
    # Sprint loading
    # ------------------------------------------------------------------

    def load(self, definition: Union[Path, dict[str, Any]], *, force: bool = False) -> SprintDefinition:
        """Validate a sprint definition and initialize the store with it.

        Refuses to replace an open sprint unless ``force`` is set, since tasks
        are never dropped mid-sprint.
        """
        if isinstance(definition, Path):
            sprint = load_sprint_definition(definition)
        else:
            sprint = parse_sprint_definition(definition)

        current = self.store.read_sprint() if self.store.exists() else {}
        if current and not current.get("closed") and not force:
            raise TransitionError(
                f"Sprint {current.get('id')} is still open; close it before loading another",
                current_status="open",
                expected="closed sprint (or force)",
            )

        record = sprint.sprint_record()
        record["loaded_at"] = _now_iso()
        version = self.store.replace_all(sprint.tasks, record)
        self.log_sprint_event("sprint.loaded", sprint_id=sprint.sprint_id, tasks=len(sprint.tasks), version=version)
        for task in sprint.tasks:
            self._emit_event("task.loaded", task)
        logger.info("Loaded sprint {} ({} tasks)", sprint.sprint_id, len(sprint.tasks))
        return sprint

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Optional[Task]:
        return self.store.get_one(task_id)

    def list_tasks(self, *, status: Optional[str] = None) -> list[Task]:
        tasks = self.store.read_snapshot()
        if status:
            tasks = [t for t in tasks if t.status.value == status]
        return tasks

    def sprint(self) -> dict[str, Any]:
        return self.store.read_sprint()

    def graph(self, tasks: Optional[list[Task]] = None) -> DependencyGraph:
        return DependencyGraph.build(tasks if tasks is not None else self.store.read_snapshot())

    def ready(self) -> list[Task]:
        tasks = self.store.read_snapshot()
        return self.graph(tasks).ready_set(tasks)

    def critical_path(self, tie_break: Optional[str] = None) -> list[str]:
        return self.graph().critical_path(tie_break or self.settings.critical_path_tie_break)

    def status(self) -> dict[str, Any]:
        """Summarize the sprint: counts per status, ready ids and conflicts."""
        with self.store.transaction() as tx:
            tasks = tx.list_all()
            sprint = dict(tx.sprint)
            version = tx.version
        counts = {s.value: 0 for s in TaskStatus}
        for task in tasks:
            counts[task.status.value] += 1
        ready = DependencyGraph.build(tasks).ready_set(tasks) if tasks else []
        return {
            "sprint": {
                "id": sprint.get("id"),
                "name": sprint.get("name"),
                "closed": bool(sprint.get("closed")),
                "has_unresolved_conflicts": bool(sprint.get("has_unresolved_conflicts")),
            },
            "version": version,
            "counts": counts,
            "total": len(tasks),
            "ready": [t.id for t in ready],
            "conflicts": list(sprint.get("conflicts") or []),
            "tasks": [t.to_dict() for t in tasks],
        }

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    def _checked(self, tx: Any, task_id: str) -> Task:
        if tx.sprint.get("closed"):
            raise TransitionError(
                f"Sprint {tx.sprint.get('id')} is closed",
                task_id=task_id,
                current_status="closed",
                expected="open sprint",
            )
        task = tx.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        problems = Task.validate_dict(task.to_dict())
        if problems:
            raise SchemaError(problems, source=str(self.store.path))
        return task

    def _verify(self, task_id: str, expected: TaskStatus) -> Task:
        stored = self.store.get_one(task_id)
        if stored is None or stored.status != expected:
            raise SprintRunnerError(
                f"Write verification failed for {task_id}",
                task_id=task_id,
                current_status=stored.status.value if stored else None,
                expected=expected.value,
            )
        return stored

    def _run(self, task_id: str, target: TaskStatus, apply: Any) -> OperationResult:
        try:
            with self.store.transaction() as tx:
                task = self._checked(tx, task_id)
                result = apply(tx, task)
                if result is None:
                    return OperationResult(ok=True, task=task, changed=False)
                tx.put(result)
            stored = self._verify(task_id, target)
        except SprintRunnerError as exc:
            logger.warning("{} {} rejected: {}", target.value, task_id, exc.message)
            return OperationResult(ok=False, task=self.store.get_one(task_id), error=exc.to_dict())
        return OperationResult(ok=True, task=stored, changed=True)

    def start(self, task_id: str, session_id: Optional[str] = None) -> OperationResult:
        """Move a pending or deferred task to ``in_progress``.

        Starting a task that is already in progress under the same (or no)
        session is a no-op; a different session is a single-ownership error.
        """

        def apply(tx: Any, task: Task) -> Optional[Task]:
            if task.status == TaskStatus.IN_PROGRESS:
                if session_id and task.session_id and task.session_id != session_id:
                    raise TransitionError(
                        f"Task {task_id} is already in progress under session {task.session_id}",
                        task_id=task_id,
                        current_status=task.status.value,
                        expected="no other active session",
                    )
                return None
            self.validator.transition(
                task, TaskStatus.IN_PROGRESS, tasks_by_id=tx.by_id(), session_id=session_id
            )
            self._emit_event("task.started", task, session_id=session_id)
            return task

        result = self._run(task_id, TaskStatus.IN_PROGRESS, apply)
        if result.ok and result.changed:
            logger.info("Task {} started (session={})", task_id, session_id)
        return result

    def complete(self, task_id: str, completion_notes: Any) -> OperationResult:
        """Complete an in-progress task; structured completion notes are required."""

        def apply(tx: Any, task: Task) -> Optional[Task]:
            if task.status == TaskStatus.COMPLETED:
                return None
            self.validator.transition(task, TaskStatus.COMPLETED, completion_notes=completion_notes)
            self._emit_event(
                "task.completed",
                task,
                files_changed=len((task.completion_notes or {}).get("files_changed", [])),
            )
            return task

        result = self._run(task_id, TaskStatus.COMPLETED, apply)
        if result.ok and result.changed:
            logger.info("Task {} completed", task_id)
        return result

    def defer(self, task_id: str, reason: str) -> OperationResult:
        """Defer an in-progress task with a non-empty reason."""

        def apply(tx: Any, task: Task) -> Optional[Task]:
            if task.status == TaskStatus.DEFERRED:
                return None
            self.validator.transition(task, TaskStatus.DEFERRED, reason=reason)
            self._emit_event("task.deferred", task, reason=task.deferred_reason)
            return task

        result = self._run(task_id, TaskStatus.DEFERRED, apply)
        if result.ok and result.changed:
            logger.warning("Task {} deferred: {}", task_id, reason)
        return result

    # ------------------------------------------------------------------
    # Scheduler bookkeeping
    # ------------------------------------------------------------------

    def record_spawn_failure(self, task_id: str, error: str) -> Task:
        """Count a failed worker spawn for a pending task."""
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            task.spawn_attempts += 1
            task.metadata["last_spawn_error"] = error
            task.touch()
            tx.put(task)
            self._emit_event("task.spawn_failed", task, attempts=task.spawn_attempts, error=error)
        return task

    def record_session(
        self,
        task_id: str,
        session_id: str,
        retry_count: int,
        start_revision: Optional[int] = None,
    ) -> Task:
        """Attach a (re)launched session to an in-progress task."""
        with self.store.transaction() as tx:
            task = tx.get(task_id)
            if task is None:
                raise TaskNotFoundError(task_id)
            if task.status != TaskStatus.IN_PROGRESS:
                raise TransitionError(
                    f"Task {task_id} is not in progress",
                    task_id=task_id,
                    current_status=task.status.value,
                    expected=TaskStatus.IN_PROGRESS.value,
                )
            task.session_id = session_id
            task.retry_count = retry_count
            if start_revision is not None:
                task.metadata["start_revision"] = start_revision
            task.touch()
            tx.put(task)
            self._emit_event("task.session", task, session_id=session_id, retry_count=retry_count)
        return task

    # ------------------------------------------------------------------
    # Sprint-level state
    # ------------------------------------------------------------------

    def flag_conflict(self, conflict: dict[str, Any]) -> None:
        """Record an unresolved artifact conflict and flag the sprint."""
        with self.store.transaction() as tx:
            conflicts = list(tx.sprint.get("conflicts") or [])
            entry = dict(conflict)
            entry.setdefault("detected_at", _now_iso())
            conflicts.append(entry)
            tx.sprint["conflicts"] = conflicts
            tx.sprint["has_unresolved_conflicts"] = True
            tx.mark_dirty()
        self.log_sprint_event("conflict.flagged", **conflict)

    def resolve_conflict(self, artifact: str) -> int:
        """Clear the open conflicts for *artifact*; returns how many were cleared."""
        with self.store.transaction() as tx:
            conflicts = list(tx.sprint.get("conflicts") or [])
            remaining = [c for c in conflicts if c.get("artifact") != artifact]
            cleared = len(conflicts) - len(remaining)
            if cleared:
                tx.sprint["conflicts"] = remaining
                tx.sprint["has_unresolved_conflicts"] = bool(remaining)
                tx.mark_dirty()
        if cleared:
            self.log_sprint_event("conflict.resolved", artifact=artifact, cleared=cleared)
            logger.info("Resolved {} conflict(s) on {}", cleared, artifact)
        return cleared

    def close_sprint(self) -> dict[str, Any]:
        """Close the sprint as a whole. Tasks stay on record."""
        with self.store.transaction() as tx:
            if not tx.sprint:
                raise TransitionError("No sprint is loaded", expected="loaded sprint")
            if not tx.sprint.get("closed"):
                tx.sprint["closed"] = True
                tx.sprint["closed_at"] = _now_iso()
                tx.mark_dirty()
            sprint = dict(tx.sprint)
            open_tasks = [t.id for t in tx.tasks if t.status != TaskStatus.COMPLETED]
        self.log_sprint_event("sprint.closed", sprint_id=sprint.get("id"), open_tasks=open_tasks)
        if open_tasks:
            logger.warning("Sprint {} closed with unfinished tasks: {}", sprint.get("id"), ", ".join(open_tasks))
        return sprint
