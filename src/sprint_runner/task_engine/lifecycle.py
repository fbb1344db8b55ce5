"""Lifecycle transition rules and the completion documentation gate."""

from __future__ import annotations

from typing import Any, Mapping, Optional

import yaml

from ..errors import TransitionError, ValidationError
from ..utils import _now_iso
from .model import Task, TaskStatus

# ---------------------------------------------------------------------------
# Valid status transitions
# ---------------------------------------------------------------------------

_VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.PENDING: {TaskStatus.IN_PROGRESS},
    TaskStatus.IN_PROGRESS: {TaskStatus.COMPLETED, TaskStatus.DEFERRED},
    TaskStatus.DEFERRED: {TaskStatus.IN_PROGRESS},
    TaskStatus.COMPLETED: set(),
}

COMPLETION_NOTES_TEMPLATE: dict[str, Any] = {
    "summary": "<what was done, one or two sentences>",
    "files_changed": ["<path/relative/to/project>"],
    "design_decisions": ["<decision and its rationale>"],
    "next_tasks": [],
}

_NOTES_ALIASES = {
    "filesChanged": "files_changed",
    "designDecisions": "design_decisions",
    "nextTasks": "next_tasks",
}


def _string_list(value: Any) -> Optional[list[str]]:
    if value is None:
        return []
    if not isinstance(value, list):
        return None
    if not all(isinstance(item, str) for item in value):
        return None
    return [item for item in value if item.strip()]


def parse_completion_notes(notes: Any) -> dict[str, Any]:
    """Normalize completion notes into the structured mapping.

    Accepts a mapping or a YAML/JSON string that parses into one. Raises
    :class:`ValidationError` (with a fill-in template) when the notes are
    missing, unparseable or lack a summary.
    """
    if isinstance(notes, str):
        text = notes.strip()
        if not text:
            notes = None
        else:
            try:
                notes = yaml.safe_load(text)
            except yaml.YAMLError as exc:
                raise ValidationError(
                    f"Completion notes are not valid YAML: {exc}",
                    template=COMPLETION_NOTES_TEMPLATE,
                    expected="structured completion notes",
                ) from exc
    if not notes:
        raise ValidationError(
            "Completion notes are required to complete a task",
            template=COMPLETION_NOTES_TEMPLATE,
            expected="structured completion notes",
        )
    if not isinstance(notes, Mapping):
        raise ValidationError(
            "Completion notes must be a mapping with summary, files_changed and design_decisions",
            template=COMPLETION_NOTES_TEMPLATE,
            expected="structured completion notes",
        )

    data = {_NOTES_ALIASES.get(k, k): v for k, v in notes.items()}
    problems: list[str] = []
    summary = data.get("summary")
    if not isinstance(summary, str) or not summary.strip():
        problems.append("'summary' must be a non-empty string")
    lists: dict[str, list[str]] = {}
    for name in ("files_changed", "design_decisions", "next_tasks"):
        parsed = _string_list(data.get(name))
        if parsed is None:
            problems.append(f"'{name}' must be a list of strings")
        else:
            lists[name] = parsed
    if problems:
        raise ValidationError(
            "Invalid completion notes: " + "; ".join(problems),
            template=COMPLETION_NOTES_TEMPLATE,
            expected="structured completion notes",
            details={"problems": problems},
        )
    return {"summary": summary.strip(), **lists}


class LifecycleValidator:
    """Gatekeeper for every task status change.

    ``transition`` checks the edge against the transition table, checks the
    edge's precondition, and returns the updated task. It never persists; the
    caller owns the store transaction.
    """

    def transition(
        self,
        task: Task,
        new_status: TaskStatus,
        *,
        tasks_by_id: Optional[Mapping[str, Task]] = None,
        session_id: Optional[str] = None,
        completion_notes: Any = None,
        reason: Optional[str] = None,
    ) -> Task:
        new_status = TaskStatus(new_status)
        allowed = _VALID_TRANSITIONS.get(task.status, set())
        if new_status not in allowed:
            raise TransitionError(
                f"Invalid transition: {task.status.value} -> {new_status.value}",
                task_id=task.id,
                current_status=task.status.value,
                expected=", ".join(sorted(s.value for s in allowed)) or "none (terminal)",
            )

        if new_status == TaskStatus.IN_PROGRESS:
            self._check_start(task, tasks_by_id or {}, session_id)
            task.status = TaskStatus.IN_PROGRESS
            task.session_id = session_id
            task.started_at = _now_iso()
            task.deferred_reason = None
        elif new_status == TaskStatus.COMPLETED:
            try:
                notes = parse_completion_notes(completion_notes)
            except ValidationError as exc:
                exc.task_id = task.id
                exc.current_status = task.status.value
                raise
            task.status = TaskStatus.COMPLETED
            task.completion_notes = notes
            task.completed_at = _now_iso()
            task.session_id = None
        else:
            text = (reason or "").strip()
            if not text:
                raise ValidationError(
                    "A non-empty reason is required to defer a task",
                    task_id=task.id,
                    current_status=task.status.value,
                    expected="deferred_reason",
                )
            task.status = TaskStatus.DEFERRED
            task.deferred_reason = text
            task.session_id = None
        task.touch()
        return task

    def _check_start(self, task: Task, tasks_by_id: Mapping[str, Task], session_id: Optional[str]) -> None:
        unmet = [
            dep
            for dep in task.dependencies
            if tasks_by_id.get(dep) is None or tasks_by_id[dep].status != TaskStatus.COMPLETED
        ]
        if unmet:
            raise TransitionError(
                f"Task {task.id} has unfinished dependencies: {', '.join(unmet)}",
                task_id=task.id,
                current_status=task.status.value,
                expected="all dependencies completed",
                details={"unmet_dependencies": unmet},
            )
        if task.session_id and session_id and task.session_id != session_id:
            raise TransitionError(
                f"Task {task.id} is held by session {task.session_id}",
                task_id=task.id,
                current_status=task.status.value,
                expected="no other active session",
                details={"session_id": task.session_id},
            )
