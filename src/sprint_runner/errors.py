"""Error taxonomy for the sprint runner.

Every error carries a machine-readable ``kind`` and human remediation steps so
that the CLI and HTTP surfaces can return structured payloads instead of raw
tracebacks.
"""

from __future__ import annotations

from typing import Any, Optional

from .constants import (
    ERROR_KIND_ARTIFACT_CONFLICT,
    ERROR_KIND_CYCLE,
    ERROR_KIND_IPC,
    ERROR_KIND_NOT_FOUND,
    ERROR_KIND_SCHEMA,
    ERROR_KIND_SESSION_CONFLICT,
    ERROR_KIND_SPAWN,
    ERROR_KIND_TRANSITION,
    ERROR_KIND_VALIDATION,
    RESOLUTION_STEPS,
)


class SprintRunnerError(Exception):
    """Base class for all structured runner errors."""

    kind = "runner_error"

    def __init__(
        self,
        message: str,
        *,
        task_id: Optional[str] = None,
        current_status: Optional[str] = None,
        expected: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.task_id = task_id
        self.current_status = current_status
        self.expected = expected
        self.details = dict(details or {})

    @property
    def remediation(self) -> list[str]:
        return list(RESOLUTION_STEPS.get(self.kind, []))

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "task_id": self.task_id,
            "current_status": self.current_status,
            "expected": self.expected,
            "remediation": self.remediation,
        }
        if self.details:
            payload["details"] = self.details
        return payload


class SchemaError(SprintRunnerError):
    """Malformed sprint definition. Fatal at load time."""

    kind = ERROR_KIND_SCHEMA

    def __init__(self, problems: list[str], *, source: Optional[str] = None) -> None:
        self.problems = list(problems)
        where = f" in {source}" if source else ""
        summary = "; ".join(self.problems[:5])
        if len(self.problems) > 5:
            summary += f" (+{len(self.problems) - 5} more)"
        super().__init__(
            f"Invalid sprint definition{where}: {summary}",
            details={"problems": self.problems, "source": source},
        )


class CycleError(SprintRunnerError):
    kind = ERROR_KIND_CYCLE

    def __init__(self, cycle_path: list[str]) -> None:
        self.cycle_path = list(cycle_path)
        super().__init__(
            f"Circular dependency detected: {' -> '.join(self.cycle_path)}",
            details={"cycle_path": self.cycle_path},
        )


class TransitionError(SprintRunnerError):
    kind = ERROR_KIND_TRANSITION


class ValidationError(SprintRunnerError):
    """A gated transition is missing required documentation."""

    kind = ERROR_KIND_VALIDATION

    def __init__(self, message: str, *, template: Optional[dict[str, Any]] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.template = template

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        if self.template is not None:
            payload["template"] = self.template
        return payload


class IPCError(SprintRunnerError):
    kind = ERROR_KIND_IPC


class SessionConflictError(SprintRunnerError):
    kind = ERROR_KIND_SESSION_CONFLICT


class ConflictError(SprintRunnerError):
    """Overlapping edits to one artifact by two completed tasks."""

    kind = ERROR_KIND_ARTIFACT_CONFLICT

    def __init__(
        self,
        artifact: str,
        task_a: Optional[str],
        task_b: str,
        overlap_region: tuple[int, int],
    ) -> None:
        self.artifact = artifact
        self.task_a = task_a
        self.task_b = task_b
        self.overlap_region = overlap_region
        start, end = overlap_region
        super().__init__(
            f"Overlapping edits to {artifact} (lines {start}-{end}) by {task_a or 'an earlier change'} and {task_b}",
            task_id=task_b,
            details={
                "artifact": artifact,
                "task_a": task_a,
                "task_b": task_b,
                "overlap_region": [start, end],
            },
        )


class SpawnError(SprintRunnerError):
    """A worker could not be launched for a task."""

    kind = ERROR_KIND_SPAWN


class TaskNotFoundError(SprintRunnerError):
    kind = ERROR_KIND_NOT_FOUND

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} not found", task_id=task_id)
