"""Task model for sprint orchestration.

A :class:`Task` is one unit of work in a sprint. Records are created when the
sprint definition is loaded and afterwards only change through lifecycle
transitions, so the model itself stays a plain serializable dataclass.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from ..utils import _coerce_float, _now_iso


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class TaskStatus(str, Enum):
    """Lifecycle status of a task."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DEFERRED = "deferred"


MANDATORY_FIELDS = ("id", "name", "status", "phase", "assigned_role")

# Task ids name files under the state dir (progress/<id>.jsonl, signals/<id>.json).
TASK_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

# camelCase spellings accepted in sprint definitions and API payloads
FIELD_ALIASES = {
    "assignedRole": "assigned_role",
    "estimatedEffort": "estimated_effort",
    "completedAt": "completed_at",
    "completionNotes": "completion_notes",
    "deferredReason": "deferred_reason",
    "sessionId": "session_id",
    "startedAt": "started_at",
    "retryCount": "retry_count",
    "spawnAttempts": "spawn_attempts",
    "createdAt": "created_at",
    "updatedAt": "updated_at",
    "deps": "dependencies",
}


def normalize_keys(data: dict[str, Any]) -> dict[str, Any]:
    """Map camelCase aliases onto their snake_case field names."""
    out: dict[str, Any] = {}
    for key, value in data.items():
        name = FIELD_ALIASES.get(key, key)
        if name in out and key != name:
            # An explicit snake_case key wins over its alias.
            continue
        out[name] = value
    return out


# ---------------------------------------------------------------------------
# Task dataclass
# ---------------------------------------------------------------------------

@dataclass
class Task:
    """A single unit of sprint work and its lifecycle bookkeeping."""

    # Identity
    id: str
    name: str = ""
    description: str = ""
    phase: str = ""
    assigned_role: str = ""

    status: TaskStatus = TaskStatus.PENDING
    dependencies: list[str] = field(default_factory=list)
    estimated_effort: Optional[float] = None
    artifacts: list[str] = field(default_factory=list)

    # Status-conditional fields
    completed_at: Optional[str] = None
    completion_notes: Optional[dict[str, Any]] = None
    deferred_reason: Optional[str] = None

    # Execution tracking
    session_id: Optional[str] = None
    started_at: Optional[str] = None
    retry_count: int = 0
    spawn_attempts: int = 0
    revision: int = 0

    created_at: str = field(default_factory=_now_iso)
    updated_at: str = field(default_factory=_now_iso)
    metadata: dict[str, Any] = field(default_factory=dict)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @classmethod
    def validate_dict(cls, data: Any) -> list[str]:
        """Check a raw task record against the definition schema.

        Returns a list of error strings (empty = valid). Dependency references
        are checked by the graph builder, which sees the whole task set.
        """
        if not isinstance(data, dict):
            return [f"task record must be a mapping, got {type(data).__name__}"]
        d = normalize_keys(data)
        label = f"task {d.get('id')!r}" if d.get("id") else "task <missing id>"
        errors: list[str] = []
        for name in MANDATORY_FIELDS:
            value = d.get(name)
            if not isinstance(value, str) or not value.strip():
                errors.append(f"{label}: '{name}' is required and must be a non-empty string")

        task_id = d.get("id")
        if isinstance(task_id, str) and task_id.strip() and not TASK_ID_PATTERN.fullmatch(task_id):
            errors.append(
                f"{label}: 'id' may only contain letters, digits, '.', '_' and '-'"
                " and must start with a letter or digit"
            )

        status = d.get("status")
        valid_statuses = {e.value for e in TaskStatus}
        if isinstance(status, str) and status.strip() and status not in valid_statuses:
            errors.append(f"{label}: 'status' must be one of {sorted(valid_statuses)}, got '{status}'")

        deps = d.get("dependencies")
        if deps is not None:
            if not isinstance(deps, list) or not all(isinstance(x, str) and x for x in deps):
                errors.append(f"{label}: 'dependencies' must be a list of task ids")
            elif d.get("id") in deps:
                errors.append(f"{label}: a task cannot depend on itself")

        effort = d.get("estimated_effort")
        if effort is not None:
            number = _coerce_float(effort)
            if number is None or number < 0:
                errors.append(f"{label}: 'estimated_effort' must be a non-negative number")

        artifacts = d.get("artifacts")
        if artifacts is not None and not isinstance(artifacts, list):
            errors.append(f"{label}: 'artifacts' must be a list of paths")

        if status == TaskStatus.COMPLETED.value:
            if not d.get("completed_at"):
                errors.append(f"{label}: completed tasks require 'completed_at'")
            if not d.get("completion_notes"):
                errors.append(f"{label}: completed tasks require 'completion_notes'")
        if status == TaskStatus.DEFERRED.value and not str(d.get("deferred_reason") or "").strip():
            errors.append(f"{label}: deferred tasks require 'deferred_reason'")
        return errors

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        """Serialize to a plain dict for YAML/JSON persistence."""
        data: dict[str, Any] = {}
        for k, v in asdict(self).items():
            data[k] = v.value if isinstance(v, Enum) else v
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        """Deserialize from a plain dict (snake_case or camelCase keys)."""
        d = normalize_keys(dict(data))
        try:
            status = TaskStatus(str(d.get("status") or TaskStatus.PENDING.value))
        except ValueError:
            status = TaskStatus.PENDING
        notes = d.get("completion_notes")
        if isinstance(notes, str):
            notes = {"summary": notes}
        return cls(
            id=str(d.get("id") or ""),
            name=str(d.get("name") or ""),
            description=str(d.get("description") or ""),
            phase=str(d.get("phase") or ""),
            assigned_role=str(d.get("assigned_role") or ""),
            status=status,
            dependencies=[str(x) for x in (d.get("dependencies") or [])],
            estimated_effort=_coerce_float(d.get("estimated_effort")),
            artifacts=[str(x) for x in (d.get("artifacts") or [])],
            completed_at=d.get("completed_at"),
            completion_notes=dict(notes) if isinstance(notes, dict) else None,
            deferred_reason=d.get("deferred_reason"),
            session_id=d.get("session_id"),
            started_at=d.get("started_at"),
            retry_count=int(d.get("retry_count") or 0),
            spawn_attempts=int(d.get("spawn_attempts") or 0),
            revision=int(d.get("revision") or 0),
            created_at=str(d.get("created_at") or _now_iso()),
            updated_at=str(d.get("updated_at") or _now_iso()),
            metadata=dict(d.get("metadata") or {}),
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def touch(self) -> None:
        """Bump ``updated_at`` and the per-task revision."""
        self.updated_at = _now_iso()
        self.revision += 1

    @property
    def effort(self) -> float:
        return float(self.estimated_effort or 0.0)

    @property
    def is_terminal(self) -> bool:
        return self.status == TaskStatus.COMPLETED
