"""Load and validate sprint definition files."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml
from loguru import logger

from ..errors import SchemaError
from .graph import DependencyGraph
from .model import Task, normalize_keys


@dataclass
class SprintDefinition:
    """A validated sprint: its identity, tasks and dependency graph."""

    sprint_id: str
    name: str
    tasks: list[Task]
    graph: DependencyGraph
    source: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def sprint_record(self) -> dict[str, Any]:
        """Initial sprint-level state persisted next to the tasks."""
        return {
            "id": self.sprint_id,
            "name": self.name,
            "source": self.source,
            "closed": False,
            "has_unresolved_conflicts": False,
            "conflicts": [],
            "metadata": dict(self.metadata),
        }


def _read_definition(path: Path) -> Any:
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() == ".json":
        return json.loads(text)
    return yaml.safe_load(text)


def parse_sprint_definition(data: Any, *, source: Optional[str] = None) -> SprintDefinition:
    """Validate raw definition data and build a :class:`SprintDefinition`.

    Every record is checked before anything is returned so the caller sees all
    problems at once.

    Raises:
        SchemaError: Missing or malformed fields, duplicate ids, or unknown
            dependency references.
        CycleError: The dependencies contain a cycle.
    """
    if isinstance(data, list):
        data = {"tasks": data}
    if not isinstance(data, dict):
        raise SchemaError(["sprint definition must be a mapping with a 'tasks' list"], source=source)

    raw_tasks = data.get("tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise SchemaError(["'tasks' must be a non-empty list"], source=source)

    problems: list[str] = []
    seen: set[str] = set()
    for index, record in enumerate(raw_tasks):
        errors = Task.validate_dict(record)
        problems.extend(f"tasks[{index}]: {err}" for err in errors)
        if isinstance(record, dict):
            tid = normalize_keys(record).get("id")
            if isinstance(tid, str) and tid:
                if tid in seen:
                    problems.append(f"tasks[{index}]: duplicate task id {tid!r}")
                seen.add(tid)
    if problems:
        raise SchemaError(problems, source=source)

    tasks = [Task.from_dict(record) for record in raw_tasks]
    try:
        graph = DependencyGraph.build(tasks)
    except SchemaError as exc:
        raise SchemaError(exc.problems, source=source) from exc

    sprint = data.get("sprint") if isinstance(data.get("sprint"), dict) else {}
    sprint_id = str(sprint.get("id") or data.get("id") or (Path(source).stem if source else "sprint"))
    name = str(sprint.get("name") or data.get("name") or sprint_id)
    metadata = sprint.get("metadata") if isinstance(sprint.get("metadata"), dict) else {}
    logger.debug("Parsed sprint {} with {} task(s)", sprint_id, len(tasks))
    return SprintDefinition(
        sprint_id=sprint_id,
        name=name,
        tasks=tasks,
        graph=graph,
        source=source,
        metadata=dict(metadata),
    )


def load_sprint_definition(path: Path) -> SprintDefinition:
    """Read a YAML or JSON sprint definition from *path* and validate it."""
    try:
        data = _read_definition(path)
    except OSError as exc:
        raise SchemaError([f"cannot read definition: {exc}"], source=str(path)) from exc
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise SchemaError([f"cannot parse definition: {exc}"], source=str(path)) from exc
    return parse_sprint_definition(data, source=str(path))
