"""Tests for loading and validating sprint definitions."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from sprint_runner.errors import CycleError, SchemaError
from sprint_runner.task_engine.sprint import load_sprint_definition, parse_sprint_definition


def _definition() -> dict:
    return {
        "sprint": {"id": "sprint-7", "name": "Auth sprint", "metadata": {"team": "core"}},
        "tasks": [
            {"id": "db", "name": "Schema", "status": "pending", "phase": "build", "assigned_role": "backend",
             "estimated_effort": 2},
            {"id": "api", "name": "Endpoints", "status": "pending", "phase": "build", "assigned_role": "backend",
             "dependencies": ["db"], "estimated_effort": 3},
            {"id": "ui", "name": "Screens", "status": "pending", "phase": "build", "assignedRole": "frontend",
             "deps": ["api"]},
        ],
    }


def test_parse_valid_definition() -> None:
    sprint = parse_sprint_definition(_definition())
    assert sprint.sprint_id == "sprint-7"
    assert sprint.name == "Auth sprint"
    assert [t.id for t in sprint.tasks] == ["db", "api", "ui"]
    assert sprint.tasks[2].assigned_role == "frontend"
    assert sprint.graph.dependencies("ui") == ["api"]
    record = sprint.sprint_record()
    assert record["closed"] is False
    assert record["has_unresolved_conflicts"] is False
    assert record["metadata"] == {"team": "core"}


def test_bare_task_list_is_accepted() -> None:
    sprint = parse_sprint_definition(_definition()["tasks"], source="/tmp/backlog.yaml")
    assert sprint.sprint_id == "backlog"
    assert len(sprint.tasks) == 3


def test_all_problems_reported_together() -> None:
    data = _definition()
    del data["tasks"][0]["phase"]
    data["tasks"][1]["status"] = "blocked"
    with pytest.raises(SchemaError) as exc_info:
        parse_sprint_definition(data)
    problems = exc_info.value.problems
    assert len(problems) == 2
    assert problems[0].startswith("tasks[0]:")
    assert problems[1].startswith("tasks[1]:")


def test_duplicate_ids() -> None:
    data = _definition()
    data["tasks"][2]["id"] = "db"
    data["tasks"][2]["deps"] = []
    with pytest.raises(SchemaError, match="duplicate task id 'db'"):
        parse_sprint_definition(data)


@pytest.mark.parametrize("task_id", ["backend/auth", "../escape", ".hidden", "two words", "db\n"])
def test_ids_must_be_safe_file_names(task_id: str) -> None:
    data = _definition()
    data["tasks"][0]["id"] = task_id
    data["tasks"][1]["dependencies"] = [task_id]
    with pytest.raises(SchemaError) as exc_info:
        parse_sprint_definition(data)
    assert any("'id' may only contain" in p for p in exc_info.value.problems)


def test_dotted_and_dashed_ids_are_accepted() -> None:
    data = _definition()
    data["tasks"][0]["id"] = "db.schema_v2-init"
    data["tasks"][1]["dependencies"] = ["db.schema_v2-init"]
    sprint = parse_sprint_definition(data)
    assert sprint.tasks[0].id == "db.schema_v2-init"


def test_unknown_dependency() -> None:
    data = _definition()
    data["tasks"][0]["dependencies"] = ["ops"]
    with pytest.raises(SchemaError, match="unknown dependency 'ops'"):
        parse_sprint_definition(data)


def test_cycle() -> None:
    data = _definition()
    data["tasks"][0]["dependencies"] = ["ui"]
    with pytest.raises(CycleError):
        parse_sprint_definition(data)


def test_empty_tasks() -> None:
    with pytest.raises(SchemaError, match="non-empty list"):
        parse_sprint_definition({"tasks": []})


def test_load_yaml_and_json(tmp_path: Path) -> None:
    yaml_path = tmp_path / "sprint.yaml"
    yaml_path.write_text(yaml.safe_dump(_definition()), encoding="utf-8")
    json_path = tmp_path / "sprint.json"
    json_path.write_text(json.dumps(_definition()), encoding="utf-8")

    assert load_sprint_definition(yaml_path).source == str(yaml_path)
    assert [t.id for t in load_sprint_definition(json_path).tasks] == ["db", "api", "ui"]


def test_load_unreadable_file(tmp_path: Path) -> None:
    with pytest.raises(SchemaError, match="cannot read definition"):
        load_sprint_definition(tmp_path / "missing.yaml")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(SchemaError, match="cannot parse definition"):
        load_sprint_definition(broken)
