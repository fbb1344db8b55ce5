"""Tests for the Task dataclass and its record validation."""

from __future__ import annotations

from sprint_runner.task_engine.model import Task, TaskStatus, normalize_keys


def _record(**overrides):
    data = {
        "id": "api",
        "name": "Build API",
        "status": "pending",
        "phase": "build",
        "assigned_role": "backend",
    }
    data.update(overrides)
    return data


class TestValidateDict:
    def test_valid_record(self) -> None:
        assert Task.validate_dict(_record()) == []

    def test_missing_mandatory_fields(self) -> None:
        errors = Task.validate_dict({"id": "x"})
        assert len(errors) == 4
        assert any("'name'" in e for e in errors)
        assert any("'assigned_role'" in e for e in errors)

    def test_not_a_mapping(self) -> None:
        errors = Task.validate_dict(["id", "x"])
        assert errors == ["task record must be a mapping, got list"]

    def test_unknown_status(self) -> None:
        errors = Task.validate_dict(_record(status="blocked"))
        assert len(errors) == 1
        assert "'status'" in errors[0]

    def test_self_dependency(self) -> None:
        errors = Task.validate_dict(_record(dependencies=["api"]))
        assert errors and "cannot depend on itself" in errors[0]

    def test_negative_effort(self) -> None:
        errors = Task.validate_dict(_record(estimated_effort=-2))
        assert errors and "estimated_effort" in errors[0]

    def test_completed_requires_notes_and_timestamp(self) -> None:
        errors = Task.validate_dict(_record(status="completed"))
        assert any("completed_at" in e for e in errors)
        assert any("completion_notes" in e for e in errors)

    def test_deferred_requires_reason(self) -> None:
        errors = Task.validate_dict(_record(status="deferred"))
        assert errors == ["task 'api': deferred tasks require 'deferred_reason'"]

    def test_camel_case_fields_accepted(self) -> None:
        data = _record()
        data["assignedRole"] = data.pop("assigned_role")
        data["estimatedEffort"] = 3
        assert Task.validate_dict(data) == []


class TestSerialization:
    def test_round_trip_keeps_status_enum(self) -> None:
        task = Task(id="t1", name="One", phase="p", assigned_role="dev", estimated_effort=2.5)
        restored = Task.from_dict(task.to_dict())
        assert restored == task
        assert restored.status is TaskStatus.PENDING
        assert task.to_dict()["status"] == "pending"

    def test_from_dict_camel_case(self) -> None:
        task = Task.from_dict(
            {
                "id": "t1",
                "assignedRole": "frontend",
                "estimatedEffort": "4",
                "deps": ["t0"],
                "completionNotes": "done quickly",
            }
        )
        assert task.assigned_role == "frontend"
        assert task.estimated_effort == 4.0
        assert task.dependencies == ["t0"]
        assert task.completion_notes == {"summary": "done quickly"}

    def test_snake_case_wins_over_alias(self) -> None:
        out = normalize_keys({"assigned_role": "a", "assignedRole": "b"})
        assert out == {"assigned_role": "a"}

    def test_touch_bumps_revision(self) -> None:
        task = Task(id="t1")
        before = task.updated_at
        task.touch()
        assert task.revision == 1
        assert task.updated_at >= before

    def test_effort_defaults_to_zero(self) -> None:
        assert Task(id="t1").effort == 0.0
