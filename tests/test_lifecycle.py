"""Tests for lifecycle transitions and the completion notes gate."""

from __future__ import annotations

import pytest

from sprint_runner.errors import TransitionError, ValidationError
from sprint_runner.task_engine.lifecycle import (
    COMPLETION_NOTES_TEMPLATE,
    LifecycleValidator,
    parse_completion_notes,
)
from sprint_runner.task_engine.model import Task, TaskStatus

NOTES = {
    "summary": "Added the login endpoint",
    "files_changed": ["src/auth.py"],
    "design_decisions": ["Sessions are stored server side"],
}


def _task(tid: str = "t1", status: TaskStatus = TaskStatus.PENDING, deps=None) -> Task:
    return Task(
        id=tid,
        name=tid,
        phase="build",
        assigned_role="dev",
        status=status,
        dependencies=list(deps or []),
    )


class TestParseCompletionNotes:
    def test_mapping(self) -> None:
        notes = parse_completion_notes(NOTES)
        assert notes == {
            "summary": "Added the login endpoint",
            "files_changed": ["src/auth.py"],
            "design_decisions": ["Sessions are stored server side"],
            "next_tasks": [],
        }

    def test_yaml_string_with_camel_case(self) -> None:
        notes = parse_completion_notes("summary: done\nfilesChanged:\n  - a.py\nnextTasks: [follow-up]\n")
        assert notes["files_changed"] == ["a.py"]
        assert notes["next_tasks"] == ["follow-up"]
        assert notes["design_decisions"] == []

    @pytest.mark.parametrize("notes", [None, "", "   ", {}])
    def test_missing_notes_return_template(self, notes) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_completion_notes(notes)
        assert exc_info.value.template == COMPLETION_NOTES_TEMPLATE
        assert "template" in exc_info.value.to_dict()

    def test_blank_summary(self) -> None:
        with pytest.raises(ValidationError, match="summary"):
            parse_completion_notes({"summary": "  ", "files_changed": []})

    def test_list_fields_must_hold_strings(self) -> None:
        with pytest.raises(ValidationError) as exc_info:
            parse_completion_notes({"summary": "ok", "files_changed": "a.py"})
        assert exc_info.value.details["problems"] == ["'files_changed' must be a list of strings"]

    def test_not_a_mapping(self) -> None:
        with pytest.raises(ValidationError, match="must be a mapping"):
            parse_completion_notes("- just\n- a list\n")

    def test_invalid_yaml(self) -> None:
        with pytest.raises(ValidationError, match="not valid YAML"):
            parse_completion_notes("summary: [unclosed")


class TestLifecycleValidator:
    def setup_method(self) -> None:
        self.validator = LifecycleValidator()

    def test_start_requires_completed_dependencies(self) -> None:
        dep = _task("dep")
        task = _task("t1", deps=["dep"])
        with pytest.raises(TransitionError) as exc_info:
            self.validator.transition(task, TaskStatus.IN_PROGRESS, tasks_by_id={"dep": dep})
        assert exc_info.value.details["unmet_dependencies"] == ["dep"]
        assert task.status == TaskStatus.PENDING

    def test_start_sets_session(self) -> None:
        dep = _task("dep", status=TaskStatus.COMPLETED)
        task = _task("t1", deps=["dep"])
        self.validator.transition(task, TaskStatus.IN_PROGRESS, tasks_by_id={"dep": dep}, session_id="s-1")
        assert task.status == TaskStatus.IN_PROGRESS
        assert task.session_id == "s-1"
        assert task.started_at is not None
        assert task.revision == 1

    def test_complete_stores_notes(self) -> None:
        task = _task(status=TaskStatus.IN_PROGRESS)
        task.session_id = "s-1"
        self.validator.transition(task, TaskStatus.COMPLETED, completion_notes=NOTES)
        assert task.status == TaskStatus.COMPLETED
        assert task.completion_notes["summary"] == NOTES["summary"]
        assert task.completed_at is not None
        assert task.session_id is None

    def test_complete_without_notes_is_rejected(self) -> None:
        task = _task(status=TaskStatus.IN_PROGRESS)
        with pytest.raises(ValidationError) as exc_info:
            self.validator.transition(task, TaskStatus.COMPLETED)
        assert exc_info.value.task_id == "t1"
        assert exc_info.value.current_status == "in_progress"
        assert task.status == TaskStatus.IN_PROGRESS

    def test_defer_requires_reason(self) -> None:
        task = _task(status=TaskStatus.IN_PROGRESS)
        with pytest.raises(ValidationError):
            self.validator.transition(task, TaskStatus.DEFERRED, reason="  ")
        self.validator.transition(task, TaskStatus.DEFERRED, reason="waiting on design")
        assert task.deferred_reason == "waiting on design"

    def test_restart_deferred_clears_reason(self) -> None:
        task = _task(status=TaskStatus.DEFERRED)
        task.deferred_reason = "blocked"
        self.validator.transition(task, TaskStatus.IN_PROGRESS, tasks_by_id={})
        assert task.deferred_reason is None

    @pytest.mark.parametrize(
        "current,target",
        [
            (TaskStatus.PENDING, TaskStatus.COMPLETED),
            (TaskStatus.PENDING, TaskStatus.DEFERRED),
            (TaskStatus.COMPLETED, TaskStatus.IN_PROGRESS),
            (TaskStatus.COMPLETED, TaskStatus.PENDING),
            (TaskStatus.DEFERRED, TaskStatus.COMPLETED),
            (TaskStatus.IN_PROGRESS, TaskStatus.PENDING),
        ],
    )
    def test_invalid_edges(self, current: TaskStatus, target: TaskStatus) -> None:
        task = _task(status=current)
        with pytest.raises(TransitionError):
            self.validator.transition(task, target, completion_notes=NOTES, reason="x")
        assert task.status == current
