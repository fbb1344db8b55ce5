"""Tests for merging session outputs and detecting overlapping edits."""

from __future__ import annotations

from pathlib import Path

import pytest

from sprint_runner.conflicts import ConflictResolver, Hunk, three_way_merge
from sprint_runner.errors import ConflictError
from sprint_runner.task_engine.engine import TaskEngine

BASE = "alpha\nbeta\ngamma\ndelta\n"


def _definition() -> dict:
    return {
        "sprint": {"id": "s1"},
        "tasks": [
            {"id": "t1", "name": "One", "status": "pending", "phase": "build", "assigned_role": "dev"},
            {"id": "t2", "name": "Two", "status": "pending", "phase": "build", "assigned_role": "dev"},
        ],
    }


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    d = tmp_path / "repo"
    (d / "src").mkdir(parents=True)
    (d / "src" / "app.py").write_text(BASE, encoding="utf-8")
    return d


@pytest.fixture
def engine(project_dir: Path) -> TaskEngine:
    eng = TaskEngine(project_dir / ".sprint_runner")
    eng.load(_definition())
    return eng


@pytest.fixture
def resolver(project_dir: Path, engine: TaskEngine) -> ConflictResolver:
    return ConflictResolver(project_dir, engine.state_dir, engine)


def _output(tmp_path: Path, session: str, relpath: str, text: str) -> Path:
    out = tmp_path / "runs" / session / "output"
    (out / relpath).parent.mkdir(parents=True, exist_ok=True)
    (out / relpath).write_text(text, encoding="utf-8")
    return out


class TestThreeWayMerge:
    def test_disjoint_edits_merge(self) -> None:
        current = "ALPHA\nbeta\ngamma\ndelta\n"
        proposed = "alpha\nbeta\ngamma\nDELTA\n"
        assert three_way_merge(BASE, current, proposed) == "ALPHA\nbeta\ngamma\nDELTA\n"

    def test_identical_edits_are_not_a_conflict(self) -> None:
        edited = "alpha\nBETA\ngamma\ndelta\n"
        assert three_way_merge(BASE, edited, edited) == edited
        assert three_way_merge(BASE, edited + "extra\n", "alpha\nBETA\ngamma\ndelta\n") == edited + "extra\n"

    def test_overlapping_edits_raise(self) -> None:
        with pytest.raises(ValueError) as exc_info:
            three_way_merge(BASE, "alpha\nB1\ngamma\ndelta\n", "alpha\nB2\ngamma\ndelta\n")
        assert exc_info.value.args == (2, 2)

    def test_insertions_at_same_point_conflict(self) -> None:
        with pytest.raises(ValueError):
            three_way_merge(BASE, "alpha\nmine\nbeta\ngamma\ndelta\n", "alpha\ntheirs\nbeta\ngamma\ndelta\n")

    def test_unchanged_sides(self) -> None:
        assert three_way_merge(BASE, BASE, "new\n") == "new\n"
        assert three_way_merge(BASE, "mine\n", BASE) == "mine\n"
        assert three_way_merge(None, None, "created\n") == "created\n"

    def test_hunk_overlap(self) -> None:
        assert Hunk(0, 2, ()).overlaps(Hunk(1, 3, ()))
        assert not Hunk(0, 1, ()).overlaps(Hunk(1, 2, ()))
        assert Hunk(2, 2, ()).overlaps(Hunk(2, 3, ()))


class TestConflictResolver:
    def test_single_task_merge_updates_ledger(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver
    ) -> None:
        out = _output(tmp_path, "s1", "src/app.py", "ALPHA\nbeta\ngamma\ndelta\n")
        report = resolver.merge_session_output("t1", out, ["src/app.py"], start_revision=0)
        assert report.merged == ["src/app.py"]
        assert (project_dir / "src" / "app.py").read_text(encoding="utf-8").startswith("ALPHA")
        assert resolver.current_revision() == 1
        history = resolver.history("src/app.py")
        assert [e["version"] for e in history] == [0, 1]
        assert history[0]["text"] == BASE
        assert history[1]["task_id"] == "t1"

    def test_disjoint_edits_from_two_tasks(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver, engine: TaskEngine
    ) -> None:
        out1 = _output(tmp_path, "s1", "src/app.py", "ALPHA\nbeta\ngamma\ndelta\n")
        out2 = _output(tmp_path, "s2", "src/app.py", "alpha\nbeta\ngamma\nDELTA\n")
        resolver.merge_session_output("t1", out1, ["src/app.py"], start_revision=0)
        report = resolver.merge_session_output("t2", out2, ["src/app.py"], start_revision=0)

        assert not report.has_conflicts
        assert (project_dir / "src" / "app.py").read_text(encoding="utf-8") == "ALPHA\nbeta\ngamma\nDELTA\n"
        assert engine.sprint()["has_unresolved_conflicts"] is False

    def test_overlapping_edits_flag_conflict(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver, engine: TaskEngine
    ) -> None:
        out1 = _output(tmp_path, "s1", "src/app.py", "ALPHA-1\nbeta\ngamma\ndelta\n")
        out2 = _output(tmp_path, "s2", "src/app.py", "ALPHA-2\nbeta\ngamma\ndelta\n")
        resolver.merge_session_output("t1", out1, ["src/app.py"], start_revision=0)
        report = resolver.merge_session_output("t2", out2, ["src/app.py"], start_revision=0)

        assert len(report.conflicts) == 1
        conflict = report.conflicts[0]
        assert conflict.artifact == "src/app.py"
        assert conflict.task_a == "t1"
        assert conflict.task_b == "t2"
        assert conflict.overlap_region == (1, 1)
        # last known good content stays in place
        assert (project_dir / "src" / "app.py").read_text(encoding="utf-8") == "ALPHA-1\nbeta\ngamma\ndelta\n"
        sprint = engine.sprint()
        assert sprint["has_unresolved_conflicts"] is True
        assert sprint["conflicts"][0]["task_b"] == "t2"

    def test_later_session_builds_on_merged_revision(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver
    ) -> None:
        out1 = _output(tmp_path, "s1", "src/app.py", "ALPHA\nbeta\ngamma\ndelta\n")
        resolver.merge_session_output("t1", out1, ["src/app.py"], start_revision=0)
        out2 = _output(tmp_path, "s2", "src/app.py", "ALPHA-2\nbeta\ngamma\ndelta\n")
        report = resolver.merge_session_output("t2", out2, ["src/app.py"], start_revision=1)
        assert report.merged == ["src/app.py"]
        assert (project_dir / "src" / "app.py").read_text(encoding="utf-8").startswith("ALPHA-2")

    def test_strict_mode_raises(self, tmp_path: Path, resolver: ConflictResolver) -> None:
        out1 = _output(tmp_path, "s1", "src/app.py", "X\nbeta\ngamma\ndelta\n")
        out2 = _output(tmp_path, "s2", "src/app.py", "Y\nbeta\ngamma\ndelta\n")
        resolver.merge_session_output("t1", out1, ["src/app.py"], start_revision=0)
        with pytest.raises(ConflictError):
            resolver.merge_session_output("t2", out2, ["src/app.py"], start_revision=0, strict=True)

    def test_new_files_and_skipped_paths(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver
    ) -> None:
        out = _output(tmp_path, "s1", "docs/readme.md", "# Hello\n")
        report = resolver.merge_session_output(
            "t1", out, ["docs/readme.md", "missing.py", "../outside.txt"], start_revision=0
        )
        assert report.merged == ["docs/readme.md"]
        assert report.skipped == ["missing.py", "../outside.txt"]
        assert (project_dir / "docs" / "readme.md").read_text(encoding="utf-8") == "# Hello\n"

    def test_unchanged_output(self, tmp_path: Path, resolver: ConflictResolver) -> None:
        out = _output(tmp_path, "s1", "src/app.py", BASE)
        report = resolver.merge_session_output("t1", out, ["src/app.py"], start_revision=0)
        assert report.unchanged == ["src/app.py"]
        assert resolver.current_revision() == 0


PNG = b"\x89PNG\r\n\x1a\n\x00\x00\x00\rIHDR"


def _binary_output(tmp_path: Path, session: str, relpath: str, data: bytes) -> Path:
    out = tmp_path / "runs" / session / "output"
    (out / relpath).parent.mkdir(parents=True, exist_ok=True)
    (out / relpath).write_bytes(data)
    return out


class TestNonTextArtifacts:
    def test_new_binary_file_is_copied(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver
    ) -> None:
        out = _binary_output(tmp_path, "s1", "assets/logo.png", PNG)
        report = resolver.merge_session_output("t1", out, ["assets/logo.png"], start_revision=0)
        assert report.merged == ["assets/logo.png"]
        assert (project_dir / "assets" / "logo.png").read_bytes() == PNG
        history = resolver.history("assets/logo.png")
        assert history[-1]["binary"] is True
        assert history[-1]["task_id"] == "t1"

    def test_binary_replacement_after_later_revision(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver
    ) -> None:
        out1 = _binary_output(tmp_path, "s1", "assets/logo.png", PNG)
        resolver.merge_session_output("t1", out1, ["assets/logo.png"], start_revision=0)
        out2 = _binary_output(tmp_path, "s2", "assets/logo.png", PNG + b"\xff")
        report = resolver.merge_session_output("t2", out2, ["assets/logo.png"], start_revision=1)
        assert report.merged == ["assets/logo.png"]
        assert (project_dir / "assets" / "logo.png").read_bytes() == PNG + b"\xff"

    def test_concurrent_binary_edits_conflict_on_whole_file(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver, engine: TaskEngine
    ) -> None:
        out1 = _binary_output(tmp_path, "s1", "assets/logo.png", PNG)
        out2 = _binary_output(tmp_path, "s2", "assets/logo.png", PNG + b"\xfe")
        resolver.merge_session_output("t1", out1, ["assets/logo.png"], start_revision=0)
        report = resolver.merge_session_output("t2", out2, ["assets/logo.png"], start_revision=0)

        assert len(report.conflicts) == 1
        conflict = report.conflicts[0]
        assert conflict.task_a == "t1"
        assert conflict.task_b == "t2"
        assert (project_dir / "assets" / "logo.png").read_bytes() == PNG
        assert engine.sprint()["has_unresolved_conflicts"] is True

    def test_identical_binary_output_is_unchanged(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver
    ) -> None:
        (project_dir / "logo.png").write_bytes(PNG)
        out = _binary_output(tmp_path, "s1", "logo.png", PNG)
        report = resolver.merge_session_output("t1", out, ["logo.png"], start_revision=0)
        assert report.unchanged == ["logo.png"]
        assert resolver.current_revision() == 0

    def test_text_proposal_over_binary_project_file(
        self, tmp_path: Path, project_dir: Path, resolver: ConflictResolver
    ) -> None:
        (project_dir / "data.bin").write_bytes(PNG)
        out = _output(tmp_path, "s1", "data.bin", "now text\n")
        report = resolver.merge_session_output("t1", out, ["data.bin"], start_revision=0)
        assert report.merged == ["data.bin"]
        assert (project_dir / "data.bin").read_text(encoding="utf-8") == "now text\n"
