"""Merge worker outputs into the project tree and detect overlapping edits.

Workers never touch the project tree. Each accepted session's proposed files
are merged line-wise against the content the session started from (its base,
kept in the merge ledger) and the current last-known-good content. Disjoint
hunks merge automatically; overlapping hunks leave the file unchanged and are
reported as a :class:`ConflictError`.
"""

from __future__ import annotations

import os
import threading
from dataclasses import dataclass, field
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any, Optional, Union

from loguru import logger

from .constants import ARTIFACTS_DIR, MERGE_LEDGER_FILE
from .errors import ConflictError
from .io_utils import FileLock, _atomic_write_json, _load_data, _tmp_path_for
from .utils import _now_iso


@dataclass(frozen=True)
class Hunk:
    """Replace base lines ``[start, end)`` with ``lines``."""

    start: int
    end: int
    lines: tuple[str, ...]

    def overlaps(self, other: "Hunk") -> bool:
        if self.start == other.start:
            return True
        return self.start < other.end and other.start < self.end


@dataclass
class MergeReport:
    """What happened to each file a completed task changed."""

    task_id: str
    merged: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    conflicts: list[ConflictError] = field(default_factory=list)

    @property
    def has_conflicts(self) -> bool:
        return bool(self.conflicts)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "merged": list(self.merged),
            "unchanged": list(self.unchanged),
            "skipped": list(self.skipped),
            "conflicts": [c.details for c in self.conflicts],
        }


def _lines(text: Optional[str]) -> list[str]:
    return (text or "").splitlines(keepends=True)


def diff_hunks(base: list[str], changed: list[str]) -> list[Hunk]:
    """Changed regions of *changed* relative to *base*, in base coordinates."""
    matcher = SequenceMatcher(None, base, changed, autojunk=False)
    return [
        Hunk(i1, i2, tuple(changed[j1:j2]))
        for tag, i1, i2, j1, j2 in matcher.get_opcodes()
        if tag != "equal"
    ]


def three_way_merge(base: Optional[str], current: Optional[str], proposed: Optional[str]) -> str:
    """Merge two descendants of *base*.

    Raises:
        ValueError: (args ``(start, end)`` 1-based base lines) when a hunk of
            *current* and a hunk of *proposed* overlap and differ.
    """
    if proposed == current or proposed == base:
        return current or ""
    if current == base:
        return proposed or ""

    base_lines = _lines(base)
    ours = diff_hunks(base_lines, _lines(current))
    theirs = diff_hunks(base_lines, _lines(proposed))

    combined: list[Hunk] = list(ours)
    for hunk in theirs:
        if hunk in ours:
            continue
        for mine in ours:
            if mine.overlaps(hunk):
                start = max(mine.start, hunk.start) + 1
                end = max(min(mine.end, hunk.end), start)
                raise ValueError(start, end)
        combined.append(hunk)

    merged = list(base_lines)
    for hunk in sorted(combined, key=lambda h: (h.start, h.end), reverse=True):
        merged[hunk.start:hunk.end] = list(hunk.lines)
    return "".join(merged)


class ConflictResolver:
    """Apply accepted session outputs to the project and keep the merge ledger.

    The ledger (``artifacts/merge_ledger.json``) holds a global revision
    counter and, per file, every merged version. Version ``0`` of a file is its
    content before the first merge.
    """

    def __init__(self, project_dir: Path, state_dir: Path, engine: Any = None) -> None:
        self.project_dir = project_dir.resolve()
        self.state_dir = state_dir
        self.engine = engine
        self.ledger_path = state_dir / ARTIFACTS_DIR / MERGE_LEDGER_FILE
        self._lock = FileLock(state_dir / ARTIFACTS_DIR / ".merge_ledger.lock")
        self._thread_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------

    def _load_ledger(self) -> dict[str, Any]:
        data = _load_data(self.ledger_path, {})
        files = data.get("files")
        return {
            "revision": int(data.get("revision") or 0),
            "files": files if isinstance(files, dict) else {},
        }

    def current_revision(self) -> int:
        with self._thread_lock, self._lock:
            return self._load_ledger()["revision"]

    def history(self, relpath: str) -> list[dict[str, Any]]:
        with self._thread_lock, self._lock:
            return list(self._load_ledger()["files"].get(relpath) or [])

    def _read_project(self, relpath: str) -> Optional[str]:
        path = self.project_dir / relpath
        return path.read_text(encoding="utf-8") if path.exists() else None

    def _base_text(self, ledger: dict[str, Any], relpath: str, revision: int) -> Optional[str]:
        entries = ledger["files"].get(relpath) or []
        if not entries:
            return self._read_project(relpath)
        base = entries[0]
        for entry in entries:
            if int(entry.get("version") or 0) <= revision:
                base = entry
        return base.get("text")

    @staticmethod
    def _author_since(ledger: dict[str, Any], relpath: str, revision: int) -> Optional[str]:
        entries = [e for e in ledger["files"].get(relpath) or [] if int(e.get("version") or 0) > revision]
        return entries[-1].get("task_id") if entries else None

    def _write_project(self, relpath: str, content: Union[str, bytes]) -> None:
        path = self.project_dir / relpath
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = _tmp_path_for(path)
        try:
            if isinstance(content, bytes):
                tmp_path.write_bytes(content)
            else:
                tmp_path.write_text(content, encoding="utf-8")
            os.replace(tmp_path, path)
        finally:
            tmp_path.unlink(missing_ok=True)

    def _safe_relpath(self, relpath: str) -> Optional[str]:
        candidate = (self.project_dir / relpath).resolve()
        try:
            return candidate.relative_to(self.project_dir).as_posix()
        except ValueError:
            return None

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def merge_session_output(
        self,
        task_id: str,
        output_dir: Path,
        files_changed: list[str],
        start_revision: int,
        *,
        strict: bool = False,
    ) -> MergeReport:
        """Merge the files a session proposed into the project tree.

        Conflicts are recorded on the sprint (and raised when ``strict``); the
        conflicting file keeps its last-known-good content.
        """
        report = MergeReport(task_id=task_id)
        with self._thread_lock, self._lock:
            ledger = self._load_ledger()
            for raw in dict.fromkeys(files_changed):
                relpath = self._safe_relpath(raw)
                if relpath is None:
                    logger.warning("Task {} listed a path outside the project: {}", task_id, raw)
                    report.skipped.append(raw)
                    continue
                source = output_dir / relpath
                if not source.exists():
                    logger.warning("Task {} listed {} but produced no output for it", task_id, relpath)
                    report.skipped.append(relpath)
                    continue

                try:
                    proposed = source.read_text(encoding="utf-8")
                    current = self._read_project(relpath)
                except UnicodeDecodeError:
                    self._replace_whole_file(ledger, report, relpath, source, start_revision)
                    continue
                except OSError as exc:
                    logger.warning("Could not read {} for task {}: {}", relpath, task_id, exc)
                    report.skipped.append(relpath)
                    continue
                base = self._base_text(ledger, relpath, start_revision)
                try:
                    merged = three_way_merge(base, current, proposed)
                except ValueError as exc:
                    start, end = exc.args
                    conflict = ConflictError(
                        relpath,
                        self._author_since(ledger, relpath, start_revision),
                        task_id,
                        (start, end),
                    )
                    report.conflicts.append(conflict)
                    logger.error("Conflict on {}: {}", relpath, conflict.message)
                    continue

                if merged == (current or "") and current is not None:
                    report.unchanged.append(relpath)
                    continue

                entries = ledger["files"].setdefault(relpath, [])
                if not entries:
                    entries.append({"version": 0, "task_id": None, "text": current, "recorded_at": _now_iso()})
                self._write_project(relpath, merged)
                ledger["revision"] += 1
                entries.append(
                    {
                        "version": ledger["revision"],
                        "task_id": task_id,
                        "text": merged,
                        "recorded_at": _now_iso(),
                    }
                )
                report.merged.append(relpath)
                logger.info("Merged {} from task {} (revision {})", relpath, task_id, ledger["revision"])

            if report.merged:
                _atomic_write_json(self.ledger_path, ledger)

        self._record(report)
        if strict and report.conflicts:
            raise report.conflicts[0]
        return report

    def _replace_whole_file(
        self,
        ledger: dict[str, Any],
        report: MergeReport,
        relpath: str,
        source: Path,
        start_revision: int,
    ) -> None:
        """Apply a file that is not UTF-8 text as a whole-file replacement.

        The proposal wins when nobody else merged the file since the session
        started; otherwise the whole file is reported as a conflict.
        """
        target = self.project_dir / relpath
        try:
            proposed = source.read_bytes()
            current = target.read_bytes() if target.exists() else None
        except OSError as exc:
            logger.warning("Could not read {} for task {}: {}", relpath, report.task_id, exc)
            report.skipped.append(relpath)
            return

        if proposed == current:
            report.unchanged.append(relpath)
            return
        author = self._author_since(ledger, relpath, start_revision)
        if author is not None and current is not None:
            conflict = ConflictError(relpath, author, report.task_id, (1, max(1, current.count(b"\n"))))
            report.conflicts.append(conflict)
            logger.error("Conflict on {}: {}", relpath, conflict.message)
            return

        entries = ledger["files"].setdefault(relpath, [])
        if not entries:
            entries.append({"version": 0, "task_id": None, "text": None, "recorded_at": _now_iso()})
        self._write_project(relpath, proposed)
        ledger["revision"] += 1
        entries.append(
            {
                "version": ledger["revision"],
                "task_id": report.task_id,
                "text": None,
                "binary": True,
                "recorded_at": _now_iso(),
            }
        )
        report.merged.append(relpath)
        logger.info("Replaced {} from task {} (revision {})", relpath, report.task_id, ledger["revision"])

    def _record(self, report: MergeReport) -> None:
        if self.engine is None:
            return
        for relpath in report.merged:
            self.engine.log_sprint_event("artifact.merged", artifact=relpath, task_id=report.task_id)
        for relpath in report.skipped:
            self.engine.log_sprint_event("artifact.skipped", artifact=relpath, task_id=report.task_id)
        for conflict in report.conflicts:
            self.engine.flag_conflict(dict(conflict.details))
