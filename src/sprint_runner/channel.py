"""File-based progress and completion signaling between workers and the scheduler.

Layout under the state directory::

    progress/<task>.jsonl              append-only progress records (heartbeats)
    signals/<task>.json                one immutable completion signal per task
    signals/invalidated/<task>.<n>.json  archived signals of retried attempts
    signals/consumed.json              ids of signals already observed
    signals/owners.json                session currently allowed to signal, per task

Signals are written to a temp file and hard-linked into place, so a reader
either sees a complete record or nothing, and a second writer fails. Once a
session claims a task, writes from any other session are refused.
"""

from __future__ import annotations

import os
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Optional, TypeVar

from loguru import logger

from .constants import (
    CONSUMED_FILE,
    DEFAULT_IPC_BACKOFF_SECONDS,
    DEFAULT_IPC_MAX_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    INVALIDATED_DIR,
    PROGRESS_DIR,
    SIGNAL_STATUS_FAILURE,
    SIGNAL_OWNERS_FILE,
    SIGNAL_STATUS_SUCCESS,
    SIGNALS_DIR,
)
from .errors import IPCError, SessionConflictError
from .io_utils import FileLock, _append_jsonl, _atomic_create_json, _atomic_write_json, _iter_jsonl, _load_data
from .utils import _coerce_float, _gen_id, _now_iso, _parse_iso

T = TypeVar("T")

_SIGNAL_ALIASES = {
    "signalId": "signal_id",
    "taskId": "task_id",
    "sessionId": "session_id",
    "filesChanged": "files_changed",
    "designDecisions": "design_decisions",
    "nextTasks": "next_tasks",
}


@dataclass
class ProgressRecord:
    """Advisory progress update; every record also counts as a heartbeat."""

    timestamp: str
    percent: Optional[float] = None
    message: str = ""
    session_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "percent": self.percent,
            "message": self.message,
            "session_id": self.session_id,
        }


@dataclass
class CompletionSignal:
    """Terminal outcome of one work session for a task."""

    task_id: str
    session_id: Optional[str]
    status: str
    summary: str = ""
    files_changed: list[str] = field(default_factory=list)
    design_decisions: list[str] = field(default_factory=list)
    next_tasks: list[str] = field(default_factory=list)
    error: Optional[dict[str, Any]] = None
    signal_id: str = field(default_factory=lambda: _gen_id("sig"))
    timestamp: str = field(default_factory=_now_iso)

    @property
    def success(self) -> bool:
        return self.status == SIGNAL_STATUS_SUCCESS

    def completion_notes(self) -> dict[str, Any]:
        """The signal's payload in completion-notes form."""
        return {
            "summary": self.summary,
            "files_changed": list(self.files_changed),
            "design_decisions": list(self.design_decisions),
            "next_tasks": list(self.next_tasks),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "signal_id": self.signal_id,
            "task_id": self.task_id,
            "session_id": self.session_id,
            "status": self.status,
            "summary": self.summary,
            "files_changed": list(self.files_changed),
            "design_decisions": list(self.design_decisions),
            "next_tasks": list(self.next_tasks),
            "error": self.error,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CompletionSignal":
        d = {_SIGNAL_ALIASES.get(k, k): v for k, v in data.items()}
        error = d.get("error")
        if isinstance(error, str):
            error = {"reason": error}
        return cls(
            task_id=str(d.get("task_id") or ""),
            session_id=d.get("session_id"),
            status=str(d.get("status") or SIGNAL_STATUS_FAILURE),
            summary=str(d.get("summary") or ""),
            files_changed=[str(x) for x in (d.get("files_changed") or [])],
            design_decisions=[str(x) for x in (d.get("design_decisions") or [])],
            next_tasks=[str(x) for x in (d.get("next_tasks") or [])],
            error=error if isinstance(error, dict) else None,
            signal_id=str(d.get("signal_id") or _gen_id("sig")),
            timestamp=str(d.get("timestamp") or _now_iso()),
        )


class ProgressChannel:
    """Worker-to-scheduler channel over the state directory.

    ``wait`` is the watch: it returns as soon as a signal is written through
    any channel instance in this process, and otherwise after the timeout, so
    signals written by other processes are seen within one poll interval.
    """

    _wakeup = threading.Event()

    def __init__(
        self,
        state_dir: Path,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        ipc_max_attempts: int = DEFAULT_IPC_MAX_ATTEMPTS,
        ipc_backoff_seconds: float = DEFAULT_IPC_BACKOFF_SECONDS,
    ) -> None:
        self.state_dir = state_dir
        self.progress_dir = state_dir / PROGRESS_DIR
        self.signals_dir = state_dir / SIGNALS_DIR
        self.invalidated_dir = self.signals_dir / INVALIDATED_DIR
        self.consumed_path = self.signals_dir / CONSUMED_FILE
        self.owners_path = self.signals_dir / SIGNAL_OWNERS_FILE
        self.poll_interval_seconds = poll_interval_seconds
        self.ipc_max_attempts = max(1, ipc_max_attempts)
        self.ipc_backoff_seconds = ipc_backoff_seconds
        self._lock = FileLock(self.signals_dir / ".signals.lock")
        self._thread_lock = threading.RLock()

    # ------------------------------------------------------------------
    # Retry helper
    # ------------------------------------------------------------------

    def _with_retry(self, description: str, op: Callable[[], T]) -> T:
        """Run *op*, retrying transient OS errors with exponential backoff."""
        last_exc: Optional[OSError] = None
        for attempt in range(1, self.ipc_max_attempts + 1):
            try:
                return op()
            except FileExistsError:
                raise
            except OSError as exc:
                last_exc = exc
                if attempt >= self.ipc_max_attempts:
                    break
                delay = self.ipc_backoff_seconds * (2 ** (attempt - 1))
                logger.warning(
                    "IPC {} failed (attempt {}/{}): {}; retrying in {:.2f}s",
                    description,
                    attempt,
                    self.ipc_max_attempts,
                    exc,
                    delay,
                )
                time.sleep(delay)
        raise IPCError(
            f"IPC {description} failed after {self.ipc_max_attempts} attempts: {last_exc}",
            details={"operation": description, "attempts": self.ipc_max_attempts},
        )

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def progress_path(self, task_id: str) -> Path:
        return self.progress_dir / f"{task_id}.jsonl"

    def report_progress(
        self,
        task_id: str,
        session_id: Optional[str],
        percent: Optional[float] = None,
        message: str = "",
    ) -> ProgressRecord:
        """Append a progress record (also refreshes the session heartbeat)."""
        record = ProgressRecord(
            timestamp=_now_iso(),
            percent=_coerce_float(percent),
            message=message,
            session_id=session_id,
        )
        path = self.progress_path(task_id)
        self._with_retry(f"progress append for {task_id}", lambda: _append_jsonl(path, record.to_dict()))
        return record

    heartbeat = report_progress

    def progress(self, task_id: str) -> list[ProgressRecord]:
        records = []
        for raw in _iter_jsonl(self.progress_path(task_id)):
            records.append(
                ProgressRecord(
                    timestamp=str(raw.get("timestamp") or ""),
                    percent=_coerce_float(raw.get("percent")),
                    message=str(raw.get("message") or ""),
                    session_id=raw.get("session_id"),
                )
            )
        return records

    def last_heartbeat(self, task_id: str, session_id: Optional[str] = None) -> Optional[datetime]:
        """Timestamp of the latest progress record (optionally for one session)."""
        latest: Optional[datetime] = None
        for record in self.progress(task_id):
            if session_id is not None and record.session_id != session_id:
                continue
            ts = _parse_iso(record.timestamp)
            if ts and (latest is None or ts > latest):
                latest = ts
        return latest

    # ------------------------------------------------------------------
    # Completion signals
    # ------------------------------------------------------------------

    def signal_path(self, task_id: str) -> Path:
        return self.signals_dir / f"{task_id}.json"

    def write_signal(self, signal: CompletionSignal) -> CompletionSignal:
        """Atomically create the task's completion signal.

        Raises:
            FileExistsError: A signal for this task is already present.
            SessionConflictError: Another session owns the task.
            IPCError: The write kept failing.
        """
        path = self.signal_path(signal.task_id)

        def _create() -> None:
            with self._thread_lock, self._lock:
                owner = self._owners().get(signal.task_id)
                if owner is not None and signal.session_id != owner:
                    raise SessionConflictError(
                        f"Session {signal.session_id} no longer owns {signal.task_id}",
                        task_id=signal.task_id,
                        expected=f"signal from session {owner}",
                        details={"session_id": signal.session_id, "owner": owner},
                    )
                _atomic_create_json(path, signal.to_dict())

        self._with_retry(f"signal write for {signal.task_id}", _create)
        logger.debug("Signal {} written for {} ({})", signal.signal_id, signal.task_id, signal.status)
        self.notify()
        return signal

    def signal_success(
        self,
        task_id: str,
        session_id: Optional[str],
        *,
        summary: str,
        files_changed: Optional[list[str]] = None,
        design_decisions: Optional[list[str]] = None,
        next_tasks: Optional[list[str]] = None,
    ) -> CompletionSignal:
        return self.write_signal(
            CompletionSignal(
                task_id=task_id,
                session_id=session_id,
                status=SIGNAL_STATUS_SUCCESS,
                summary=summary,
                files_changed=list(files_changed or []),
                design_decisions=list(design_decisions or []),
                next_tasks=list(next_tasks or []),
            )
        )

    def signal_failure(self, task_id: str, session_id: Optional[str], error: dict[str, Any]) -> CompletionSignal:
        return self.write_signal(
            CompletionSignal(
                task_id=task_id,
                session_id=session_id,
                status=SIGNAL_STATUS_FAILURE,
                summary=str(error.get("reason") or "worker failed"),
                error=dict(error),
            )
        )

    def read_signal(self, task_id: str) -> Optional[CompletionSignal]:
        path = self.signal_path(task_id)
        if not path.exists():
            return None
        data = self._with_retry(f"signal read for {task_id}", lambda: _load_data(path, {}))
        return CompletionSignal.from_dict(data) if data else None

    def _consumed_ids(self) -> set[str]:
        data = _load_data(self.consumed_path, {})
        ids = data.get("consumed")
        return set(ids) if isinstance(ids, list) else set()

    def poll_completions(self) -> list[CompletionSignal]:
        """Return every signal not yet acknowledged, oldest first."""
        if not self.signals_dir.exists():
            return []
        consumed = self._consumed_ids()
        found: list[CompletionSignal] = []
        for path in sorted(self.signals_dir.glob("*.json")):
            if path.name.startswith(".") or path.name in (CONSUMED_FILE, SIGNAL_OWNERS_FILE):
                continue
            data = _load_data(path, {})
            if not data:
                continue
            signal = CompletionSignal.from_dict(data)
            if signal.signal_id not in consumed:
                found.append(signal)
        found.sort(key=lambda s: s.timestamp)
        return found

    def acknowledge(self, signal: CompletionSignal) -> None:
        """Mark *signal* observed so it is never returned again."""

        def _write() -> None:
            with self._thread_lock, self._lock:
                ids = self._consumed_ids()
                if signal.signal_id in ids:
                    return
                ids.add(signal.signal_id)
                _atomic_write_json(self.consumed_path, {"consumed": sorted(ids)})

        self._with_retry(f"acknowledge {signal.signal_id}", _write)

    def _archive(self, task_id: str) -> Optional[Path]:
        # Caller holds the signal locks.
        path = self.signal_path(task_id)
        if not path.exists():
            return None
        self.invalidated_dir.mkdir(parents=True, exist_ok=True)
        n = len(list(self.invalidated_dir.glob(f"{task_id}.*.json"))) + 1
        target = self.invalidated_dir / f"{task_id}.{n}.json"
        os.replace(path, target)
        return target

    def invalidate(self, task_id: str) -> Optional[Path]:
        """Archive the task's current signal so a retried session can write a new one."""

        def _move() -> Optional[Path]:
            with self._thread_lock, self._lock:
                return self._archive(task_id)

        target = self._with_retry(f"invalidate signal for {task_id}", _move)
        if target:
            logger.info("Invalidated signal for {} -> {}", task_id, target.name)
        return target

    # ------------------------------------------------------------------
    # Session ownership
    # ------------------------------------------------------------------

    def _owners(self) -> dict[str, str]:
        data = _load_data(self.owners_path, {})
        return {str(k): str(v) for k, v in data.items() if v}

    def owner(self, task_id: str) -> Optional[str]:
        return self._owners().get(task_id)

    def claim(self, task_id: str, session_id: str) -> Optional[Path]:
        """Make *session_id* the only session allowed to signal for *task_id*.

        A signal already in the task's slot belongs to an earlier session and
        is archived. Returns the archive path when that happened.
        """

        def _claim() -> Optional[Path]:
            with self._thread_lock, self._lock:
                owners = self._owners()
                owners[task_id] = session_id
                _atomic_write_json(self.owners_path, owners)
                return self._archive(task_id)

        target = self._with_retry(f"claim {task_id}", _claim)
        if target:
            logger.info("Invalidated earlier signal for {} -> {}", task_id, target.name)
        return target

    def release_claim(self, task_id: str) -> None:
        def _release() -> None:
            with self._thread_lock, self._lock:
                owners = self._owners()
                if owners.pop(task_id, None) is not None:
                    _atomic_write_json(self.owners_path, owners)

        self._with_retry(f"release claim on {task_id}", _release)

    def invalidated(self, task_id: str) -> list[CompletionSignal]:
        """Archived signals for *task_id*, oldest first."""
        if not self.invalidated_dir.exists():
            return []
        paths = sorted(
            self.invalidated_dir.glob(f"{task_id}.*.json"),
            key=lambda p: int(p.stem.rsplit(".", 1)[-1]) if p.stem.rsplit(".", 1)[-1].isdigit() else 0,
        )
        return [CompletionSignal.from_dict(_load_data(p, {})) for p in paths]

    # ------------------------------------------------------------------
    # Watch
    # ------------------------------------------------------------------

    def notify(self) -> None:
        type(self)._wakeup.set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until a signal is written or *timeout* elapses.

        Returns True when woken by a signal write.
        """
        wait_for = self.poll_interval_seconds if timeout is None else timeout
        woke = type(self)._wakeup.wait(max(0.0, wait_for))
        type(self)._wakeup.clear()
        return woke
