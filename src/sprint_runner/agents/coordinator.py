"""Worker coordinator: launches, watches and retries work sessions.

One :class:`WorkSession` exists per task at a time. The coordinator turns
stalls, crashes and silent exits into failure signals on the
:class:`ProgressChannel`, so the scheduler sees every outcome the same way.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..channel import CompletionSignal, ProgressChannel
from ..config import RunnerSettings
from ..constants import RUNS_DIR, SESSION_OUTPUT_DIR
from ..errors import SessionConflictError, SpawnError, SprintRunnerError
from ..task_engine.model import Task, TaskStatus
from ..utils import _gen_id
from ..workers.base import CancellationToken, WorkerContext, WorkerHandle
from .registry import CapabilityRegistry, WorkerType

RETRYING = "retrying"
EXHAUSTED = "exhausted"


@dataclass
class WorkSession:
    """Runtime state of one attempt at a task."""

    session_id: str
    task_id: str
    worker_role: str
    started_at: datetime
    last_heartbeat: datetime
    timeout_seconds: float
    start_revision: int
    run_dir: Path
    output_dir: Path
    handle: WorkerHandle
    token: CancellationToken
    retry_count: int = 0
    max_retries: int = 0
    # Set once an outcome signal exists for this session
    finished: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "task_id": self.task_id,
            "worker_role": self.worker_role,
            "started_at": self.started_at.isoformat(),
            "last_heartbeat": self.last_heartbeat.isoformat(),
            "timeout_seconds": self.timeout_seconds,
            "start_revision": self.start_revision,
            "retry_count": self.retry_count,
            "max_retries": self.max_retries,
            "finished": self.finished,
        }


class WorkerCoordinator:
    """Owns the live work sessions of a sprint run.

    Responsibilities:
    - Launch sessions through the capability registry
    - Detect stalls (no heartbeat within the timeout window) and crashes
    - Relaunch failed sessions until the retry budget is spent
    """

    def __init__(
        self,
        project_dir: Path,
        engine: Any,
        channel: ProgressChannel,
        registry: CapabilityRegistry,
        resolver: Any,
        settings: Optional[RunnerSettings] = None,
    ) -> None:
        self.project_dir = project_dir
        self.engine = engine
        self.channel = channel
        self.registry = registry
        self.resolver = resolver
        self.settings = settings or RunnerSettings()
        self._sessions: dict[str, WorkSession] = {}
        self._lock = threading.RLock()

    # -- queries -------------------------------------------------------------

    @property
    def active_count(self) -> int:
        with self._lock:
            return len(self._sessions)

    def active_sessions(self) -> list[WorkSession]:
        with self._lock:
            return list(self._sessions.values())

    def get_session(self, task_id: str) -> Optional[WorkSession]:
        with self._lock:
            return self._sessions.get(task_id)

    def timeout_for(self, task: Task, worker_type: Optional[WorkerType] = None) -> float:
        floor = self.settings.heartbeat_floor_seconds
        if worker_type and worker_type.heartbeat_floor_seconds:
            floor = worker_type.heartbeat_floor_seconds
        return max(floor, 2 * task.effort * self.settings.effort_unit_seconds)

    def build_payload(self, task: Task) -> dict[str, Any]:
        """Task fields plus what each completed dependency produced."""
        resolved = []
        for dep_id in task.dependencies:
            dep = self.engine.get_task(dep_id)
            if dep is None or dep.status != TaskStatus.COMPLETED:
                continue
            notes = dep.completion_notes or {}
            resolved.append(
                {
                    "id": dep.id,
                    "name": dep.name,
                    "summary": notes.get("summary", ""),
                    "files_changed": list(notes.get("files_changed") or []),
                    "design_decisions": list(notes.get("design_decisions") or []),
                }
            )
        return {
            "task": {
                "id": task.id,
                "name": task.name,
                "description": task.description,
                "phase": task.phase,
                "assigned_role": task.assigned_role,
                "estimated_effort": task.estimated_effort,
                "artifacts": list(task.artifacts),
                "dependencies": list(task.dependencies),
                "metadata": dict(task.metadata),
            },
            "dependency_artifacts": resolved,
        }

    # -- lifecycle -----------------------------------------------------------

    def start(self, task: Task, retry_count: int = 0) -> WorkSession:
        """Launch a session for *task*.

        Raises:
            SessionConflictError: The task already has a live session.
            SpawnError: No worker type for the role, or the launch failed.
        """
        with self._lock:
            existing = self._sessions.get(task.id)
            if existing is not None:
                raise SessionConflictError(
                    f"Task {task.id} already has session {existing.session_id}",
                    task_id=task.id,
                    current_status=task.status.value,
                    expected="no active session",
                    details={"session_id": existing.session_id},
                )
            session = self._launch(task, retry_count)
            self._sessions[task.id] = session
        logger.info(
            "Session {} started for {} (role={}, retry={}, timeout={:.0f}s)",
            session.session_id,
            task.id,
            session.worker_role,
            retry_count,
            session.timeout_seconds,
        )
        return session

    def _launch(self, task: Task, retry_count: int) -> WorkSession:
        worker_type = self.registry.resolve(task.assigned_role)
        session_id = _gen_id("session")
        run_dir = self.engine.state_dir / RUNS_DIR / session_id
        output_dir = run_dir / SESSION_OUTPUT_DIR
        output_dir.mkdir(parents=True, exist_ok=True)
        token = CancellationToken()
        context = WorkerContext(
            task_id=task.id,
            session_id=session_id,
            payload=self.build_payload(task),
            project_dir=self.project_dir,
            run_dir=run_dir,
            output_dir=output_dir,
            channel=self.channel,
            token=token,
        )
        start_revision = self.resolver.current_revision()
        self.channel.claim(task.id, session_id)
        try:
            launcher = worker_type.launcher()
            handle = launcher.launch(context)
        except SprintRunnerError:
            self.channel.release_claim(task.id)
            raise
        except Exception as exc:
            self.channel.release_claim(task.id)
            raise SpawnError(
                f"Failed to launch {worker_type.role} worker for {task.id}: {exc}",
                task_id=task.id,
                details={"role": worker_type.role},
            ) from exc
        now = datetime.now(timezone.utc)
        max_retries = worker_type.max_retries if worker_type.max_retries is not None else self.settings.max_retries
        return WorkSession(
            session_id=session_id,
            task_id=task.id,
            worker_role=worker_type.role,
            started_at=now,
            last_heartbeat=now,
            timeout_seconds=self.timeout_for(task, worker_type),
            start_revision=start_revision,
            run_dir=run_dir,
            output_dir=output_dir,
            handle=handle,
            token=token,
            retry_count=retry_count,
            max_retries=max_retries,
        )

    def _write_failure(self, session: WorkSession, error: dict[str, Any]) -> None:
        try:
            self.channel.signal_failure(session.task_id, session.session_id, error)
        except FileExistsError:
            # The worker signaled first; its signal stands.
            logger.debug("Signal already present for {}; keeping it", session.task_id)

    def monitor(self) -> list[str]:
        """Check every live session for stalls and crashes.

        Returns ids of tasks whose session was turned into a failure signal.
        """
        failed: list[str] = []
        now = datetime.now(timezone.utc)
        for session in self.active_sessions():
            if session.finished:
                continue
            signal = self.channel.read_signal(session.task_id)
            if signal is not None:
                if signal.session_id == session.session_id:
                    session.finished = True
                    continue
                logger.info(
                    "Archiving signal {} for {} from session {} (live session is {})",
                    signal.signal_id,
                    session.task_id,
                    signal.session_id,
                    session.session_id,
                )
                self.channel.invalidate(session.task_id)

            exit_code = session.handle.poll()
            if exit_code is None:
                for stamp in (
                    self.channel.last_heartbeat(session.task_id, session.session_id),
                    session.handle.last_activity(),
                ):
                    if stamp and stamp > session.last_heartbeat:
                        session.last_heartbeat = stamp
                idle = (now - session.last_heartbeat).total_seconds()
                if idle <= session.timeout_seconds:
                    continue
                logger.warning(
                    "Session {} for {} stalled ({:.1f}s without heartbeat); cancelling",
                    session.session_id,
                    session.task_id,
                    idle,
                )
                session.token.cancel("stalled")
                session.handle.cancel()
                self._write_failure(
                    session,
                    {
                        "reason": f"stalled: no heartbeat within {session.timeout_seconds:.0f}s",
                        "exit_code": session.handle.poll(),
                        "stderr_tail": session.handle.stderr_tail(),
                    },
                )
            else:
                reason = (
                    f"worker exited with code {exit_code}"
                    if exit_code != 0
                    else "worker exited without a completion signal"
                )
                logger.warning("Session {} for {}: {}", session.session_id, session.task_id, reason)
                self._write_failure(
                    session,
                    {"reason": reason, "exit_code": exit_code, "stderr_tail": session.handle.stderr_tail()},
                )
            session.finished = True
            failed.append(session.task_id)
        return failed

    def handle_failure(self, task: Task, signal: Optional[CompletionSignal] = None) -> str:
        """Relaunch a failed task while its retry budget lasts.

        Returns ``"retrying"`` after a successful relaunch, ``"exhausted"``
        once the budget is spent (the session is then released).
        """
        with self._lock:
            session = self._sessions.get(task.id)
            retry_count = session.retry_count if session else task.retry_count
            max_retries = session.max_retries if session else self.settings.max_retries
            if session is not None:
                session.token.cancel("retry")
                session.handle.cancel()
                self._sessions.pop(task.id, None)

            while retry_count < max_retries:
                retry_count += 1
                try:
                    new_session = self._launch(task, retry_count)
                except SprintRunnerError as exc:
                    logger.warning("Relaunch {} of {} failed: {}", retry_count, task.id, exc.message)
                    continue
                self._sessions[task.id] = new_session
                self.engine.record_session(task.id, new_session.session_id, retry_count, new_session.start_revision)
                reason = (signal.error or {}).get("reason") if signal else None
                logger.info(
                    "Retrying {} ({}/{}) after failure: {}",
                    task.id,
                    retry_count,
                    max_retries,
                    reason or "unknown",
                )
                return RETRYING

        logger.error("Task {} exhausted its retry budget ({} retries)", task.id, max_retries)
        return EXHAUSTED

    def release(self, task_id: str) -> Optional[WorkSession]:
        with self._lock:
            session = self._sessions.pop(task_id, None)
        self.channel.release_claim(task_id)
        if session is not None and session.handle.poll() is None:
            session.token.cancel("released")
            session.handle.cancel()
        return session

    def shutdown(self) -> None:
        """Cancel every live session."""
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.token.cancel("shutdown")
            session.handle.cancel()
        if sessions:
            logger.info("Cancelled {} live session(s)", len(sessions))
