"""Worker launcher interfaces shared by the process and inline launchers."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from ..channel import CompletionSignal, ProgressChannel


class CancellationToken:
    """Best-effort cancellation flag handed to every worker session."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to *timeout* seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)


@dataclass
class WorkerContext:
    """Everything a worker needs to perform one session of a task.

    Workers write proposed file contents under ``output_dir`` (mirroring
    project-relative paths) and finish by writing a completion signal.
    """

    task_id: str
    session_id: str
    payload: dict[str, Any]
    project_dir: Path
    run_dir: Path
    output_dir: Path
    channel: ProgressChannel
    token: CancellationToken = field(default_factory=CancellationToken)

    def read_project_file(self, relpath: str) -> Optional[str]:
        path = self.project_dir / relpath
        return path.read_text(encoding="utf-8") if path.exists() else None

    def write_output(self, relpath: str, content: Union[str, bytes]) -> Path:
        target = self.output_dir / relpath
        target.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(content, bytes):
            target.write_bytes(content)
        else:
            target.write_text(content, encoding="utf-8")
        return target

    def progress(self, percent: Optional[float] = None, message: str = "") -> None:
        self.channel.report_progress(self.task_id, self.session_id, percent, message)

    def succeed(
        self,
        summary: str,
        files_changed: Optional[list[str]] = None,
        design_decisions: Optional[list[str]] = None,
        next_tasks: Optional[list[str]] = None,
    ) -> CompletionSignal:
        return self.channel.signal_success(
            self.task_id,
            self.session_id,
            summary=summary,
            files_changed=files_changed,
            design_decisions=design_decisions,
            next_tasks=next_tasks,
        )

    def fail(self, reason: str, **context: Any) -> CompletionSignal:
        return self.channel.signal_failure(self.task_id, self.session_id, {"reason": reason, **context})


class WorkerHandle(ABC):
    """Running worker session as seen by the coordinator."""

    @abstractmethod
    def poll(self) -> Optional[int]:
        """Exit code once finished, ``None`` while running."""

    @abstractmethod
    def cancel(self) -> None:
        """Ask the worker to stop; may not take effect immediately."""

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        return self.poll()

    def last_activity(self) -> Optional[datetime]:
        """Latest liveness evidence other than progress records, if any."""
        return None

    def stderr_tail(self) -> str:
        return ""


class WorkerLauncher(ABC):
    """Starts worker sessions for one worker type."""

    @abstractmethod
    def launch(self, context: WorkerContext) -> WorkerHandle:
        """Start a session; raise on spawn failure."""
