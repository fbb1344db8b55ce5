"""Run workers as external commands."""

from __future__ import annotations

import json
import os
import shlex
import subprocess
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from loguru import logger

from ..errors import SpawnError
from ..io_utils import _read_text_tail
from .base import WorkerContext, WorkerHandle, WorkerLauncher

PLACEHOLDERS = ("payload_file", "output_dir", "run_dir", "project_dir", "state_dir", "task_id", "session_id")


def _stream_pipe(pipe: Any, file_path: Path, label: str, quiet: bool = True) -> None:
    prefix = f"[worker {label}] "
    with open(file_path, "w", encoding="utf-8") as handle:
        for line in iter(pipe.readline, ""):
            handle.write(line)
            handle.flush()
            if not quiet:
                sys.stderr.write(prefix + line)
                sys.stderr.flush()
    try:
        pipe.close()
    except OSError:
        pass


def _latest_mtime(paths: list[Path]) -> Optional[datetime]:
    latest: Optional[datetime] = None
    for path in paths:
        try:
            mtime = path.stat().st_mtime
        except OSError:
            continue
        stamp = datetime.fromtimestamp(mtime, tz=timezone.utc)
        if latest is None or stamp > latest:
            latest = stamp
    return latest


class ProcessHandle(WorkerHandle):
    def __init__(self, process: subprocess.Popen, stdout_path: Path, stderr_path: Path, threads: list[threading.Thread]):
        self.process = process
        self.stdout_path = stdout_path
        self.stderr_path = stderr_path
        self._threads = threads

    @property
    def pid(self) -> int:
        return self.process.pid

    def poll(self) -> Optional[int]:
        code = self.process.poll()
        if code is not None:
            for thread in self._threads:
                thread.join(timeout=5)
        return code

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        try:
            self.process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None
        return self.poll()

    def cancel(self) -> None:
        if self.process.poll() is not None:
            return
        self.process.terminate()
        try:
            self.process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            self.process.kill()

    def last_activity(self) -> Optional[datetime]:
        # New stdout/stderr output counts as liveness even without progress records.
        return _latest_mtime([self.stdout_path, self.stderr_path])

    def stderr_tail(self) -> str:
        return _read_text_tail(self.stderr_path)


class ProcessLauncher(WorkerLauncher):
    """Launch ``command`` once per session.

    The command is a template; ``{payload_file}``, ``{output_dir}``,
    ``{run_dir}``, ``{project_dir}``, ``{state_dir}``, ``{task_id}`` and
    ``{session_id}`` are substituted. The same values are exported as
    ``SPRINT_RUNNER_*`` environment variables.
    """

    def __init__(self, command: str, env: Optional[dict[str, str]] = None, echo_output: bool = False) -> None:
        if not command or not command.strip():
            raise ValueError("Worker command must not be empty")
        self.command = command
        self.env = dict(env or {})
        self.echo_output = echo_output

    def _values(self, context: WorkerContext, payload_file: Path) -> dict[str, str]:
        return {
            "payload_file": str(payload_file),
            "output_dir": str(context.output_dir),
            "run_dir": str(context.run_dir),
            "project_dir": str(context.project_dir),
            "state_dir": str(context.channel.state_dir),
            "task_id": context.task_id,
            "session_id": context.session_id,
        }

    def launch(self, context: WorkerContext) -> WorkerHandle:
        context.run_dir.mkdir(parents=True, exist_ok=True)
        context.output_dir.mkdir(parents=True, exist_ok=True)
        payload_file = context.run_dir / "payload.json"
        payload_file.write_text(json.dumps(context.payload, indent=2, default=str), encoding="utf-8")

        values = self._values(context, payload_file)
        try:
            formatted = self.command.format(**values)
        except (KeyError, IndexError) as exc:
            raise SpawnError(
                f"Unknown placeholder in worker command: {exc}",
                task_id=context.task_id,
                details={"command": self.command, "placeholders": list(PLACEHOLDERS)},
            ) from exc

        env = dict(os.environ)
        env.update(self.env)
        env.update({f"SPRINT_RUNNER_{key.upper()}": value for key, value in values.items()})

        stdout_path = context.run_dir / "stdout.log"
        stderr_path = context.run_dir / "stderr.log"
        try:
            process = subprocess.Popen(
                shlex.split(formatted),
                cwd=context.project_dir,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                bufsize=1,
                env=env,
            )
        except OSError as exc:
            raise SpawnError(
                f"Failed to start worker: {exc}",
                task_id=context.task_id,
                details={"command": formatted},
            ) from exc

        threads = [
            threading.Thread(
                target=_stream_pipe,
                args=(process.stdout, stdout_path, "stdout", not self.echo_output),
                daemon=True,
            ),
            threading.Thread(
                target=_stream_pipe,
                args=(process.stderr, stderr_path, "stderr", not self.echo_output),
                daemon=True,
            ),
        ]
        for thread in threads:
            thread.start()
        logger.debug("Worker pid {} started for {}: {}", process.pid, context.task_id, formatted)
        return ProcessHandle(process, stdout_path, stderr_path, threads)
