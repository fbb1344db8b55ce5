"""Run worker handlers as Python callables on background threads."""

from __future__ import annotations

import threading
import traceback
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from loguru import logger

from .base import WorkerContext, WorkerHandle, WorkerLauncher

WorkerHandler = Callable[[WorkerContext], Any]


class InlineHandle(WorkerHandle):
    def __init__(self, context: WorkerContext, handler: WorkerHandler) -> None:
        self.context = context
        self._handler = handler
        self._exit_code: Optional[int] = None
        self._stderr = ""
        self._last_activity = datetime.now(timezone.utc)
        self._thread = threading.Thread(
            target=self._run,
            name=f"worker-{context.task_id}",
            daemon=True,
        )

    def start(self) -> "InlineHandle":
        self._thread.start()
        return self

    def _run(self) -> None:
        ctx = self.context
        try:
            result = self._handler(ctx)
            # A handler may return completion notes instead of signaling itself.
            if isinstance(result, Mapping) and ctx.channel.read_signal(ctx.task_id) is None and not ctx.token.cancelled:
                ctx.succeed(
                    summary=str(result.get("summary") or ""),
                    files_changed=list(result.get("files_changed") or []),
                    design_decisions=list(result.get("design_decisions") or []),
                    next_tasks=list(result.get("next_tasks") or []),
                )
            self._exit_code = 0
        except Exception as exc:
            logger.warning("Inline worker for {} raised: {}", ctx.task_id, exc)
            self._stderr = traceback.format_exc()
            self._exit_code = 1
        finally:
            self._last_activity = datetime.now(timezone.utc)

    def poll(self) -> Optional[int]:
        if self._thread.is_alive():
            return None
        return self._exit_code if self._exit_code is not None else 1

    def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        self._thread.join(timeout)
        return self.poll()

    def cancel(self) -> None:
        self.context.token.cancel()

    def last_activity(self) -> Optional[datetime]:
        return self._last_activity

    def stderr_tail(self) -> str:
        return self._stderr[-4000:]


class InlineLauncher(WorkerLauncher):
    """Launch a Python callable ``handler(context)`` per session.

    The handler should honor ``context.token`` and either write a completion
    signal through the context or return completion notes as a mapping.
    """

    def __init__(self, handler: WorkerHandler) -> None:
        self.handler = handler

    def launch(self, context: WorkerContext) -> WorkerHandle:
        return InlineHandle(context, self.handler).start()
