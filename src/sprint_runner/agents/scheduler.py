"""Sprint scheduler: assigns ready tasks to workers in critical-path order.

The scheduler is the single writer of task status during a run. Workers only
talk back through the :class:`ProgressChannel`; each round the scheduler
consumes their signals, lets the coordinator police live sessions, and fills
free worker slots from the ready set.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

from loguru import logger

from ..channel import CompletionSignal, ProgressChannel
from ..config import RunnerSettings
from ..constants import (
    RETRY_BUDGET_REASON,
    RUN_LOCK_FILE,
    RUNS_DIR,
    SESSION_OUTPUT_DIR,
    SIGNAL_STATUS_FAILURE,
    SPAWN_BUDGET_REASON,
)
from ..errors import SessionConflictError, SpawnError, ValidationError
from ..io_utils import FileLock
from ..logging_utils import pretty, summarize_signal
from ..task_engine.graph import DependencyGraph
from ..task_engine.lifecycle import parse_completion_notes
from ..task_engine.model import Task, TaskStatus
from ..workers.base import CancellationToken
from .coordinator import EXHAUSTED, WorkerCoordinator

SESSION_PREFIX = "session-"


# ---------------------------------------------------------------------------
# Scheduling decision
# ---------------------------------------------------------------------------

@dataclass
class Assignment:
    """A scheduling decision: task X runs in session Y."""

    task_id: str
    session_id: str
    worker_role: str
    reason: str


@dataclass
class SprintReport:
    """Outcome of :meth:`Scheduler.run`."""

    rounds: int = 0
    stopped_reason: str = ""
    completed: list[str] = field(default_factory=list)
    deferred: list[str] = field(default_factory=list)
    pending: list[str] = field(default_factory=list)
    in_progress: list[str] = field(default_factory=list)
    assignments: int = 0
    conflicts: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rounds": self.rounds,
            "stopped_reason": self.stopped_reason,
            "completed": list(self.completed),
            "deferred": list(self.deferred),
            "pending": list(self.pending),
            "in_progress": list(self.in_progress),
            "assignments": self.assignments,
            "conflicts": list(self.conflicts),
        }


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    """Dependency-aware task scheduler.

    One round:
    1. Process newly observed completion signals (merge, complete, retry, defer)
    2. Let the coordinator detect stalled and crashed sessions
    3. Compute the ready set
    4. Sort: critical path first (in path order), then effort desc, then id
    5. Start sessions for free slots up to ``max_parallel_workers``
    """

    def __init__(
        self,
        engine: Any,
        coordinator: WorkerCoordinator,
        channel: ProgressChannel,
        resolver: Any,
        settings: Optional[RunnerSettings] = None,
    ) -> None:
        self.engine = engine
        self.coordinator = coordinator
        self.channel = channel
        self.resolver = resolver
        self.settings = settings or RunnerSettings()

    # -- ordering ------------------------------------------------------------

    def prioritize(self, ready: list[Task], graph: DependencyGraph) -> list[Task]:
        """Critical-path members first in path order, then effort desc, then id."""
        critical = graph.critical_path(self.settings.critical_path_tie_break)
        position = {tid: i for i, tid in enumerate(critical)}
        return sorted(
            ready,
            key=lambda t: (
                0 if t.id in position else 1,
                position.get(t.id, 0),
                -t.effort,
                t.id,
            ),
        )

    def get_queue(self) -> list[str]:
        """Ready task ids in the order they would be assigned."""
        tasks = self.engine.list_tasks()
        graph = DependencyGraph.build(tasks)
        return [t.id for t in self.prioritize(graph.ready_set(tasks), graph)]

    # -- signal processing ---------------------------------------------------

    def process_signals(self) -> list[str]:
        """Consume every unobserved completion signal. Returns affected task ids."""
        handled: list[str] = []
        for signal in self.channel.poll_completions():
            logger.debug("Signal received:\n{}", pretty(summarize_signal(signal)))
            task = self.engine.get_task(signal.task_id)
            if task is None or task.status != TaskStatus.IN_PROGRESS:
                logger.debug("Ignoring signal {} for {} (not in progress)", signal.signal_id, signal.task_id)
            elif signal.session_id != task.session_id:
                logger.info(
                    "Discarding stale signal {} for {} from session {}",
                    signal.signal_id,
                    task.id,
                    signal.session_id,
                )
                self.channel.invalidate(task.id)
            elif signal.success:
                self._accept(task, signal)
                handled.append(task.id)
            else:
                self._reject(task, signal)
                handled.append(task.id)
            self.channel.acknowledge(signal)
        return handled

    def _accept(self, task: Task, signal: CompletionSignal) -> None:
        try:
            notes = parse_completion_notes(signal.completion_notes())
        except ValidationError as exc:
            failure = CompletionSignal(
                task_id=task.id,
                session_id=signal.session_id,
                status=SIGNAL_STATUS_FAILURE,
                summary=signal.summary,
                error={"reason": f"invalid completion notes: {exc.message}"},
                signal_id=signal.signal_id,
            )
            self._reject(task, failure)
            return

        output_dir = self.engine.state_dir / RUNS_DIR / str(signal.session_id) / SESSION_OUTPUT_DIR
        start_revision = int(task.metadata.get("start_revision") or 0)
        try:
            report = self.resolver.merge_session_output(task.id, output_dir, notes["files_changed"], start_revision)
        except OSError as exc:
            logger.error("Could not merge output of {}: {}", task.id, exc)
            self.engine.log_sprint_event("artifact.merge_failed", task_id=task.id, error=str(exc))
        else:
            if report.has_conflicts:
                logger.warning("Task {} completed with {} artifact conflict(s)", task.id, len(report.conflicts))

        result = self.engine.complete(task.id, notes)
        if not result.ok:
            logger.error("Could not complete {}: {}", task.id, (result.error or {}).get("message"))
        self.coordinator.release(task.id)

    def _reject(self, task: Task, signal: CompletionSignal) -> None:
        reason = str((signal.error or {}).get("reason") or signal.summary or "worker failed")
        outcome = self.coordinator.handle_failure(task, signal)
        if outcome != EXHAUSTED:
            return
        self.coordinator.release(task.id)
        current = self.engine.get_task(task.id) or task
        result = self.engine.defer(
            task.id,
            f"{RETRY_BUDGET_REASON} after {current.retry_count} retries; last failure: {reason}",
        )
        if not result.ok:
            logger.error("Could not defer {}: {}", task.id, (result.error or {}).get("message"))

    # -- assignment ----------------------------------------------------------

    def _orphans(self, tasks: list[Task]) -> list[Task]:
        """In-progress tasks whose scheduler session is gone (e.g. after a restart)."""
        return [
            t for t in tasks
            if t.status == TaskStatus.IN_PROGRESS
            and (t.session_id or "").startswith(SESSION_PREFIX)
            and self.coordinator.get_session(t.id) is None
        ]

    def _spawn_failed(self, task: Task, exc: SpawnError) -> None:
        updated = self.engine.record_spawn_failure(task.id, exc.message)
        logger.warning(
            "Spawn failed for {} ({}/{}): {}",
            task.id,
            updated.spawn_attempts,
            self.settings.max_spawn_attempts,
            exc.message,
        )
        if updated.spawn_attempts < self.settings.max_spawn_attempts:
            return
        # pending -> in_progress -> deferred is the only legal path into deferred
        started = self.engine.start(task.id)
        if started.ok:
            self.engine.defer(
                task.id,
                f"{SPAWN_BUDGET_REASON} ({updated.spawn_attempts}): {exc.message}",
            )

    def _assign(self, task: Task, reason: str, *, adopt: bool = False) -> Optional[Assignment]:
        try:
            session = self.coordinator.start(task, retry_count=task.retry_count if adopt else 0)
        except SessionConflictError:
            return None
        except SpawnError as exc:
            if adopt:
                logger.warning("Could not resume {}: {}", task.id, exc.message)
                return None
            self._spawn_failed(task, exc)
            return None

        if not adopt:
            result = self.engine.start(task.id, session.session_id)
            if not result.ok or not result.changed:
                logger.warning("Start of {} rejected; cancelling session {}", task.id, session.session_id)
                self.coordinator.release(task.id)
                return None
        self.engine.record_session(task.id, session.session_id, session.retry_count, session.start_revision)
        return Assignment(
            task_id=task.id,
            session_id=session.session_id,
            worker_role=session.worker_role,
            reason=reason,
        )

    def schedule(self) -> list[Assignment]:
        """Fill free worker slots. Returns the assignments made this round."""
        tasks = self.engine.list_tasks()
        if not tasks:
            return []
        graph = DependencyGraph.build(tasks)
        assignments: list[Assignment] = []

        slots = self.settings.max_parallel_workers - self.coordinator.active_count
        for task in self._orphans(tasks):
            if slots <= 0:
                break
            assignment = self._assign(task, "resumed after restart", adopt=True)
            if assignment:
                assignments.append(assignment)
                slots -= 1

        critical = set(graph.critical_path(self.settings.critical_path_tie_break))
        for task in self.prioritize(graph.ready_set(tasks), graph):
            if slots <= 0:
                break
            reason = "critical path" if task.id in critical else "ready"
            assignment = self._assign(task, reason)
            if assignment:
                assignments.append(assignment)
                slots -= 1

        for assignment in assignments:
            logger.info(
                "Assigned {} to {} worker ({})",
                assignment.task_id,
                assignment.worker_role,
                assignment.reason,
            )
        return assignments

    def run_round(self) -> list[Assignment]:
        self.process_signals()
        self.coordinator.monitor()
        # Signals written by the coordinator this round are handled right away.
        self.process_signals()
        return self.schedule()

    def _idle(self) -> bool:
        if self.coordinator.active_count:
            return False
        if self.channel.poll_completions():
            return False
        tasks = self.engine.list_tasks()
        if self._orphans(tasks):
            return False
        return not DependencyGraph.build(tasks).ready_set(tasks)

    # -- main loop -----------------------------------------------------------

    def run(self, *, max_rounds: Optional[int] = None, token: Optional[CancellationToken] = None) -> SprintReport:
        """Schedule until no progress is possible, the token fires, or ``max_rounds``.

        Raises:
            SessionConflictError: Another scheduler holds the run lock.
        """
        lock = FileLock(self.engine.state_dir / RUN_LOCK_FILE, blocking=False)
        try:
            lock.__enter__()
        except BlockingIOError as exc:
            raise SessionConflictError(
                "Another scheduler is already running this sprint",
                expected="single scheduler per sprint",
            ) from exc

        report = SprintReport()
        try:
            self.engine.log_sprint_event("run.started")
            while True:
                if token is not None and token.cancelled:
                    report.stopped_reason = "cancelled"
                    break
                if max_rounds is not None and report.rounds >= max_rounds:
                    report.stopped_reason = "max_rounds"
                    break
                report.assignments += len(self.run_round())
                report.rounds += 1
                if self._idle():
                    report.stopped_reason = "finished"
                    break
                self.channel.wait(self.settings.poll_interval_seconds)
        finally:
            self.coordinator.shutdown()
            lock.__exit__(None, None, None)

        for task in self.engine.list_tasks():
            bucket = {
                TaskStatus.COMPLETED: report.completed,
                TaskStatus.DEFERRED: report.deferred,
                TaskStatus.PENDING: report.pending,
                TaskStatus.IN_PROGRESS: report.in_progress,
            }[task.status]
            bucket.append(task.id)
        report.conflicts = list(self.engine.sprint().get("conflicts") or [])
        if report.stopped_reason == "finished" and (report.pending or report.in_progress):
            report.stopped_reason = "blocked"
        self.engine.log_sprint_event("run.finished", **report.to_dict())
        logger.info(
            "Run finished after {} round(s): {} completed, {} deferred, {} pending ({})",
            report.rounds,
            len(report.completed),
            len(report.deferred),
            len(report.pending),
            report.stopped_reason,
        )
        return report
