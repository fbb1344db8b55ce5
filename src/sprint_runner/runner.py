#!/usr/bin/env python3
"""Provide the CLI entrypoint and subcommands for Sprint Runner.

Loads a sprint definition, reports its state, drives lifecycle transitions by
hand, and runs the scheduler that dispatches tasks to workers.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from loguru import logger
from rich.console import Console
from rich.table import Table

from .channel import ProgressChannel
from .constants import CRITICAL_PATH_TIE_BREAKS, SIGNAL_STATUS_FAILURE, SIGNAL_STATUS_SUCCESS, STATE_DIR_NAME
from .errors import SprintRunnerError
from .logging_utils import configure_logging
from .runtime import build_runtime
from .task_engine.engine import OperationResult
from .task_engine.lifecycle import parse_completion_notes

_STATUS_STYLES = {
    "pending": "white",
    "in_progress": "cyan",
    "completed": "green",
    "deferred": "yellow",
}


def _write_json(payload: Any) -> None:
    sys.stdout.write(json.dumps(payload, indent=2, sort_keys=True, default=str) + "\n")


def _report_error(exc: SprintRunnerError, *, as_json: bool) -> None:
    if as_json:
        _write_json({"ok": False, "error": exc.to_dict()})
        return
    sys.stderr.write(f"Error ({exc.kind}): {exc.message}\n")
    for step in exc.remediation:
        sys.stderr.write(f"  - {step}\n")


def _report_result(result: OperationResult, *, as_json: bool) -> int:
    if as_json:
        _write_json(result.to_dict())
        return 0 if result.ok else 1
    if result.ok:
        task = result.task
        state = task.status.value if task else "?"
        note = "" if result.changed else " (unchanged)"
        sys.stdout.write(f"{task.id if task else '?'}: {state}{note}\n")
        return 0
    error = result.error or {}
    sys.stderr.write(f"Error ({error.get('kind')}): {error.get('message')}\n")
    for step in error.get("remediation") or []:
        sys.stderr.write(f"  - {step}\n")
    if error.get("template"):
        sys.stderr.write("Completion notes template:\n")
        sys.stderr.write(json.dumps(error["template"], indent=2) + "\n")
    return 1


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------

def _base_parser(description: str) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"Sprint Runner - {description}")
    parser.add_argument(
        "--project-dir",
        type=Path,
        default=Path("."),
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


def _add_json(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--json", action="store_true", help="Print machine-readable JSON")


def _build_load_parser() -> argparse.ArgumentParser:
    parser = _base_parser("validate a sprint definition and initialize the task store")
    parser.add_argument("definition", type=Path, help="Sprint definition file (YAML or JSON)")
    parser.add_argument("--force", action="store_true", help="Replace a sprint that is still open")
    _add_json(parser)
    return parser


def _build_status_parser() -> argparse.ArgumentParser:
    parser = _base_parser("show sprint and task status")
    _add_json(parser)
    return parser


def _build_plan_parser() -> argparse.ArgumentParser:
    parser = _base_parser("show execution batches and the critical path")
    parser.add_argument("--tree", action="store_true", help="Render the dependency tree instead")
    parser.add_argument("--tie-break", choices=list(CRITICAL_PATH_TIE_BREAKS), default=None)
    _add_json(parser)
    return parser


def _build_ready_parser() -> argparse.ArgumentParser:
    parser = _base_parser("list tasks ready to start, in scheduling order")
    _add_json(parser)
    return parser


def _build_start_parser() -> argparse.ArgumentParser:
    parser = _base_parser("move a task to in_progress")
    parser.add_argument("task_id")
    parser.add_argument("--session-id", default=None, help="Session taking ownership of the task")
    _add_json(parser)
    return parser


def _build_complete_parser() -> argparse.ArgumentParser:
    parser = _base_parser("complete a task with structured completion notes")
    parser.add_argument("task_id")
    group = parser.add_mutually_exclusive_group()
    group.add_argument("--notes", default=None, help="Completion notes as YAML/JSON text")
    group.add_argument("--notes-file", type=Path, default=None, help="File with completion notes")
    _add_json(parser)
    return parser


def _build_defer_parser() -> argparse.ArgumentParser:
    parser = _base_parser("defer an in-progress task")
    parser.add_argument("task_id")
    parser.add_argument("--reason", required=True)
    _add_json(parser)
    return parser


def _build_run_parser() -> argparse.ArgumentParser:
    parser = _base_parser("schedule tasks onto workers until the sprint settles")
    parser.add_argument("--max-workers", type=int, default=None, help="Concurrent worker slots")
    parser.add_argument("--max-rounds", type=int, default=None, help="Stop after this many rounds")
    parser.add_argument("--max-retries", type=int, default=None, help="Session retries before deferring")
    parser.add_argument("--poll-interval", type=float, default=None, help="Seconds between rounds")
    parser.add_argument("--tie-break", choices=list(CRITICAL_PATH_TIE_BREAKS), default=None)
    _add_json(parser)
    return parser


def _build_resolve_conflict_parser() -> argparse.ArgumentParser:
    parser = _base_parser("clear a conflict after merging the artifact by hand")
    parser.add_argument("artifact", help="Project-relative path of the conflicted file")
    _add_json(parser)
    return parser


def _build_close_parser() -> argparse.ArgumentParser:
    parser = _base_parser("close the sprint")
    _add_json(parser)
    return parser


def _build_serve_parser() -> argparse.ArgumentParser:
    parser = _base_parser("serve the HTTP API")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=8080)
    return parser


def _worker_parser(description: str) -> argparse.ArgumentParser:
    parser = _base_parser(description)
    parser.add_argument("task_id", nargs="?", default=os.environ.get("SPRINT_RUNNER_TASK_ID"))
    parser.add_argument("--session-id", default=os.environ.get("SPRINT_RUNNER_SESSION_ID"))
    parser.add_argument("--state-dir", type=Path, default=None, help="Defaults to <project-dir>/.sprint_runner")
    return parser


def _build_progress_parser() -> argparse.ArgumentParser:
    parser = _worker_parser("report worker progress (also a heartbeat)")
    parser.add_argument("--percent", type=float, default=None)
    parser.add_argument("--message", default="")
    return parser


def _build_signal_parser() -> argparse.ArgumentParser:
    parser = _worker_parser("write a worker's completion signal")
    parser.add_argument("--status", choices=[SIGNAL_STATUS_SUCCESS, SIGNAL_STATUS_FAILURE], default=SIGNAL_STATUS_SUCCESS)
    parser.add_argument("--notes", default=None, help="Completion notes as YAML/JSON text")
    parser.add_argument("--notes-file", type=Path, default=None)
    parser.add_argument("--reason", default=None, help="Failure reason")
    return parser


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

def _load_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    try:
        sprint = runtime.engine.load(args.definition.resolve(), force=bool(args.force))
    except SprintRunnerError as exc:
        _report_error(exc, as_json=args.json)
        return 2
    payload = {
        "ok": True,
        "sprint_id": sprint.sprint_id,
        "name": sprint.name,
        "tasks": len(sprint.tasks),
        "critical_path": sprint.graph.critical_path(runtime.settings.critical_path_tie_break),
    }
    if args.json:
        _write_json(payload)
    else:
        sys.stdout.write(f"Loaded sprint {sprint.sprint_id} ({len(sprint.tasks)} tasks)\n")
        sys.stdout.write(f"Critical path: {' -> '.join(payload['critical_path'])}\n")
    return 0


def _status_command(args: argparse.Namespace) -> int:
    project_dir = args.project_dir.resolve()
    state_dir = project_dir / STATE_DIR_NAME
    runtime = build_runtime(project_dir)
    if not runtime.engine.store.exists():
        if args.json:
            _write_json({"status": "no_sprint", "state_dir": str(state_dir)})
        else:
            sys.stdout.write(f"No sprint loaded in {state_dir}\n")
        return 0

    status = runtime.engine.status()
    if args.json:
        _write_json(status)
        return 0

    console = Console()
    sprint = status["sprint"]
    console.print(f"[bold]Sprint[/bold] {sprint['id']} - {sprint['name']}" + (" [dim](closed)[/dim]" if sprint["closed"] else ""))
    console.print("Tasks: " + ", ".join(f"{k}={v}" for k, v in status["counts"].items()) + f" (total={status['total']})")
    table = Table(show_header=True, header_style="bold")
    table.add_column("ID")
    table.add_column("Name")
    table.add_column("Phase")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("Deps")
    for task in status["tasks"]:
        style = _STATUS_STYLES.get(task["status"], "white")
        table.add_row(
            task["id"],
            task["name"],
            task["phase"],
            task["assigned_role"],
            f"[{style}]{task['status']}[/{style}]",
            ", ".join(task["dependencies"]) or "-",
        )
    console.print(table)
    if status["ready"]:
        console.print(f"Ready: {', '.join(status['ready'])}")
    if sprint["has_unresolved_conflicts"]:
        console.print("[red]Unresolved conflicts:[/red]")
        for conflict in status["conflicts"]:
            start, end = conflict.get("overlap_region") or (0, 0)
            console.print(
                f"  - {conflict.get('artifact')} lines {start}-{end} "
                f"({conflict.get('task_a') or '?'} vs {conflict.get('task_b')})"
            )
    return 0


def _plan_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    try:
        graph = runtime.engine.graph()
    except SprintRunnerError as exc:
        _report_error(exc, as_json=args.json)
        return 2
    tie_break = args.tie_break or runtime.settings.critical_path_tie_break
    if args.json:
        plan = graph.execution_batches()
        _write_json(
            {
                "batches": plan.batches,
                "max_parallelism": plan.max_parallelism,
                "topological_order": graph.topological_order(),
                "critical_path": graph.critical_path(tie_break),
            }
        )
        return 0
    sys.stdout.write(graph.visualize_as_tree() if args.tree else graph.visualize(tie_break))
    return 0


def _ready_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    queue = runtime.scheduler.get_queue()
    if args.json:
        _write_json({"ready": queue})
    else:
        sys.stdout.write(("\n".join(queue) or "No tasks ready") + "\n")
    return 0


def _read_notes(text: Optional[str], path: Optional[Path]) -> Any:
    if path is not None:
        return path.read_text(encoding="utf-8")
    return text


def _start_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    return _report_result(runtime.engine.start(args.task_id, args.session_id), as_json=args.json)


def _complete_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    notes = _read_notes(args.notes, args.notes_file)
    return _report_result(runtime.engine.complete(args.task_id, notes), as_json=args.json)


def _defer_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    return _report_result(runtime.engine.defer(args.task_id, args.reason), as_json=args.json)


def _run_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(
        args.project_dir,
        max_parallel_workers=args.max_workers,
        max_retries=args.max_retries,
        poll_interval_seconds=args.poll_interval,
        critical_path_tie_break=args.tie_break,
    )
    try:
        report = runtime.scheduler.run(max_rounds=args.max_rounds)
    except SprintRunnerError as exc:
        _report_error(exc, as_json=args.json)
        return 2
    if args.json:
        _write_json(report.to_dict())
    else:
        sys.stdout.write(
            f"Stopped ({report.stopped_reason}) after {report.rounds} round(s): "
            f"completed={len(report.completed)} deferred={len(report.deferred)} "
            f"pending={len(report.pending)} in_progress={len(report.in_progress)}\n"
        )
        for conflict in report.conflicts:
            sys.stdout.write(f"Conflict: {conflict.get('artifact')} ({conflict.get('task_a')} vs {conflict.get('task_b')})\n")
    return 0 if report.stopped_reason == "finished" and not report.conflicts else 1


def _resolve_conflict_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    cleared = runtime.engine.resolve_conflict(args.artifact)
    if args.json:
        _write_json({"artifact": args.artifact, "cleared": cleared})
    else:
        sys.stdout.write(f"Cleared {cleared} conflict(s) on {args.artifact}\n")
    return 0 if cleared else 1


def _close_command(args: argparse.Namespace) -> int:
    runtime = build_runtime(args.project_dir)
    try:
        sprint = runtime.engine.close_sprint()
    except SprintRunnerError as exc:
        _report_error(exc, as_json=args.json)
        return 1
    if args.json:
        _write_json(sprint)
    else:
        sys.stdout.write(f"Closed sprint {sprint.get('id')}\n")
    return 0


def _serve_command(args: argparse.Namespace) -> int:
    import uvicorn

    from .server.api import create_app

    app = create_app(project_dir=args.project_dir.resolve())
    uvicorn.run(app, host=args.host, port=args.port)
    return 0


def _worker_channel(args: argparse.Namespace) -> ProgressChannel:
    if args.state_dir is not None:
        return ProgressChannel(args.state_dir.resolve())
    env_dir = os.environ.get("SPRINT_RUNNER_STATE_DIR")
    if env_dir:
        return ProgressChannel(Path(env_dir))
    return build_runtime(args.project_dir).channel


def _progress_command(args: argparse.Namespace) -> int:
    if not args.task_id:
        sys.stderr.write("task_id is required (or set SPRINT_RUNNER_TASK_ID)\n")
        return 2
    channel = _worker_channel(args)
    channel.report_progress(args.task_id, args.session_id, args.percent, args.message)
    return 0


def _signal_command(args: argparse.Namespace) -> int:
    if not args.task_id:
        sys.stderr.write("task_id is required (or set SPRINT_RUNNER_TASK_ID)\n")
        return 2
    channel = _worker_channel(args)
    try:
        if args.status == SIGNAL_STATUS_FAILURE:
            channel.signal_failure(args.task_id, args.session_id, {"reason": args.reason or "worker reported failure"})
            return 0
        notes = parse_completion_notes(_read_notes(args.notes, args.notes_file))
        channel.signal_success(args.task_id, args.session_id, **notes)
    except FileExistsError:
        sys.stderr.write(f"A completion signal for {args.task_id} already exists\n")
        return 1
    except SprintRunnerError as exc:
        _report_error(exc, as_json=False)
        return 1
    return 0


_COMMANDS: dict[str, tuple[Callable[[], argparse.ArgumentParser], Callable[[argparse.Namespace], int]]] = {
    "load": (_build_load_parser, _load_command),
    "status": (_build_status_parser, _status_command),
    "plan": (_build_plan_parser, _plan_command),
    "ready": (_build_ready_parser, _ready_command),
    "start": (_build_start_parser, _start_command),
    "complete": (_build_complete_parser, _complete_command),
    "defer": (_build_defer_parser, _defer_command),
    "run": (_build_run_parser, _run_command),
    "resolve-conflict": (_build_resolve_conflict_parser, _resolve_conflict_command),
    "close": (_build_close_parser, _close_command),
    "serve": (_build_serve_parser, _serve_command),
    "progress": (_build_progress_parser, _progress_command),
    "signal": (_build_signal_parser, _signal_command),
}


def main(argv: list[str] | None = None) -> None:
    """Run the `sprint-runner` CLI.

    Args:
        argv: Optional argument list (excluding the executable name). When omitted,
            uses `sys.argv[1:]`.

    Raises:
        SystemExit: Raised to return a process exit code for CLI subcommands.
    """
    argv = list(sys.argv[1:] if argv is None else argv)
    if not argv or argv[0] not in _COMMANDS:
        sys.stderr.write("usage: sprint-runner {" + ",".join(_COMMANDS) + "} ...\n")
        raise SystemExit(2)
    build_parser, command = _COMMANDS[argv[0]]
    args = build_parser().parse_args(argv[1:])
    configure_logging(args.log_level)
    logger.debug("sprint-runner {} in {}", argv[0], args.project_dir)
    raise SystemExit(command(args))


if __name__ == "__main__":
    main()
