"""Load optional runner configuration from `.sprint_runner/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    CRITICAL_PATH_TIE_BREAKS,
    DEFAULT_CRITICAL_PATH_TIE_BREAK,
    DEFAULT_EFFORT_UNIT_SECONDS,
    DEFAULT_HEARTBEAT_FLOOR_SECONDS,
    DEFAULT_IPC_BACKOFF_SECONDS,
    DEFAULT_IPC_MAX_ATTEMPTS,
    DEFAULT_MAX_PARALLEL_WORKERS,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_SPAWN_ATTEMPTS,
    DEFAULT_POLL_INTERVAL_SECONDS,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error


@dataclass(frozen=True)
class RunnerSettings:
    """Resolved scheduling and worker settings for a sprint run."""

    max_parallel_workers: int = DEFAULT_MAX_PARALLEL_WORKERS
    max_spawn_attempts: int = DEFAULT_MAX_SPAWN_ATTEMPTS
    max_retries: int = DEFAULT_MAX_RETRIES
    poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS
    heartbeat_floor_seconds: float = DEFAULT_HEARTBEAT_FLOOR_SECONDS
    effort_unit_seconds: float = DEFAULT_EFFORT_UNIT_SECONDS
    ipc_max_attempts: int = DEFAULT_IPC_MAX_ATTEMPTS
    ipc_backoff_seconds: float = DEFAULT_IPC_BACKOFF_SECONDS
    critical_path_tie_break: str = DEFAULT_CRITICAL_PATH_TIE_BREAK

    def with_overrides(self, **overrides: Any) -> "RunnerSettings":
        """Return a copy with every non-None override applied."""
        known = {f.name for f in fields(self)}
        changes = {k: v for k, v in overrides.items() if k in known and v is not None}
        return replace(self, **changes) if changes else self


def load_runner_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional runner config file.

    Args:
        project_dir: Repository root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    project_dir = project_dir.resolve()
    path = project_dir / STATE_DIR_NAME / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if not path.exists():
        return {}, None
    if err:
        return {}, err
    return data, None


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def get_scheduler_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the scheduler configuration block from the runner config.

    Args:
        config: Runner configuration dictionary.

    Returns:
        The `scheduler` config mapping, or an empty dict if not present.
    """
    raw = _get_nested(config, "scheduler")
    return raw if isinstance(raw, dict) else {}


def get_workers_config(config: dict[str, Any]) -> dict[str, Any]:
    """Extract the workers configuration block from the runner config.

    Args:
        config: Runner configuration dictionary.

    Returns:
        The `workers` config mapping, or an empty dict if not present.
    """
    raw = _get_nested(config, "workers")
    return raw if isinstance(raw, dict) else {}


def _positive_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value > 0 else None


def _non_negative_int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        return None
    return value if value >= 0 else None


def _positive_float(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value) if value > 0 else None


def build_settings(config: dict[str, Any], **overrides: Any) -> RunnerSettings:
    """Merge the config file's `scheduler`/`workers` blocks over the defaults.

    Invalid values are ignored so a typo in the config never stops a sprint;
    explicit keyword overrides (from CLI flags) win over the file.
    """
    scheduler = get_scheduler_config(config)
    workers = get_workers_config(config)
    tie_break = scheduler.get("critical_path_tie_break")
    from_file = {
        "max_parallel_workers": _positive_int(scheduler.get("max_parallel_workers")),
        "max_spawn_attempts": _positive_int(scheduler.get("max_spawn_attempts")),
        "poll_interval_seconds": _positive_float(scheduler.get("poll_interval_seconds")),
        "critical_path_tie_break": tie_break if tie_break in CRITICAL_PATH_TIE_BREAKS else None,
        "max_retries": _non_negative_int(workers.get("max_retries")),
        "heartbeat_floor_seconds": _positive_float(workers.get("heartbeat_floor_seconds")),
        "effort_unit_seconds": _positive_float(workers.get("effort_unit_seconds")),
        "ipc_max_attempts": _positive_int(workers.get("ipc_max_attempts")),
        "ipc_backoff_seconds": _positive_float(workers.get("ipc_backoff_seconds")),
    }
    return RunnerSettings().with_overrides(**from_file).with_overrides(**overrides)
