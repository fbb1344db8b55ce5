STATE_DIR_NAME = ".sprint_runner"
CONFIG_FILE = "config.yaml"
TASK_STORE_FILE = "tasks.yaml"
TASK_STORE_LOCK = "tasks.lock"
RUN_LOCK_FILE = ".run.lock"
ARTIFACTS_DIR = "artifacts"
RUNS_DIR = "runs"
PROGRESS_DIR = "progress"
SIGNALS_DIR = "signals"
INVALIDATED_DIR = "invalidated"
CONSUMED_FILE = "consumed.json"
SIGNAL_OWNERS_FILE = "owners.json"
TASK_EVENTS_FILE = "task_events.jsonl"
SPRINT_LOG_FILE = "sprint_log.jsonl"
MERGE_LEDGER_FILE = "merge_ledger.json"
SESSION_OUTPUT_DIR = "output"
WINDOWS_LOCK_BYTES = 4096

DEFAULT_MAX_PARALLEL_WORKERS = 5
DEFAULT_MAX_SPAWN_ATTEMPTS = 3
DEFAULT_MAX_RETRIES = 3  # Session restarts before the task is deferred
# Completion detection latency floor: a written signal is observed within one interval.
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_HEARTBEAT_FLOOR_SECONDS = 120
DEFAULT_EFFORT_UNIT_SECONDS = 60
DEFAULT_IPC_MAX_ATTEMPTS = 4
DEFAULT_IPC_BACKOFF_SECONDS = 0.05
DEFAULT_CRITICAL_PATH_TIE_BREAK = "first_defined"
CRITICAL_PATH_TIE_BREAKS = ("first_defined", "last_defined")

TASK_STATUS_PENDING = "pending"
TASK_STATUS_IN_PROGRESS = "in_progress"
TASK_STATUS_COMPLETED = "completed"
TASK_STATUS_DEFERRED = "deferred"

SIGNAL_STATUS_SUCCESS = "success"
SIGNAL_STATUS_FAILURE = "failure"

RETRY_BUDGET_REASON = "exceeded retry budget"
SPAWN_BUDGET_REASON = "exceeded spawn attempts"

ERROR_KIND_SCHEMA = "schema_error"
ERROR_KIND_CYCLE = "cycle_error"
ERROR_KIND_TRANSITION = "transition_error"
ERROR_KIND_VALIDATION = "validation_error"
ERROR_KIND_IPC = "ipc_error"
ERROR_KIND_SESSION_CONFLICT = "session_conflict"
ERROR_KIND_ARTIFACT_CONFLICT = "artifact_conflict"
ERROR_KIND_NOT_FOUND = "task_not_found"
ERROR_KIND_SPAWN = "spawn_error"

# Resolution steps returned with every structured error
RESOLUTION_STEPS = {
    ERROR_KIND_SCHEMA: [
        "Open the sprint definition and add the missing or malformed fields.",
        "Every task needs id, name, status, phase and assigned_role.",
        "Re-run `sprint-runner load` once the definition validates.",
    ],
    ERROR_KIND_CYCLE: [
        "Break the dependency cycle reported in cycle_path.",
        "Re-run `sprint-runner load` after editing the dependencies.",
    ],
    ERROR_KIND_TRANSITION: [
        "Check the task's current status with `sprint-runner status`.",
        "Only pending -> in_progress -> completed|deferred and deferred -> in_progress are allowed.",
    ],
    ERROR_KIND_VALIDATION: [
        "Fill in the completion notes template (summary, files_changed, design_decisions).",
        "Retry the operation with the completed notes.",
    ],
    ERROR_KIND_IPC: [
        "Check that the state directory is writable and the disk is not full.",
        "Re-run the sprint; completed signals are preserved.",
    ],
    ERROR_KIND_SESSION_CONFLICT: [
        "Wait for the active session to finish or let the coordinator time it out.",
    ],
    ERROR_KIND_ARTIFACT_CONFLICT: [
        "Merge the overlapping edits in the artifact by hand.",
        "Run `sprint-runner resolve-conflict <artifact>` to clear the sprint flag.",
    ],
    ERROR_KIND_NOT_FOUND: [
        "List tasks with `sprint-runner status` and use an existing id.",
    ],
    ERROR_KIND_SPAWN: [
        "Check that a worker is registered for the task's assigned_role (workers.roles in config.yaml).",
        "Check the worker command runs from the project directory.",
    ],
}
