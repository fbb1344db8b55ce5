"""File-based task store with thread-safe locking.

Stores the sprint's tasks in a single YAML file (``tasks.yaml``) inside the
project's ``.sprint_runner/`` directory. All reads and writes go through
:meth:`TaskStore.transaction`, which holds an in-process lock plus an exclusive
file lock for the whole read-modify-write, and bumps the store ``version`` on
every save.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional

import yaml

from ..constants import TASK_STORE_FILE, TASK_STORE_LOCK
from ..io_utils import FileLock, _atomic_write_yaml
from .model import Task

STORE_FORMAT = 1


def _load_raw(path: Path) -> dict[str, Any]:
    """Load the raw store payload from *path*, returning an empty store if missing."""
    if not path.exists():
        return {"version": 0, "sprint": {}, "tasks": []}
    data = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(data, dict):
        return {"version": 0, "sprint": {}, "tasks": []}
    tasks = data.get("tasks")
    sprint = data.get("sprint")
    return {
        "version": int(data.get("version") or 0),
        "sprint": dict(sprint) if isinstance(sprint, dict) else {},
        "tasks": list(tasks) if isinstance(tasks, list) else [],
    }


class TaskStore:
    """Thread-safe, file-backed store for :class:`Task` objects.

    Parameters
    ----------
    state_dir:
        Path to the ``.sprint_runner/`` directory for the project.
    """

    def __init__(self, state_dir: Path) -> None:
        self._state_dir = state_dir
        self._store_path = state_dir / TASK_STORE_FILE
        self._lock = FileLock(state_dir / TASK_STORE_LOCK)
        self._thread_lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._store_path

    def exists(self) -> bool:
        return self._store_path.exists()

    # -- internal helpers ---------------------------------------------------

    def _save(self, tx: "_TaskTx") -> None:
        payload = {
            "format": STORE_FORMAT,
            "version": tx.version + 1,
            "sprint": tx.sprint,
            "tasks": [t.to_dict() for t in tx.tasks],
        }
        _atomic_write_yaml(self._store_path, payload)
        tx.version += 1

    # -- public API ---------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator["_TaskTx"]:
        """Acquire the locks, load tasks, yield a transaction, and save on exit.

        Usage::

            with store.transaction() as tx:
                task = tx.get("db-schema")
                ...
                tx.mark_dirty()
                # saved on exit

        Nothing is written if the body raises.
        """
        with self._thread_lock:
            with self._lock:
                raw = _load_raw(self._store_path)
                tx = _TaskTx(
                    [Task.from_dict(d) for d in raw["tasks"] if isinstance(d, dict)],
                    raw["sprint"],
                    raw["version"],
                )
                yield tx
                if tx.dirty:
                    self._save(tx)

    def replace_all(self, tasks: list[Task], sprint: dict[str, Any]) -> int:
        """Overwrite the store with a freshly loaded sprint. Returns the new version."""
        with self.transaction() as tx:
            tx.tasks = list(tasks)
            tx.sprint = dict(sprint)
            tx.reindex()
            tx.mark_dirty()
        return tx.version

    def read_snapshot(self) -> list[Task]:
        """Return a read-only snapshot (no lock held after return)."""
        with self.transaction() as tx:
            return tx.list_all()

    def read_sprint(self) -> dict[str, Any]:
        with self.transaction() as tx:
            return dict(tx.sprint)

    def version(self) -> int:
        with self.transaction() as tx:
            return tx.version

    def get_one(self, task_id: str) -> Optional[Task]:
        with self.transaction() as tx:
            return tx.get(task_id)


class _TaskTx:
    """In-memory transaction over the task list and sprint metadata.

    Mutations are flushed back to disk when the ``transaction`` context
    manager exits, provided the transaction was marked dirty.
    """

    def __init__(self, tasks: list[Task], sprint: dict[str, Any], version: int) -> None:
        self.tasks = tasks
        self.sprint = sprint
        self.version = version
        self.dirty = False
        self._index: dict[str, int] = {}
        self.reindex()

    def reindex(self) -> None:
        self._index = {t.id: i for i, t in enumerate(self.tasks)}

    def mark_dirty(self) -> None:
        self.dirty = True

    # -- lookups ------------------------------------------------------------

    def get(self, task_id: str) -> Optional[Task]:
        idx = self._index.get(task_id)
        return self.tasks[idx] if idx is not None else None

    def list_all(self) -> list[Task]:
        return list(self.tasks)

    def by_id(self) -> dict[str, Task]:
        return {t.id: t for t in self.tasks}

    # -- mutations ----------------------------------------------------------

    def put(self, task: Task) -> Task:
        """Replace the stored record for ``task.id``; the task must exist."""
        idx = self._index.get(task.id)
        if idx is None:
            raise KeyError(f"Task {task.id} does not exist")
        self.tasks[idx] = task
        self.dirty = True
        return task
