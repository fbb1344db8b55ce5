"""Capability registry: maps a task's ``assigned_role`` to a worker type.

Each *WorkerType* is a blueprint describing how to launch a worker for one
capability tag (an external command or an in-process handler) and its retry
and heartbeat limits. Lookup is direct by tag; there is no fuzzy matching.
"""

from __future__ import annotations

import importlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional, Union

import yaml
from loguru import logger

from ..errors import SpawnError
from ..workers.base import WorkerLauncher
from ..workers.inline import InlineLauncher
from ..workers.process import ProcessLauncher

Handler = Union[str, Callable[..., Any]]


def _import_handler(spec: str) -> Callable[..., Any]:
    """Resolve ``"package.module:function"`` to the callable it names."""
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ValueError(f"Handler must look like 'module:function', got {spec!r}")
    module = importlib.import_module(module_name)
    handler = getattr(module, attr, None)
    if not callable(handler):
        raise ValueError(f"Handler {spec!r} is not callable")
    return handler


@dataclass(frozen=True)
class WorkerType:
    """Immutable blueprint for launching workers of one capability."""

    role: str
    display_name: str = ""
    description: str = ""
    command: Optional[str] = None
    handler: Optional[Handler] = None
    env: dict[str, str] = field(default_factory=dict)
    # None means "use the runner-wide setting"
    max_retries: Optional[int] = None
    heartbeat_floor_seconds: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def launcher(self) -> WorkerLauncher:
        if self.handler is not None:
            handler = _import_handler(self.handler) if isinstance(self.handler, str) else self.handler
            return InlineLauncher(handler)
        if self.command:
            return ProcessLauncher(self.command, env=self.env)
        raise ValueError(f"Worker type '{self.role}' has neither a command nor a handler")

    def to_dict(self) -> dict[str, Any]:
        handler = self.handler
        if handler is not None and not isinstance(handler, str):
            handler = f"{getattr(handler, '__module__', '?')}:{getattr(handler, '__qualname__', repr(handler))}"
        return {
            "role": self.role,
            "display_name": self.display_name,
            "description": self.description,
            "command": self.command,
            "handler": handler,
            "max_retries": self.max_retries,
            "heartbeat_floor_seconds": self.heartbeat_floor_seconds,
            "metadata": dict(self.metadata),
        }


_KNOWN_FIELDS = {
    "display_name", "description", "command", "handler", "env",
    "max_retries", "heartbeat_floor_seconds",
}


class CapabilityRegistry:
    """Registry of worker types keyed by capability tag.

    ``default_role`` optionally names the worker type used for tags with no
    registration of their own.
    """

    def __init__(self, default_role: Optional[str] = None) -> None:
        self._types: dict[str, WorkerType] = {}
        self.default_role = default_role

    # -- query ---------------------------------------------------------------

    def get_type(self, role: str) -> WorkerType:
        if role not in self._types:
            available = ", ".join(sorted(self._types)) or "none"
            raise KeyError(f"Unknown worker type '{role}' (available: {available})")
        return self._types[role]

    def has_type(self, role: str) -> bool:
        return role in self._types

    def list_types(self) -> list[WorkerType]:
        return list(self._types.values())

    def resolve(self, role: str) -> WorkerType:
        """Worker type for a task's ``assigned_role``.

        Raises:
            SpawnError: No worker type is registered for *role* and no default
                is configured.
        """
        if role in self._types:
            return self._types[role]
        if self.default_role and self.default_role in self._types:
            return self._types[self.default_role]
        available = ", ".join(sorted(self._types)) or "none"
        raise SpawnError(
            f"No worker registered for capability '{role}' (available: {available})",
            expected="registered capability",
            details={"role": role, "available": sorted(self._types)},
        )

    # -- mutation ------------------------------------------------------------

    def register(self, worker_type: WorkerType) -> None:
        self._types[worker_type.role] = worker_type

    def register_handler(self, role: str, handler: Callable[..., Any], **kwargs: Any) -> WorkerType:
        """Register an in-process handler for *role* and return its type."""
        worker_type = WorkerType(role=role, handler=handler, display_name=kwargs.pop("display_name", role), **kwargs)
        self.register(worker_type)
        return worker_type

    def unregister(self, role: str) -> None:
        self._types.pop(role, None)

    # -- config loading ------------------------------------------------------

    def load_from_config(self, workers_config: dict[str, Any]) -> None:
        """Register worker types from the ``workers`` config block.

        ``roles`` may be a mapping of tag -> definition or a list of
        definitions each carrying ``role``. Unrecognised keys go to
        ``metadata``.
        """
        default = workers_config.get("default_role")
        if isinstance(default, str) and default:
            self.default_role = default

        roles = workers_config.get("roles")
        entries: list[dict[str, Any]] = []
        if isinstance(roles, dict):
            for role, entry in roles.items():
                if isinstance(entry, str):
                    entry = {"command": entry}
                if isinstance(entry, dict):
                    entries.append({"role": str(role), **entry})
        elif isinstance(roles, list):
            entries = [e for e in roles if isinstance(e, dict)]
        elif roles is not None:
            logger.warning("workers.roles must be a mapping or a list; ignoring")

        for entry in entries:
            if "role" not in entry:
                logger.warning("Skipping worker entry without 'role': {}", entry)
                continue
            self._load_entry(entry)

    def load_from_yaml(self, path: Path) -> None:
        """Load worker definitions from a YAML file with a ``workers`` block."""
        if not path.exists():
            logger.debug("Worker YAML file does not exist: {}", path)
            return
        with open(path, "r", encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
        if not isinstance(data, dict) or not isinstance(data.get("workers"), dict):
            logger.warning("Worker YAML missing 'workers' mapping: {}", path)
            return
        self.load_from_config(data["workers"])

    def _load_entry(self, entry: dict[str, Any]) -> None:
        role = str(entry["role"])
        known = {k: v for k, v in entry.items() if k in _KNOWN_FIELDS}
        extra = {k: v for k, v in entry.items() if k not in _KNOWN_FIELDS and k != "role"}
        if not known.get("command") and not known.get("handler"):
            logger.warning("Worker '{}' has neither command nor handler; skipping", role)
            return
        max_retries = known.get("max_retries")
        floor = known.get("heartbeat_floor_seconds")
        self.register(
            WorkerType(
                role=role,
                display_name=str(known.get("display_name") or role.replace("_", " ").title()),
                description=str(known.get("description") or ""),
                command=known.get("command"),
                handler=known.get("handler"),
                env={str(k): str(v) for k, v in (known.get("env") or {}).items()},
                max_retries=max_retries if isinstance(max_retries, int) and max_retries >= 0 else None,
                heartbeat_floor_seconds=float(floor) if isinstance(floor, (int, float)) and floor > 0 else None,
                metadata=extra,
            )
        )
