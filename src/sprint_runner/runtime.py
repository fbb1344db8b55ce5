"""Wire the engine, channel, registry, resolver, coordinator and scheduler for a project."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from .agents.coordinator import WorkerCoordinator
from .agents.registry import CapabilityRegistry
from .agents.scheduler import Scheduler
from .channel import ProgressChannel
from .config import RunnerSettings, build_settings, get_workers_config, load_runner_config
from .conflicts import ConflictResolver
from .constants import STATE_DIR_NAME
from .task_engine.engine import TaskEngine


@dataclass
class SprintRuntime:
    project_dir: Path
    state_dir: Path
    settings: RunnerSettings
    engine: TaskEngine
    channel: ProgressChannel
    registry: CapabilityRegistry
    resolver: ConflictResolver
    coordinator: WorkerCoordinator
    scheduler: Scheduler


def build_runtime(project_dir: Path, **overrides: Any) -> SprintRuntime:
    """Build every component for *project_dir* from its config file plus overrides."""
    project_dir = project_dir.resolve()
    state_dir = project_dir / STATE_DIR_NAME
    config, err = load_runner_config(project_dir)
    if err:
        logger.warning("Ignoring unreadable runner config: {}", err)
    settings = build_settings(config, **overrides)

    engine = TaskEngine(state_dir, settings)
    channel = ProgressChannel(
        state_dir,
        poll_interval_seconds=settings.poll_interval_seconds,
        ipc_max_attempts=settings.ipc_max_attempts,
        ipc_backoff_seconds=settings.ipc_backoff_seconds,
    )
    registry = CapabilityRegistry()
    registry.load_from_config(get_workers_config(config))
    resolver = ConflictResolver(project_dir, state_dir, engine)
    coordinator = WorkerCoordinator(project_dir, engine, channel, registry, resolver, settings)
    scheduler = Scheduler(engine, coordinator, channel, resolver, settings)
    return SprintRuntime(
        project_dir=project_dir,
        state_dir=state_dir,
        settings=settings,
        engine=engine,
        channel=channel,
        registry=registry,
        resolver=resolver,
        coordinator=coordinator,
        scheduler=scheduler,
    )
