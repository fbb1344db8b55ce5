"""Worker launchers (external commands and in-process handlers)."""

from .base import CancellationToken, WorkerContext, WorkerHandle, WorkerLauncher
from .inline import InlineLauncher
from .process import ProcessLauncher

__all__ = [
    "CancellationToken",
    "InlineLauncher",
    "ProcessLauncher",
    "WorkerContext",
    "WorkerHandle",
    "WorkerLauncher",
]
