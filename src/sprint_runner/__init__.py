"""Provide the public `sprint_runner` package exports."""

from __future__ import annotations

from .runtime import SprintRuntime, build_runtime

__all__ = ["SprintRuntime", "build_runtime"]
