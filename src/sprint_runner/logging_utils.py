"""Configure logging and format runner events for logs."""

from __future__ import annotations

import json
import sys
from typing import Any

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """Configure the loguru logger with the specified level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format=(
            "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
            "<level>{level: <8}</level> | "
            "<cyan>{module}</cyan>:<cyan>{line}</cyan>\n"
            "{message}"
        ),
    )


def _clip(text: str, limit: int = 240) -> str:
    return (text[:limit] + "…") if len(text) > limit else text


def summarize_signal(signal: Any) -> dict[str, Any]:
    """Render a compact, JSON-friendly summary of a completion signal.

    Args:
        signal: CompletionSignal instance (or None).

    Returns:
        A dictionary suitable for logging or serialization.
    """
    if signal is None:
        return {"signal": None}
    d: dict[str, Any] = {
        "task_id": getattr(signal, "task_id", None),
        "session_id": getattr(signal, "session_id", None),
        "status": getattr(signal, "status", None),
        "changed_n": len(getattr(signal, "files_changed", []) or []),
        "decisions_n": len(getattr(signal, "design_decisions", []) or []),
    }
    error = getattr(signal, "error", None)
    if isinstance(error, dict):
        reason = str(error.get("reason") or "")
        if reason:
            d["reason"] = _clip(reason)
        if error.get("exit_code") is not None:
            d["exit_code"] = error.get("exit_code")
        stderr_tail = str(error.get("stderr_tail") or "").strip()
        if stderr_tail:
            d["stderr_tail"] = _clip(stderr_tail)
    return d


def pretty(obj: Any, *, indent: int = 2) -> str:
    """Serialize an object as JSON for readable logs.

    Args:
        obj: Object to serialize.
        indent: Indentation level for JSON output.

    Returns:
        A JSON string when possible; otherwise `str(obj)`.
    """
    try:
        return json.dumps(obj, indent=indent, default=str)
    except (TypeError, ValueError):
        return str(obj)
