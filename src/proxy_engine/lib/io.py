"""
Domain: I/O (Membrane)

The only place engine output is formatted. Everything is routed through
the context's output sink so execution stays decoupled from display.
"""
from __future__ import annotations

from typing import Any, Dict

from ..kernel.schema import ExecutionContext

LEVEL_PREFIXES = {
    "debug": "[DEBUG]",
    "info": "[ENGINE]",
    "notice": "[NOTICE]",
    "warn": "[WARN]",
    "error": "[ERROR]",
}


def sys_log(
    message: str,
    _ctx: ExecutionContext,
    level: str = "info",
) -> Dict[str, Any]:
    """
    Log a message to the configured output sink.

    Debug lines are dropped unless the context has tracing enabled.

    Args:
        message: The message to log
        _ctx: Execution context with optional output_sink
        level: Log level - "debug", "info", "notice", "warn", "error"

    Returns:
        {"status": "success", "logged": bool}
    """
    if level == "debug" and not _ctx.trace:
        return {"status": "success", "logged": False}

    prefix = LEVEL_PREFIXES.get(level, "[ENGINE]")
    indent = "  " * _ctx.depth
    _ctx.emit(f"{prefix} {indent}{message}")
    return {"status": "success", "logged": True}
