"""Console logging via Rich plus the structured telemetry helper.

Telemetry records are ordinary log records whose message is a single JSON
object (``{"event": ..., "timestamp": ..., ...}``) so they stay greppable in a
terminal and parseable by log shippers.  The same payload is attached to the
record as ``record.event`` / ``record.fields``.
"""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from typing import Any

_LEVEL_ALIASES = {
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
}

_configured = False


def resolve_level(level: str | int) -> int:
    """Translate ``"warn"``/``"INFO"``/``10`` into a logging level number."""
    if isinstance(level, int):
        return level
    return _LEVEL_ALIASES.get(level.strip().lower(), logging.INFO)


def setup_logging(level: str | int = "info", *, stderr: bool = False) -> None:
    """Install a RichHandler on the root logger (once) and set the level.

    Pass ``stderr=True`` when stdout carries a protocol (the MCP sidecar).
    """
    global _configured

    root = logging.getLogger()
    root.setLevel(resolve_level(level))
    if _configured:
        return

    from rich.console import Console
    from rich.logging import RichHandler

    handler = RichHandler(
        console=Console(stderr=stderr), rich_tracebacks=True, show_path=False, markup=False
    )
    handler.setFormatter(logging.Formatter("%(message)s", datefmt="[%X]"))
    root.addHandler(handler)

    # uvicorn installs its own handlers; route them through ours instead
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uv_logger = logging.getLogger(name)
        uv_logger.handlers.clear()
        uv_logger.propagate = True

    _configured = True


def log_event(logger: logging.Logger, level: int, event: str, **fields: Any) -> None:
    """Emit one structured telemetry record."""
    if not logger.isEnabledFor(level):
        return
    payload = {
        "event": event,
        "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
        **fields,
    }
    logger.log(
        level,
        json.dumps(payload, default=str),
        extra={"event": event, "fields": fields},
    )
