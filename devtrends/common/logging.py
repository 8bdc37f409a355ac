"""
Logging module - structured logging for the orchestration layer using structlog.

Modules keep using ``logging.getLogger(__name__)``; ``configure_logging``
routes every stdlib record through structlog's ``ProcessorFormatter`` so the
output is either human readable console lines or one JSON object per line.

Request scoped values (request id, path, client identifier) are bound with
``bind_request_context`` and merged into every record emitted while the
request is being served, including records from stdlib loggers.
"""

from __future__ import annotations

import logging
from typing import Any

import structlog

__all__ = [
    "configure_logging",
    "get_logger",
    "bind_request_context",
    "clear_request_context",
]

_SHARED_PROCESSORS: list[structlog.types.Processor] = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


class _StructlogHandler(logging.StreamHandler):
    """Root handler installed by ``configure_logging`` (replaced on reconfigure)."""


def configure_logging(level: str | int = "INFO", json_logs: bool = False) -> None:
    """
    Configure structlog and bridge the standard library root logger to it.

    Safe to call more than once; the previously installed handler is replaced.

    Args:
        level: Minimum log level for the root logger
        json_logs: Render JSON lines instead of console output
    """
    structlog.configure(
        processors=[
            *_SHARED_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer: structlog.types.Processor
    if json_logs:
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = _StructlogHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing, _StructlogHandler):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper() if isinstance(level, str) else level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger for key/value style events."""
    return structlog.stdlib.get_logger(name)


def bind_request_context(**values: Any) -> None:
    """Bind values to every log record emitted in the current context."""
    structlog.contextvars.bind_contextvars(**values)


def clear_request_context() -> None:
    """Drop all request scoped logging values."""
    structlog.contextvars.clear_contextvars()
