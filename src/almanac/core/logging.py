"""Structured logging for almanac clients.

Module loggers stay plain ``logging.getLogger(__name__)``; their records are
rendered through structlog's ProcessorFormatter.  Each line carries the
client name bound by :func:`configure_logging` and, inside an
``operation_span``, the trace and span ids of that operation.

Console output goes to stderr as ``text`` or ``json``.  When ``log_root`` is
set, JSON lines are also appended to ``{log_root}/{client_name}.log``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from opentelemetry import trace

from almanac.config import DEFAULT_CLIENT_NAME, LoggingConfig

# Handlers installed by configure_logging(); replaced on reconfiguration.
_installed_handlers: list[logging.Handler] = []


def add_trace_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Attach ``trace_id`` and ``span_id`` while a valid span is current."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict.setdefault("trace_id", format(ctx.trace_id, "032x"))
        event_dict.setdefault("span_id", format(ctx.span_id, "016x"))
    return event_dict


def _formatter(renderer: structlog.types.Processor, time_fmt: str) -> logging.Formatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt=time_fmt),
            add_trace_context,
            structlog.stdlib.ExtraAdder(),
        ],
    )


def configure_logging(
    config: LoggingConfig | None = None,
    *,
    client_name: str | None = None,
) -> list[logging.Handler]:
    """Route the root logger through structlog according to *config*.

    Returns the handlers that were installed.  Handlers attached by anything
    else (an embedding application, pytest's capture) are left in place.
    """
    config = config or LoggingConfig()
    name = client_name or DEFAULT_CLIENT_NAME

    structlog.contextvars.bind_contextvars(client=name)

    console = logging.StreamHandler(sys.stderr)
    if config.format == "json":
        console.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
    else:
        console.setFormatter(_formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S"))
    handlers: list[logging.Handler] = [console]

    if config.log_root is not None:
        log_dir = Path(config.log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_dir / f"{name}.log", encoding="utf-8")
        file_handler.setFormatter(_formatter(structlog.processors.JSONRenderer(), "iso"))
        handlers.append(file_handler)

    root = logging.getLogger()
    for handler in _installed_handlers:
        root.removeHandler(handler)
        handler.close()
    _installed_handlers[:] = handlers

    for handler in handlers:
        root.addHandler(handler)
    root.setLevel(logging.getLevelNamesMapping().get(config.level.upper(), logging.INFO))
    return list(handlers)
