"""Logging setup for pitwall.

Every module logs through ``logging.getLogger(__name__)``. ``configure_logging``
routes those records through structlog's ``ProcessorFormatter``: the console
gets coloured text (``fmt="text"``) or JSON lines (``fmt="json"``), and when
``log_root`` is set ``{log_root}/pitwall.log`` always gets JSON.

A series worker calls ``bind_series`` at the top of its task. structlog keeps
contextvars per asyncio task, so interleaved workers label their own lines.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog
from opentelemetry import trace

LOG_FILE_NAME = "pitwall.log"

# Per-request chatter at INFO.
QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def bind_series(series: str) -> None:
    """Tag every record logged from the current task with *series*."""
    structlog.contextvars.bind_contextvars(series=series)


def current_series() -> str | None:
    return structlog.contextvars.get_contextvars().get("series")


def add_trace_ids(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Stamp ``trace_id`` and ``span_id`` of the active OpenTelemetry span."""
    ctx = trace.get_current_span().get_span_context()
    if ctx.is_valid:
        event_dict["trace_id"] = trace.format_trace_id(ctx.trace_id)
        event_dict["span_id"] = trace.format_span_id(ctx.span_id)
    return event_dict


def _structlog_formatter(
    renderer: structlog.types.Processor, timestamp_fmt: str
) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        foreign_pre_chain=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt=timestamp_fmt),
            add_trace_ids,
            structlog.stdlib.ExtraAdder(),
        ],
    )


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install pitwall's handlers on the root logger, replacing any present.

    Parameters
    ----------
    level:
        Root log level name, case-insensitive. Unknown names fall back to INFO.
    fmt:
        ``"json"`` for JSON lines on stderr, anything else for coloured text.
    log_root:
        Directory for the JSON log file. Created if missing.
    """
    if fmt == "json":
        console = _structlog_formatter(structlog.processors.JSONRenderer(), "iso")
    else:
        console = _structlog_formatter(structlog.dev.ConsoleRenderer(), "%H:%M:%S")

    root = logging.getLogger()
    for handler in root.handlers:
        handler.close()
    root.handlers.clear()

    stream = logging.StreamHandler(sys.stderr)
    stream.setFormatter(console)
    root.addHandler(stream)

    if log_root is not None:
        log_root = Path(log_root)
        log_root.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_root / LOG_FILE_NAME)
        file_handler.setFormatter(
            _structlog_formatter(structlog.processors.JSONRenderer(), "iso")
        )
        root.addHandler(file_handler)

    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
