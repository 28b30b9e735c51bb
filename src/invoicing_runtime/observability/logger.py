"""Structured logging for the runtime.

stdlib ``logging`` is the sink; structlog renders every record as JSON (or
a console line in development).  Three pieces of context are attached to
each line:

- ``trace_id``: taken from the incoming event envelope, or minted for a
  fresh unit of work, so a command, the events it sends and the handlers
  consuming them can be correlated.
- ``event_name`` / ``event_id``: bound for the duration of one delivery.
- ``service``: the configured service name.
"""

from __future__ import annotations

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Any

import structlog

_trace_id: ContextVar[str] = ContextVar("trace_id", default="")

_EVENT_KEYS = ("event_name", "event_id")


def get_trace_id() -> str:
    """Trace ID of the current context; a new one is minted if unset."""
    tid = _trace_id.get()
    if not tid:
        tid = str(uuid.uuid4())
        _trace_id.set(tid)
    return tid


def set_trace_id(trace_id: str) -> None:
    _trace_id.set(trace_id)


def bind_event_context(event_name: str, event_id: str, trace_id: str) -> None:
    """Adopt the trace of a delivered event and tag log lines with the event."""
    set_trace_id(trace_id)
    structlog.contextvars.bind_contextvars(event_name=event_name, event_id=event_id)


def clear_event_context() -> None:
    structlog.contextvars.unbind_contextvars(*_EVENT_KEYS)


def _add_trace_id(
    logger: Any, method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    event_dict["trace_id"] = get_trace_id()
    return event_dict


def setup_logging(
    level: str = "INFO",
    format: str = "json",
    service: str | None = None,
) -> None:
    """Configure structlog over stdlib logging.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR).
        format: "json" for deployed processes, "console" for development.
        service: Service name bound to every line.
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        _add_trace_id,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=log_level,
    )
    # redis-py logs every reconnect at INFO
    logging.getLogger("redis").setLevel(max(log_level, logging.WARNING))

    if service:
        structlog.contextvars.bind_contextvars(service=service)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)
