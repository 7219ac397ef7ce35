"""Logging configuration for the Libra runtime.

Records emitted through :func:`libra.logging_events.log_event` carry their
fields as record attributes; :class:`ContextFormatter` appends the ones that
identify a job, a queue or an agent to the rendered line.
"""

from __future__ import annotations

import logging
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# rendered in this order after the message
CONTEXT_FIELDS = (
    "component",
    "dependency",
    "queue",
    "entity_id",
    "worker",
    "status",
    "retry_count",
    "duration_ms",
    "error",
)


class ContextFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        context = []
        for name in CONTEXT_FIELDS:
            value = getattr(record, name, None)
            if value is not None:
                context.append(f"{name}={value}")
        if not context:
            return line
        return f"{line} | {' '.join(context)}"


def configure_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Route every logger to stdout (and ``log_file``) with job and agent context."""

    formatter = ContextFormatter(LOG_FORMAT)
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )
    # httpx logs every provider request at INFO
    logging.getLogger("httpx").setLevel(max(logging.WARNING, logging.getLogger().level))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
