"""Structured logging helpers with rollout context binding."""

from __future__ import annotations

import logging
from typing import cast

import structlog
from structlog.contextvars import bind_contextvars


def configure_logging(level: str) -> None:
    """Configure structlog with JSON output."""
    level_name = level.upper()
    numeric_level = logging._nameToLevel.get(level_name, logging.INFO)

    logging.basicConfig(format="%(message)s", level=numeric_level)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def bind_rollout_context(rollout_id: str, target: str) -> None:
    """Bind rollout identifiers into the logging context of the current task.

    asyncio tasks run in a copy of the creating context, so bindings made
    inside a controller task stay local to that rollout.
    """
    bind_contextvars(rollout_id=rollout_id, target=target)


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Return a structured logger."""
    return cast(structlog.BoundLogger, structlog.get_logger(name))
