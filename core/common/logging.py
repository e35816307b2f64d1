"""Structured logging for the governance service.

Every log line carries the service name; lines emitted while a command is
being handled also carry the operator that issued it.
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator

import structlog
from structlog.types import Processor


def setup_logging(
    level: str = "INFO",
    format: str = "json",
    service_name: str = "change-governance",
) -> None:
    """Configure structlog and the stdlib root logger once at start-up.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json" for machine-readable lines, "text" for the console
        service_name: Bound to every line as ``service``
    """
    numeric_level = getattr(logging, level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=numeric_level)

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if format == "json":
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )

    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(service=service_name)


@contextmanager
def operator_context(user_id: str, role: str | None = None) -> Iterator[None]:
    """Bind the acting operator to every log line emitted inside the block."""
    with structlog.contextvars.bound_contextvars(operator_id=user_id, operator_role=role):
        yield


def get_logger(name: str | None = None, **initial_values: Any) -> structlog.BoundLogger:
    """Get a structured logger, optionally pre-bound with ``initial_values``."""
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


class LoggerMixin:
    """Gives a class a ``logger`` bound with its class name."""

    @property
    def logger(self) -> structlog.BoundLogger:
        return get_logger(self.__class__.__name__)
