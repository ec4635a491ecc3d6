"""
Structured logging for the coordination layer, built on structlog.

Every module logs through ``get_logger(__name__)`` with key/value pairs;
coordinators use :class:`LoggerMixin` and bind request-scoped keys (entity
kind, cache key) with :func:`log_context` so that cache, gate and collaborator
events of one load share the same context.
"""

import logging
import sys
from typing import Any, Optional

import structlog
from structlog.typing import EventDict, Processor, WrappedLogger

APP_NAME = "crm-coordinator"

# Per-request lines from these libraries duplicate our own fetch events
_NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def _add_app_name(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict.setdefault("app", APP_NAME)
    return event_dict


def _resolve_level(log_level: str) -> int:
    return getattr(logging, str(log_level).upper(), logging.INFO)


def setup_logging(log_level: str = "INFO", json_logs: Optional[bool] = None) -> None:
    """
    Configure structlog and the stdlib root logger.

    Args:
        log_level: Minimum level name (DEBUG, INFO, ...)
        json_logs: Force JSON (True) or console (False) output; unset picks
            console on a TTY and JSON otherwise
    """
    level = _resolve_level(log_level)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_app_name,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]

    if json_logs is None:
        json_logs = not sys.stderr.isatty()

    if json_logs:
        renderers: list[Processor] = [
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ]
    else:
        renderers = [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=shared_processors + renderers,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.BoundLogger:
    """Logger bound to ``module=name`` when a name is given."""
    logger = structlog.get_logger()
    if name:
        logger = logger.bind(module=name)
    return logger


class LoggerMixin:
    """Adds a ``log`` property bound to ``component=<class name>``."""

    @property
    def log(self) -> structlog.BoundLogger:
        logger = self.__dict__.get("_logger")
        if logger is None:
            logger = structlog.get_logger().bind(component=self.__class__.__name__)
            self.__dict__["_logger"] = logger
        return logger


def log_context(**kwargs: Any) -> structlog.contextvars.bound_contextvars:
    """Bind ``kwargs`` to every log line emitted inside the ``with`` block."""
    return structlog.contextvars.bound_contextvars(**kwargs)
