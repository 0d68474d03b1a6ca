"""
Structured logging configuration with request correlation.

Configures structlog once for the whole process and exposes helpers for
request/principal correlation and for timing provider calls. Every module
obtains its logger through get_logger() and logs key/value events.
"""

import logging
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Optional
from uuid import uuid4

import structlog
from structlog.types import EventDict, Processor

from orderflow.core.config import get_settings

request_id_ctx: ContextVar[str] = ContextVar("request_id", default="")
principal_id_ctx: ContextVar[Optional[str]] = ContextVar("principal_id", default=None)

# Provider calls slower than this are logged as warnings
SLOW_OPERATION_MS = 2000


def add_request_id(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Attach the current request id, if any, to the event."""
    request_id = request_id_ctx.get()
    if request_id:
        event_dict["request_id"] = request_id
    return event_dict


def add_principal_id(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Attach the authenticated principal id, if any, to the event."""
    principal_id = principal_id_ctx.get()
    if principal_id:
        event_dict["principal_id"] = principal_id
    return event_dict


def add_timestamp(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add an ISO-8601 UTC timestamp to the event."""
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def add_logger_name(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Add the logger name to the event."""
    name = getattr(logger, "name", None)
    if name:
        event_dict["logger"] = name
    return event_dict


def configure_logging() -> None:
    """
    Configure structured logging.

    Development uses the colored console renderer; every other environment
    emits one JSON object per line on stdout.
    """
    settings = get_settings()

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        add_timestamp,
        add_logger_name,
        add_request_id,
        add_principal_id,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.plain_traceback,
            )
        )
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level),
    )

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("stripe").setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)


def set_request_id(request_id: Optional[str] = None) -> str:
    """
    Set request ID in context for correlation.

    Args:
        request_id: Optional request ID, generates UUID if not provided

    Returns:
        Request ID that was set
    """
    if not request_id:
        request_id = str(uuid4())
    request_id_ctx.set(request_id)
    return request_id


def get_request_id() -> str:
    """Return the current request id or an empty string."""
    return request_id_ctx.get()


def set_principal_id(principal_id: Optional[str]) -> None:
    """Bind the authenticated principal id to the logging context."""
    principal_id_ctx.set(principal_id)


def clear_context() -> None:
    """
    Clear all context variables.

    Called at the end of request processing so context does not leak
    between requests served by the same task.
    """
    request_id_ctx.set("")
    principal_id_ctx.set(None)


class PerformanceLogger:
    """
    Context manager timing a block and logging its outcome.

    Usable both with ``with`` and ``async with`` so that awaited provider
    calls can be wrapped the same way as synchronous code.
    """

    def __init__(
        self,
        logger: structlog.stdlib.BoundLogger,
        operation: str,
        **context: Any,
    ):
        self.logger = logger
        self.operation = operation
        self.context = context
        self.start_time: Optional[float] = None

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.perf_counter()
        self.logger.debug(
            "Operation started",
            operation=self.operation,
            **self.context,
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is None:
            return

        duration_ms = round((time.perf_counter() - self.start_time) * 1000, 2)

        if exc_type is not None:
            self.logger.warning(
                "Operation failed",
                operation=self.operation,
                duration_ms=duration_ms,
                error_type=exc_type.__name__,
                **self.context,
            )
            return

        log_method = (
            self.logger.warning
            if duration_ms > SLOW_OPERATION_MS
            else self.logger.debug
        )
        log_method(
            "Operation completed",
            operation=self.operation,
            duration_ms=duration_ms,
            **self.context,
        )

    async def __aenter__(self) -> "PerformanceLogger":
        return self.__enter__()

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.__exit__(exc_type, exc_val, exc_tb)


def log_performance(
    logger: structlog.stdlib.BoundLogger,
    operation: str,
    **context: Any,
) -> PerformanceLogger:
    """
    Create a performance logging context manager.

    Args:
        logger: Logger instance to use
        operation: Operation name for logging
        **context: Additional context to include in logs

    Returns:
        PerformanceLogger context manager

    Example:
        >>> logger = get_logger(__name__)
        >>> async with log_performance(logger, "track_by_waybill", awb="A1"):
        ...     snapshot = await client.track_by_waybill("A1")
    """
    return PerformanceLogger(logger, operation, **context)
