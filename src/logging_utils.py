"""
Centralized logging and error classification utilities for the streaming relay.

This module provides helpers that standardize logging and error reporting
across the console and web entry points.

Features:
- Structured logging over the stdlib logging tree
- Error classification into HTTP status and category
- Operation timing via decorator or async context manager
- Loggers carrying per-request context
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import httpx
import structlog
from pydantic import ValidationError

from src.llm.exceptions import (
    ConfigurationMissing,
    MalformedChunk,
    StreamCancelled,
    TransportFailure,
    UpstreamStreamError,
)

# Type variables for generic decorators
P = ParamSpec("P")
T = TypeVar("T")
AsyncCallable = Callable[P, Awaitable[T]]

LOG_FORMAT = "[%(asctime)s.%(msecs)03d] %(levelname)s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"

logger = structlog.get_logger(__name__)


def configure_logging(level: str | int = "INFO") -> None:
    """Configure stdlib logging and route structlog through it."""
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            raise ValueError(f"Unknown logging level: {level}")

    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATE_FORMAT)
    logging.getLogger().setLevel(level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(colors=True),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


class RelayErrorHandler:
    """Centralized relay error classification."""

    @staticmethod
    def classify_error(error: BaseException) -> tuple[int, str]:
        """
        Classify an error and return an HTTP status code and error category.

        Args:
            error: The exception to classify

        Returns:
            Tuple of (http_status, error_category)
        """
        if isinstance(error, StreamCancelled):
            return 499, "cancelled"
        if isinstance(error, ConfigurationMissing):
            return 503, "configuration_error"
        if isinstance(error, MalformedChunk):
            return 502, "malformed_chunk"
        if isinstance(error, UpstreamStreamError):
            return 502, "upstream_error"
        if isinstance(error, TransportFailure):
            return 502, "transport_error"
        if isinstance(error, httpx.TimeoutException | TimeoutError):
            return 504, "timeout_error"
        if isinstance(error, httpx.HTTPError | ConnectionError | OSError):
            return 502, "connection_error"
        if isinstance(error, ValidationError):
            return 422, "validation_error"
        if isinstance(error, ValueError | TypeError):
            return 400, "parameter_error"
        return 500, "unknown_error"

    @staticmethod
    def describe(error: BaseException) -> dict[str, Any]:
        """Build the JSON body used for error responses and error events."""
        _, category = RelayErrorHandler.classify_error(error)
        return {"error": str(error), "type": category}


def _elapsed(start_time: float | None) -> dict[str, Any]:
    if start_time is None:
        return {}
    return {"duration_ms": round((time.perf_counter() - start_time) * 1000, 2)}


def _failure_fields(error: Exception) -> dict[str, Any]:
    _, category = RelayErrorHandler.classify_error(error)
    return {
        "error_type": type(error).__name__,
        "error_category": category,
        "error_message": str(error),
    }


@asynccontextmanager
async def operation_context(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
    log_timing: bool = True,
    bound_logger: Any = None,
):
    """
    Async context manager for operation logging.

    Task cancellation is not an Exception and passes through unlogged; the
    caller decides how to report it.

    Args:
        operation: Description of the operation
        context: Additional context for logging
        log_timing: Whether to log operation timing
        bound_logger: Logger to bind to instead of the module logger

    Yields:
        Bound logger for the operation
    """
    operation_logger = (bound_logger or logger).bind(
        operation=operation,
        **(context or {}),
    )

    operation_logger.info("Operation started")
    start_time = time.perf_counter() if log_timing else None

    try:
        yield operation_logger
    except Exception as e:
        operation_logger.error(
            "Operation failed", **_failure_fields(e), **_elapsed(start_time)
        )
        raise

    operation_logger.info("Operation completed successfully", **_elapsed(start_time))


def log_operation(
    operation: str,
    *,
    log_timing: bool = True,
    context: dict[str, Any] | None = None,
) -> Callable[[AsyncCallable[P, T]], AsyncCallable[P, T]]:
    """
    Decorator running an async function inside `operation_context`.

    Args:
        operation: Description of the operation being performed
        log_timing: Whether to log execution timing
        context: Additional context to include in logs
    """
    def decorator(func: AsyncCallable[P, T]) -> AsyncCallable[P, T]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            async with operation_context(
                operation,
                context={"function": func.__name__, **(context or {})},
                log_timing=log_timing,
            ):
                return await func(*args, **kwargs)

        return wrapper
    return decorator


class ContextualLogger:
    """Logger that maintains context across related operations."""

    def __init__(self, base_context: dict[str, Any] | None = None):
        self.base_context = base_context or {}
        self._logger = logger.bind(**self.base_context)

    def bind(self, **context: Any) -> ContextualLogger:
        """Create a new logger with additional context."""
        merged_context = {**self.base_context, **context}
        return ContextualLogger(merged_context)

    def info(self, message: str, **context: Any) -> None:
        """Log info message with context."""
        self._logger.info(message, **context)

    def warning(self, message: str, **context: Any) -> None:
        """Log warning message with context."""
        self._logger.warning(message, **context)

    def error(self, message: str, **context: Any) -> None:
        """Log error message with context."""
        self._logger.error(message, **context)

    def debug(self, message: str, **context: Any) -> None:
        """Log debug message with context."""
        self._logger.debug(message, **context)
