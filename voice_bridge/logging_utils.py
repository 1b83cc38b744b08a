"""
Logging setup and error classification for the voice bridge.

Everything logs through structlog with key/value context. Gateway calls and
HTTP requests are wrapped in operation_context() (or the log_operation
decorator) so that every one of them leaves a start, outcome and duration
record. Long-lived WebSocket sessions carry their ids through
ContextualLogger.
"""

from __future__ import annotations

import functools
import logging
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any, ParamSpec, TypeVar

import structlog
from pydantic import ValidationError

from voice_bridge.gateway.exceptions import GatewayError, GatewayTimeoutError

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer(colors=False),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

P = ParamSpec("P")
T = TypeVar("T")

HTTP_BAD_REQUEST = 400
HTTP_BAD_GATEWAY = 502

# Third-party loggers that would otherwise echo request headers at DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")

logger = structlog.get_logger(__name__)


def configure_logging(level: str = "INFO") -> None:
    """Configure the stdlib root logger that structlog renders through."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(message)s",
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


class BridgeErrorHandler:
    """Maps exceptions to the HTTP status and category reported for them."""

    @staticmethod
    def classify_error(error: Exception) -> tuple[int, str]:
        """
        Classify an error.

        Upstream trouble of any kind is a 502; bad client input is a 400.

        Returns:
            Tuple of (http_status, error_category)
        """
        if isinstance(error, GatewayTimeoutError):
            return HTTP_BAD_GATEWAY, "timeout_error"
        if isinstance(error, GatewayError):
            return HTTP_BAD_GATEWAY, "gateway_error"
        # ValidationError subclasses ValueError, so it has to come first
        if isinstance(error, ValidationError):
            return HTTP_BAD_REQUEST, "validation_error"
        if isinstance(error, TimeoutError):
            return HTTP_BAD_GATEWAY, "timeout_error"
        if isinstance(error, ConnectionError | OSError):
            return HTTP_BAD_GATEWAY, "connection_error"
        if isinstance(error, ValueError | TypeError):
            return HTTP_BAD_REQUEST, "parameter_error"
        return HTTP_BAD_GATEWAY, "unknown_error"

    @staticmethod
    def describe(error: Exception) -> dict[str, Any]:
        """Structured log fields for a failure."""
        status, category = BridgeErrorHandler.classify_error(error)
        return {
            "error_type": type(error).__name__,
            "error_category": category,
            "http_status": status,
            "error_message": str(error),
        }


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


@asynccontextmanager
async def operation_context(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
    failure_level: str = "error",
) -> AsyncIterator[Any]:
    """
    Log the start, outcome and duration of the enclosed block.

    Args:
        operation: Name of the operation, e.g. ``"text_request"``
        context: Extra fields bound to every record
        failure_level: Log level for the failure record. Inner operations
            whose caller reports the error itself use ``"debug"``

    Yields:
        The bound logger, so the block can add its own events
    """
    operation_logger = logger.bind(operation=operation, **(context or {}))
    operation_logger.debug("Operation started")
    start = time.perf_counter()

    try:
        yield operation_logger
    except Exception as e:
        getattr(operation_logger, failure_level)(
            "Operation failed",
            duration_ms=_elapsed_ms(start),
            **BridgeErrorHandler.describe(e),
        )
        raise

    operation_logger.info("Operation completed", duration_ms=_elapsed_ms(start))


def log_operation(
    operation: str,
    *,
    context: dict[str, Any] | None = None,
    failure_level: str = "error",
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator form of operation_context() for coroutine functions."""

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            async with operation_context(
                operation,
                context={"function": func.__name__, **(context or {})},
                failure_level=failure_level,
            ):
                return await func(*args, **kwargs)

        return wrapper

    return decorator


class ContextualLogger:
    """Logger that keeps a fixed set of fields, such as a session id."""

    def __init__(self, base_context: dict[str, Any] | None = None):
        self.base_context = dict(base_context or {})
        self._logger = logger.bind(**self.base_context)

    def bind(self, **context: Any) -> ContextualLogger:
        """Return a new logger with ``context`` added to the base fields."""
        return ContextualLogger({**self.base_context, **context})

    def debug(self, event: str, **fields: Any) -> None:
        self._logger.debug(event, **fields)

    def info(self, event: str, **fields: Any) -> None:
        self._logger.info(event, **fields)

    def warning(self, event: str, **fields: Any) -> None:
        self._logger.warning(event, **fields)

    def error(self, event: str, **fields: Any) -> None:
        self._logger.error(event, **fields)
