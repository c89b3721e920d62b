"""
AgentOS - Structured Logging

Logging configuration using structlog.

Features:
- JSON output for production
- Pretty console output for development
- Request correlation IDs
- Redaction of keys, signatures and tokens
"""

from __future__ import annotations

import logging
import re
import sys
import time
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

import structlog
from structlog.typing import EventDict, WrappedLogger

from agentos import __version__

SERVICE_NAME = "agentos"

# Substrings of event keys whose values must never reach log sinks
SENSITIVE_KEYS = frozenset({
    "password",
    "secret",
    "access_token",
    "jwt",
    "api_key",
    "apikey",
    "authorization",
    "bearer",
    "private_key",
    "privatekey",
    "signing_key",
    "signature",
    "nonce",
    "cookie",
})

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


# =============================================================================
# Custom Processors
# =============================================================================

def add_timestamp(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add ISO8601 timestamp to log entry."""
    event_dict["timestamp"] = datetime.now(UTC).isoformat()
    return event_dict


def add_service_info(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Add service identification info."""
    event_dict["service"] = SERVICE_NAME
    event_dict["version"] = __version__
    return event_dict


def sanitize_sensitive_data(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Mask values stored under sensitive keys, recursively."""

    def _sanitize(obj: Any, depth: int = 0) -> Any:
        if depth > 10:
            return obj
        if isinstance(obj, dict):
            return {
                k: "[REDACTED]"
                if isinstance(k, str) and any(s in k.lower() for s in SENSITIVE_KEYS)
                else _sanitize(v, depth + 1)
                for k, v in obj.items()
            }
        if isinstance(obj, list):
            return [_sanitize(item, depth + 1) for item in obj]
        return obj

    result: EventDict = _sanitize(event_dict)
    return result


def drop_color_codes(
    logger: WrappedLogger,
    method_name: str,
    event_dict: EventDict,
) -> EventDict:
    """Remove ANSI color codes for clean JSON output."""

    def _clean(obj: Any) -> Any:
        if isinstance(obj, str):
            return _ANSI_ESCAPE.sub("", obj)
        if isinstance(obj, dict):
            return {k: _clean(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_clean(item) for item in obj]
        return obj

    result: EventDict = _clean(event_dict)
    return result


# =============================================================================
# Logging Configuration
# =============================================================================

def build_processors(
    json_output: bool = False,
    include_timestamps: bool = True,
    include_service_info: bool = True,
    sanitize_logs: bool = True,
) -> list[Any]:
    """Build the structlog processor chain."""
    processors: list[Any] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.contextvars.merge_contextvars,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if include_timestamps:
        processors.insert(0, add_timestamp)
    if include_service_info:
        processors.insert(0, add_service_info)
    if sanitize_logs:
        processors.append(sanitize_sensitive_data)

    if json_output:
        processors.append(drop_color_codes)
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(
            structlog.dev.ConsoleRenderer(
                colors=True,
                exception_formatter=structlog.dev.rich_traceback,
            )
        )
    return processors


def configure_logging(
    level: str = "INFO",
    json_output: bool = False,
    include_timestamps: bool = True,
    include_service_info: bool = True,
    sanitize_logs: bool = True,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: Use JSON format (for production)
        include_timestamps: Add timestamps to logs
        include_service_info: Add service name/version
        sanitize_logs: Remove sensitive data
    """
    structlog.configure(
        processors=build_processors(
            json_output=json_output,
            include_timestamps=include_timestamps,
            include_service_info=include_service_info,
            sanitize_logs=sanitize_logs,
        ),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper()),
    )

    # Reduce noise from third-party loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a logger instance (defaults to the root structlog logger)."""
    bound_logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return bound_logger


# =============================================================================
# Context Management
# =============================================================================

def bind_context(**kwargs: Any) -> None:
    """Bind context variables that will appear in all subsequent logs."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    """Remove context variables."""
    structlog.contextvars.unbind_contextvars(*keys)


def clear_context() -> None:
    """Clear all bound context variables."""
    structlog.contextvars.clear_contextvars()


class LoggingContextMiddleware:
    """
    ASGI middleware that binds request context to every log line.

    Binds correlation_id (from X-Correlation-ID or generated), path and
    method, and echoes the correlation id back in the response headers.
    """

    def __init__(self, app: Any) -> None:
        self.app = app

    async def __call__(self, scope: Any, receive: Any, send: Any) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        correlation_id = headers.get(b"x-correlation-id", b"").decode() or str(uuid4())

        bind_context(
            correlation_id=correlation_id,
            path=scope.get("path", ""),
            method=scope.get("method", ""),
        )

        async def send_with_correlation(message: Any) -> None:
            if message["type"] == "http.response.start":
                message.setdefault("headers", [])
                message["headers"].append((b"x-correlation-id", correlation_id.encode()))
            await send(message)

        try:
            await self.app(scope, receive, send_with_correlation)
        finally:
            clear_context()


# =============================================================================
# Performance Logging
# =============================================================================

@contextmanager
def log_duration(
    logger: Any,
    operation: str,
    level: str = "info",
    **extra_context: Any,
) -> Iterator[None]:
    """
    Context manager to log operation duration.

    Usage:
        with log_duration(logger, "block_seal", block_index=3):
            ...
    """
    start_time = time.monotonic()
    log_method = getattr(logger, level)

    try:
        yield
        duration_ms = (time.monotonic() - start_time) * 1000
        log_method(
            f"{operation}_completed",
            duration_ms=round(duration_ms, 2),
            **extra_context,
        )
    except Exception as e:
        duration_ms = (time.monotonic() - start_time) * 1000
        logger.error(
            f"{operation}_failed",
            duration_ms=round(duration_ms, 2),
            error=str(e),
            **extra_context,
        )
        raise


__all__ = [
    "configure_logging",
    "build_processors",
    "get_logger",
    "bind_context",
    "unbind_context",
    "clear_context",
    "sanitize_sensitive_data",
    "LoggingContextMiddleware",
    "log_duration",
]
