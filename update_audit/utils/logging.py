"""
Structured logging configuration for Update Audit Core.

This module provides centralized logging configuration using structlog,
with support for operation context tracking and environment-specific
formatting. Every log line emitted while an update operation is being
reconciled carries that operation's kind, identity and tenant.
"""

import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

# Context variable for operation-scoped data
operation_context: ContextVar[Optional[Dict[str, Any]]] = ContextVar(
    "operation_context", default=None
)


class OperationContextProcessor:
    """
    Add operation context to all log entries.

    This processor extracts operation-scoped context (kind, identity,
    tenant_id) from the context variable and adds it to every log entry
    emitted while that operation is being handled.
    """

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        """Add operation context to the event dict."""
        ctx = operation_context.get()
        if ctx is not None:
            for key, value in ctx.items():
                event_dict.setdefault(key, value)
        return event_dict


class EnvironmentProcessor:
    """
    Add environment-specific fields to log entries.

    Includes app version and environment.
    """

    def __init__(self, app_env: str, app_version: str):
        """Initialize with environment settings."""
        self.app_env = app_env
        self.app_version = app_version

    def __call__(
        self, logger: Any, method_name: str, event_dict: EventDict
    ) -> EventDict:
        """Add environment context to the event dict."""
        event_dict["env"] = self.app_env
        event_dict["version"] = self.app_version
        return event_dict


def filter_sensitive_data(
    logger: Any, method_name: str, event_dict: EventDict
) -> EventDict:
    """
    Filter sensitive data from log entries.

    Masks credentials that may end up in structured fields, most notably
    database URLs with a password in their userinfo.
    """
    sensitive_keys = [
        "password",
        "secret",
        "authorization",
        "database_url",
        "dsn",
    ]

    for key in list(event_dict.keys()):
        key_lower = key.lower()
        if any(sensitive in key_lower for sensitive in sensitive_keys):
            value = event_dict[key]
            if isinstance(value, str) and "@" in value:
                # Keep scheme and host, hide userinfo
                event_dict[key] = value.split("://")[0] + "://***@" + value.split("@")[-1]
            elif isinstance(value, str) and len(value) > 8:
                event_dict[key] = f"{value[:4]}...{value[-4:]}"
            else:
                event_dict[key] = "***REDACTED***"

    return event_dict


def configure_logging(
    log_level: str = "INFO",
    app_env: str = "development",
    app_version: str = "0.1.0",
    json_format: Optional[bool] = None,
) -> None:
    """
    Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        app_env: Application environment (development, staging, production)
        app_version: Application version for tracking
        json_format: Force JSON output (None = auto-detect based on environment)

    This configures structlog with appropriate processors for the environment:
    - Development: Human-readable console output with colors
    - Production: JSON output for log aggregation systems
    """
    if json_format is None:
        json_format = app_env in ["staging", "production"]

    # Configure Python's standard logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    processors: list[Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.CallsiteParameterAdder(
            parameters=[
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            ]
        ),
        OperationContextProcessor(),
        EnvironmentProcessor(app_env, app_version),
        filter_sensitive_data,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    if json_format:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (usually __name__ from the calling module)

    Returns:
        Configured structlog logger instance
    """
    return structlog.get_logger(name)


def set_operation_context(**kwargs: Any) -> None:
    """
    Set operation-scoped context that will be included in all logs.

    Args:
        **kwargs: Key-value pairs to add to the operation context
                 Common fields: kind, identity, tenant_id

    Example:
        set_operation_context(kind="plugin", identity="foo/foo.php")
    """
    ctx = operation_context.get()
    ctx = dict(ctx) if ctx else {}
    ctx.update(kwargs)
    operation_context.set(ctx)


def clear_operation_context() -> None:
    """Clear the operation context."""
    operation_context.set(None)


@contextmanager
def bind_operation(**kwargs: Any) -> Iterator[None]:
    """Scope operation context to a block, restoring the previous context after."""
    token = operation_context.set({**(operation_context.get() or {}), **kwargs})
    try:
        yield
    finally:
        operation_context.reset(token)
