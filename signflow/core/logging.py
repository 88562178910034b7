"""Structured logging for signflow.

Usage::

    from signflow.core.logging import configure_logging, get_logger

    configure_logging(level="INFO", format="json")
    logger = get_logger("webhook")
    logger.info("webhook_processed", document_id="doc-1", processed=True)
"""
from __future__ import annotations

import logging
import sys
from datetime import datetime, timezone
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

SENSITIVE_PATTERNS = frozenset(
    {
        "api_key",
        "apikey",
        "token",
        "secret",
        "password",
        "authorization",
        "bearer",
    }
)

LogFormat = Literal["console", "json"]


def _sanitize_value(key: str, value: Any) -> Any:
    key_lower = key.lower()
    for pattern in SENSITIVE_PATTERNS:
        if pattern in key_lower:
            return "[REDACTED]"
    return value


def _sanitize_event_dict(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    """Redact values whose key looks like a credential."""

    sanitized: EventDict = {}
    for key, value in event_dict.items():
        if isinstance(value, dict):
            sanitized[key] = {k: _sanitize_value(k, v) for k, v in value.items()}
        else:
            sanitized[key] = _sanitize_value(key, value)
    return sanitized


def _add_timestamp(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    event_dict["timestamp"] = datetime.now(timezone.utc).isoformat()
    return event_dict


def _processors(format: LogFormat) -> list[Processor]:  # noqa: A002
    renderer: Processor
    if format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=False)

    return [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _sanitize_event_dict,
        _add_timestamp,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        renderer,
    ]


def configure_logging(level: str = "INFO", format: LogFormat = "console") -> None:  # noqa: A002
    """Configure stdlib logging and structlog once at process start-up."""

    log_level = getattr(logging, level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stderr)
    handler.setLevel(log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    for existing in root_logger.handlers[:]:
        root_logger.removeHandler(existing)
    root_logger.addHandler(handler)

    structlog.configure(
        processors=_processors(format),
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        # loggers are created at import time, before configure_logging() runs
        cache_logger_on_first_use=False,
    )


def get_logger(component: str, **initial_context: Any) -> structlog.stdlib.BoundLogger:
    """Return a logger named ``signflow.<component>`` with optional bound context."""

    logger = structlog.get_logger(f"signflow.{component}")
    if initial_context:
        logger = logger.bind(**initial_context)
    return logger


__all__ = ["SENSITIVE_PATTERNS", "configure_logging", "get_logger"]
