"""Integration error taxonomy and classification.

Every failure that crosses an integration boundary (signing provider, network,
storage) is reduced to one of three severities:

``TEMPORARY``
    Network hiccups, timeouts, provider 5xx. Safe to retry unchanged.
``PERMANENT``
    Bad requests and business-rule violations. Retrying the same input never helps.
``CRITICAL``
    Auth/config problems and contract violations. Surface to operators, never retry.
"""
from __future__ import annotations

import asyncio
import errno
import json
import socket
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError


class Severity(str, Enum):
    TEMPORARY = "TEMPORARY"
    PERMANENT = "PERMANENT"
    CRITICAL = "CRITICAL"


class IntegrationError(Exception):
    """Base class for classified errors; ``severity`` is the discriminant."""

    severity: Severity

    def __init__(self, message: str, *, code: str | None = None, cause: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.cause = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r}, code={self.code!r})"


class TemporaryError(IntegrationError):
    severity = Severity.TEMPORARY


class PermanentError(IntegrationError):
    severity = Severity.PERMANENT


class CriticalError(IntegrationError):
    severity = Severity.CRITICAL


UNKNOWN_THROWN_VALUE = "UNKNOWN_THROWN_VALUE"
MAX_ERROR_DESCRIPTION = 3000

TEMPORARY_ERRNOS = frozenset(
    {
        errno.ECONNRESET,
        errno.ECONNREFUSED,
        errno.ECONNABORTED,
        errno.ETIMEDOUT,
        errno.EHOSTUNREACH,
        errno.ENETUNREACH,
        errno.EPIPE,
    }
)
CRITICAL_ERRNOS = frozenset({errno.ENOMEM})

# Exceptions that always mean "the network or the remote side is flaky".
TEMPORARY_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    httpx.TimeoutException,
    httpx.TransportError,
    ConnectionResetError,
    ConnectionRefusedError,
    ConnectionAbortedError,
    BrokenPipeError,
    socket.gaierror,
)

# Programming or contract errors: a malformed response or a bug, never retried.
CONTRACT_EXCEPTIONS: tuple[type[BaseException], ...] = (
    TypeError,
    AttributeError,
    NameError,
    KeyError,
    ValidationError,
    json.JSONDecodeError,
)


def classify_http_status(status_code: int) -> Severity:
    """Map an HTTP status returned by the provider onto a severity."""

    if status_code in (401, 403):
        return Severity.CRITICAL
    if status_code in (408, 429) or status_code >= 500:
        return Severity.TEMPORARY
    return Severity.PERMANENT


def error_for_severity(severity: Severity, message: str, *, code: str | None = None, cause: Any = None) -> IntegrationError:
    if severity is Severity.TEMPORARY:
        return TemporaryError(message, code=code, cause=cause)
    if severity is Severity.CRITICAL:
        return CriticalError(message, code=code, cause=cause)
    return PermanentError(message, code=code, cause=cause)


def _read_code(error: BaseException) -> str | None:
    code = getattr(error, "code", None)
    if isinstance(code, str) and code.strip():
        return code
    err_no = getattr(error, "errno", None)
    if isinstance(err_no, int):
        return errno.errorcode.get(err_no)
    return None


def _read_message(error: BaseException) -> str:
    message = str(error).strip()
    if message:
        return message
    return type(error).__name__ or "Unknown integration error."


def classify_error(error: object) -> IntegrationError:
    """Return ``error`` as a classified :class:`IntegrationError`.

    Already-classified errors pass through unchanged, so classification is
    idempotent and safe to apply at every layer.
    """

    if isinstance(error, IntegrationError):
        return error

    if not isinstance(error, BaseException):
        return CriticalError("Unknown non-error value was raised.", code=UNKNOWN_THROWN_VALUE, cause=error)

    code = _read_code(error)
    message = _read_message(error)

    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        return error_for_severity(
            classify_http_status(status_code),
            message,
            code=f"HTTP_{status_code}",
            cause=error,
        )

    if isinstance(error, MemoryError) or getattr(error, "errno", None) in CRITICAL_ERRNOS:
        return CriticalError(message, code=code or "ENOMEM", cause=error)

    if isinstance(error, TEMPORARY_EXCEPTIONS) or getattr(error, "errno", None) in TEMPORARY_ERRNOS:
        return TemporaryError(message, code=code, cause=error)

    if isinstance(error, CONTRACT_EXCEPTIONS):
        return CriticalError(message, code=code, cause=error)

    if not isinstance(error, Exception):
        # KeyboardInterrupt, SystemExit and friends are not integration failures.
        return CriticalError(message, code=UNKNOWN_THROWN_VALUE, cause=error)

    return PermanentError(message, code=code, cause=error)


def is_temporary(error: object) -> bool:
    return classify_error(error).severity is Severity.TEMPORARY


def describe_error(error: object, limit: int = MAX_ERROR_DESCRIPTION) -> str:
    """Render an error as ``"Name: message"`` for persistence in ``last_error`` columns."""

    if isinstance(error, BaseException):
        detail = str(error).strip() or type(error).__name__ or "Unknown error"
        return f"{type(error).__name__}: {detail}"[:limit]
    if isinstance(error, str):
        return error[:limit]
    try:
        return json.dumps(error)[:limit]
    except (TypeError, ValueError):
        return "Unknown non-serializable error."


__all__ = [
    "CriticalError",
    "IntegrationError",
    "PermanentError",
    "Severity",
    "TemporaryError",
    "UNKNOWN_THROWN_VALUE",
    "classify_error",
    "classify_http_status",
    "describe_error",
    "error_for_severity",
    "is_temporary",
]
