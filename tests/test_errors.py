from __future__ import annotations

import errno
import socket
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import httpx
import pytest

from signflow.core.errors import (
    UNKNOWN_THROWN_VALUE,
    CriticalError,
    PermanentError,
    Severity,
    TemporaryError,
    classify_error,
    classify_http_status,
    describe_error,
    is_temporary,
)


def _status_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://provider.test/documents/1")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


@pytest.mark.parametrize(
    ("status_code", "severity"),
    [
        (401, Severity.CRITICAL),
        (403, Severity.CRITICAL),
        (408, Severity.TEMPORARY),
        (429, Severity.TEMPORARY),
        (500, Severity.TEMPORARY),
        (503, Severity.TEMPORARY),
        (400, Severity.PERMANENT),
        (404, Severity.PERMANENT),
        (422, Severity.PERMANENT),
    ],
)
def test_classify_http_status(status_code, severity):
    assert classify_http_status(status_code) is severity


def test_classified_errors_pass_through_unchanged():
    original = PermanentError("bad input", code="X")
    assert classify_error(original) is original


def test_transient_signals_are_temporary():
    assert classify_error(TimeoutError("slow")).severity is Severity.TEMPORARY
    assert classify_error(ConnectionResetError("reset")).severity is Severity.TEMPORARY
    assert classify_error(socket.gaierror("dns")).severity is Severity.TEMPORARY
    assert classify_error(OSError(errno.ECONNREFUSED, "refused")).severity is Severity.TEMPORARY
    assert classify_error(httpx.ConnectTimeout("connect")).severity is Severity.TEMPORARY


def test_http_status_errors_use_status_mapping():
    temporary = classify_error(_status_error(503))
    assert isinstance(temporary, TemporaryError)
    assert temporary.code == "HTTP_503"

    critical = classify_error(_status_error(401))
    assert isinstance(critical, CriticalError)


def test_resource_and_contract_errors_are_critical():
    assert classify_error(MemoryError()).severity is Severity.CRITICAL
    assert classify_error(OSError(errno.ENOMEM, "no memory")).severity is Severity.CRITICAL
    assert classify_error(TypeError("bad type")).severity is Severity.CRITICAL
    assert classify_error(KeyError("missing")).severity is Severity.CRITICAL


def test_other_errors_are_permanent_and_keep_cause():
    cause = ValueError("nope")
    classified = classify_error(cause)
    assert isinstance(classified, PermanentError)
    assert classified.cause is cause
    assert classified.message == "nope"


def test_non_exception_values_are_critical():
    classified = classify_error({"weird": True})
    assert isinstance(classified, CriticalError)
    assert classified.code == UNKNOWN_THROWN_VALUE


def test_is_temporary_and_describe_error():
    assert is_temporary(TemporaryError("again"))
    assert not is_temporary(PermanentError("stop"))

    assert describe_error(RuntimeError("boom")) == "RuntimeError: boom"
    assert describe_error(RuntimeError()) == "RuntimeError: RuntimeError"
    assert len(describe_error(RuntimeError("x" * 5000))) == 3000
    assert describe_error("plain") == "plain"
