from __future__ import annotations

import asyncio
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from signflow.core.errors import CriticalError, TemporaryError
from signflow.core.retry import (
    AttemptTimeoutError,
    BackoffOptions,
    RetryOptions,
    backoff_delay_ms,
    run_with_retry,
)


class _Sleeper:
    def __init__(self) -> None:
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_exponential_backoff():
    backoff = BackoffOptions(strategy="exponential", delay_ms=1000)
    assert [backoff_delay_ms(backoff, attempt) for attempt in (1, 2, 3)] == [1000, 2000, 4000]


def test_linear_backoff():
    backoff = BackoffOptions(strategy="linear", delay_ms=5000)
    assert [backoff_delay_ms(backoff, attempt) for attempt in (1, 2, 3)] == [5000, 10000, 15000]


def test_backoff_cap_and_missing_config():
    capped = BackoffOptions(strategy="exponential", delay_ms=1000, max_delay_ms=2500)
    assert backoff_delay_ms(capped, 3) == 2500
    assert backoff_delay_ms(None, 3) == 0
    assert backoff_delay_ms(capped, 0) == 0


def test_retry_bound_reraises_after_last_attempt():
    calls: list[int] = []
    sleeper = _Sleeper()

    async def operation(context):
        calls.append(context.attempt)
        raise TemporaryError("provider hiccup")

    options = RetryOptions(max_attempts=3, backoff=BackoffOptions(delay_ms=1000))
    with pytest.raises(TemporaryError, match="provider hiccup"):
        asyncio.run(run_with_retry(operation, options, sleep=sleeper))

    assert calls == [1, 2, 3]
    assert sleeper.calls == [1.0, 2.0]


def test_success_returns_immediately_and_reports_retries():
    events = []
    sleeper = _Sleeper()

    async def operation(context):
        if context.attempt < 2:
            raise ConnectionResetError("reset")
        return "ok"

    options = RetryOptions(
        max_attempts=5,
        backoff=BackoffOptions(strategy="linear", delay_ms=10),
        on_retry=events.append,
    )
    assert asyncio.run(run_with_retry(operation, options, sleep=sleeper)) == "ok"
    assert [event.attempt for event in events] == [1]
    assert events[0].next_delay_ms == 10
    assert sleeper.calls == [0.01]


def test_non_temporary_errors_are_not_retried_by_default():
    calls: list[int] = []

    async def operation(context):
        calls.append(context.attempt)
        raise CriticalError("unauthorized", code="PROVIDER_HTTP_401")

    with pytest.raises(CriticalError):
        asyncio.run(run_with_retry(operation, RetryOptions(max_attempts=3), sleep=_Sleeper()))
    assert calls == [1]


def test_custom_should_retry_can_retry_everything():
    calls: list[int] = []

    async def operation(context):
        calls.append(context.attempt)
        raise ValueError("always")

    options = RetryOptions(max_attempts=2, should_retry=lambda error, ctx: True)
    with pytest.raises(ValueError):
        asyncio.run(run_with_retry(operation, options, sleep=_Sleeper()))
    assert calls == [1, 2]


def test_attempt_timeout_sets_cancel_event_and_is_temporary():
    contexts = []

    async def operation(context):
        contexts.append(context)
        await asyncio.sleep(5)

    options = RetryOptions(max_attempts=2, timeout_ms=20)
    with pytest.raises(AttemptTimeoutError) as excinfo:
        asyncio.run(run_with_retry(operation, options, sleep=_Sleeper()))

    assert excinfo.value.code == "RETRY_ATTEMPT_TIMEOUT"
    assert isinstance(excinfo.value, TemporaryError)
    assert len(contexts) == 2
    assert all(context.cancelled for context in contexts)


def test_invalid_max_attempts():
    async def operation(context):
        return None

    with pytest.raises(ValueError):
        asyncio.run(run_with_retry(operation, RetryOptions(max_attempts=0)))
