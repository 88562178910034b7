"""Bounded retry with backoff and per-attempt timeout.

``run_with_retry`` knows nothing about what it retries. Provider calls use it
directly and the deferred queue reuses :func:`backoff_delay_ms` to schedule
the next attempt of a failed job.
"""
from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Literal, TypeVar

from signflow.core.errors import Severity, TemporaryError, classify_error
from signflow.core.logging import get_logger

T = TypeVar("T")

BackoffStrategy = Literal["exponential", "linear"]

logger = get_logger("retry")


@dataclass(frozen=True, slots=True)
class BackoffOptions:
    strategy: BackoffStrategy = "exponential"
    delay_ms: int = 1_000
    max_delay_ms: int | None = None


@dataclass(slots=True)
class AttemptContext:
    """Handed to every attempt; ``cancel_event`` is set when the attempt timed out."""

    attempt: int
    max_attempts: int
    cancel_event: asyncio.Event

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


@dataclass(frozen=True, slots=True)
class RetryDecisionContext:
    attempt: int
    max_attempts: int


@dataclass(frozen=True, slots=True)
class RetryEvent:
    attempt: int
    max_attempts: int
    next_delay_ms: int
    error: BaseException


ShouldRetry = Callable[[BaseException, RetryDecisionContext], bool]
OnRetry = Callable[[RetryEvent], Awaitable[None] | None]


@dataclass(frozen=True, slots=True)
class RetryOptions:
    max_attempts: int
    timeout_ms: int | None = None
    backoff: BackoffOptions | None = None
    should_retry: ShouldRetry | None = None
    on_retry: OnRetry | None = None


RETRY_PRESETS: dict[str, RetryOptions] = {
    "provider": RetryOptions(
        max_attempts=3,
        timeout_ms=30_000,
        backoff=BackoffOptions(strategy="exponential", delay_ms=1_000),
    ),
}


class AttemptTimeoutError(TemporaryError):
    """Raised when a single attempt exceeds ``timeout_ms``."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Retry attempt timed out after {timeout_ms}ms.", code="RETRY_ATTEMPT_TIMEOUT")
        self.timeout_ms = timeout_ms


def backoff_delay_ms(backoff: BackoffOptions | None, attempt: int) -> int:
    """Delay to wait after the ``attempt``-th failure (1-based)."""

    if backoff is None or attempt <= 0:
        return 0

    if backoff.strategy == "linear":
        raw_delay = backoff.delay_ms * attempt
    else:
        raw_delay = backoff.delay_ms * 2 ** (attempt - 1)

    if backoff.max_delay_ms is None:
        return raw_delay
    return min(raw_delay, backoff.max_delay_ms)


def retry_temporary_only(error: BaseException, _: RetryDecisionContext) -> bool:
    return classify_error(error).severity is Severity.TEMPORARY


async def _run_attempt(
    operation: Callable[[AttemptContext], Awaitable[T]],
    context: AttemptContext,
    timeout_ms: int | None,
) -> T:
    if timeout_ms is None:
        return await operation(context)

    task = asyncio.ensure_future(operation(context))
    done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
    if task in done:
        return task.result()

    context.cancel_event.set()
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:  # the attempt failed while being cancelled; the timeout wins
        logger.debug("attempt_failed_after_timeout", attempt=context.attempt, error=repr(exc))
    raise AttemptTimeoutError(timeout_ms)


async def run_with_retry(
    operation: Callable[[AttemptContext], Awaitable[T]],
    options: RetryOptions,
    *,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """Run ``operation`` up to ``options.max_attempts`` times.

    The last error is re-raised unchanged once attempts are exhausted or
    ``should_retry`` declines. By default only TEMPORARY failures are retried.
    """

    if not isinstance(options.max_attempts, int) or options.max_attempts < 1:
        raise ValueError("max_attempts must be an integer >= 1")

    should_retry = options.should_retry or retry_temporary_only

    for attempt in range(1, options.max_attempts + 1):
        context = AttemptContext(attempt=attempt, max_attempts=options.max_attempts, cancel_event=asyncio.Event())
        try:
            return await _run_attempt(operation, context, options.timeout_ms)
        except Exception as exc:
            decision = RetryDecisionContext(attempt=attempt, max_attempts=options.max_attempts)
            if attempt >= options.max_attempts or not should_retry(exc, decision):
                raise

            delay_ms = backoff_delay_ms(options.backoff, attempt)
            if options.on_retry is not None:
                outcome = options.on_retry(
                    RetryEvent(
                        attempt=attempt,
                        max_attempts=options.max_attempts,
                        next_delay_ms=delay_ms,
                        error=exc,
                    )
                )
                if inspect.isawaitable(outcome):
                    await outcome

            if delay_ms > 0:
                await sleep(delay_ms / 1000)

    raise RuntimeError("run_with_retry exhausted unexpectedly")  # pragma: no cover


__all__ = [
    "AttemptContext",
    "AttemptTimeoutError",
    "BackoffOptions",
    "RETRY_PRESETS",
    "RetryDecisionContext",
    "RetryEvent",
    "RetryOptions",
    "backoff_delay_ms",
    "retry_temporary_only",
    "run_with_retry",
]
