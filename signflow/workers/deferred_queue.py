"""Durable at-least-once queue for side effects that must eventually happen.

Jobs are rows in the job repository. A drain claims each due job with a
conditional PENDING -> PROCESSING update, so concurrent drains never run the
same attempt twice. Handlers can still run more than once across attempts and
must tolerate that.
"""
from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Mapping

from signflow.core.errors import Severity, classify_error, describe_error
from signflow.core.logging import get_logger
from signflow.core.retry import RETRY_PRESETS, BackoffOptions, backoff_delay_ms
from signflow.domain import DeferredJob, DrainSummary, JobStatus, JobType, utc_now
from signflow.infrastructure import DeferredJobRepository, SigningProvider, get_signing_provider

logger = get_logger("deferred_queue")

DEFAULT_DRAIN_LIMIT = 20
MAX_DRAIN_LIMIT = 200
# a PROCESSING row older than this belongs to a worker that died or was cancelled
DEFAULT_CLAIM_LEASE = timedelta(minutes=15)

JobHandler = Callable[[DeferredJob], Awaitable[None]]


def _retry_unless_critical(error: BaseException) -> bool:
    return classify_error(error).severity is not Severity.CRITICAL


@dataclass(frozen=True, slots=True)
class JobDefinition:
    handler: JobHandler
    max_attempts: int = 1
    backoff: BackoffOptions | None = None
    # CRITICAL failures (auth, config) are not retried by default
    should_retry: Callable[[BaseException], bool] = field(default=_retry_unless_critical)


def clamp_limit(value: Any, default: int = DEFAULT_DRAIN_LIMIT) -> int:
    """Parse a drain limit; anything unparsable falls back to ``default``."""

    try:
        limit = int(value)
    except (TypeError, ValueError):
        limit = default
    return min(max(limit, 1), MAX_DRAIN_LIMIT)


def payload_document_id(payload: Mapping[str, Any]) -> str | None:
    value = payload.get("document_id", payload.get("documentId"))
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


async def _noop(job: DeferredJob) -> None:
    return None


def default_job_definitions(provider: SigningProvider | None = None) -> dict[str, JobDefinition]:
    """Built-in job types; the provider is resolved at run time unless given."""

    async def revoke_public_links(job: DeferredJob) -> None:
        document_id = payload_document_id(job.payload)
        if document_id is None:
            logger.warning("revoke_job_without_document", job_id=job.id)
            return
        await (provider or get_signing_provider()).revoke_public_links(document_id)

    preset = RETRY_PRESETS["provider"]
    return {
        JobType.NOOP: JobDefinition(handler=_noop, max_attempts=1),
        JobType.REVOKE_PUBLIC_LINKS: JobDefinition(
            handler=revoke_public_links,
            max_attempts=preset.max_attempts,
            backoff=preset.backoff,
        ),
    }


class DeferredJobQueue:
    def __init__(
        self,
        repository: DeferredJobRepository,
        definitions: Mapping[str, JobDefinition] | None = None,
        *,
        clock: Callable[[], datetime] = utc_now,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE,
    ) -> None:
        self._repository = repository
        self._claim_lease = claim_lease
        self._definitions: dict[str, JobDefinition] = dict(
            default_job_definitions() if definitions is None else definitions
        )
        self._clock = clock

    @property
    def repository(self) -> DeferredJobRepository:
        return self._repository

    def register(self, job_type: str, definition: JobDefinition) -> None:
        self._definitions[job_type] = definition

    def enqueue(
        self,
        job_type: str,
        payload: Mapping[str, Any] | None = None,
        *,
        run_at: datetime | None = None,
    ) -> DeferredJob:
        now = self._clock()
        job = DeferredJob(
            id=uuid.uuid4().hex,
            type=job_type,
            payload=dict(payload or {}),
            run_at=run_at or now,
            created_at=now,
            updated_at=now,
        )
        self._repository.add(job)
        logger.info("job_enqueued", job_id=job.id, job_type=job_type, run_at=job.run_at.isoformat())
        return job

    async def drain(self, limit: Any = DEFAULT_DRAIN_LIMIT, now: datetime | None = None) -> DrainSummary:
        """Run every due job once; returns what happened to each of them."""

        now = now or self._clock()
        released = self._repository.release_stale(now - self._claim_lease)
        if released:
            logger.warning("stale_jobs_released", count=released, lease_seconds=self._claim_lease.total_seconds())
        jobs = self._repository.list_due(now, clamp_limit(limit))
        summary = DrainSummary(scanned=len(jobs))

        for job in jobs:
            if not self._repository.claim(job.id):
                summary.skipped += 1
                continue

            summary.processed += 1
            attempts = job.attempts + 1
            log = logger.bind(job_id=job.id, job_type=job.type, attempt=attempts)

            definition = self._definitions.get(job.type)
            if definition is None:
                self._repository.finish(
                    job.id,
                    status=JobStatus.FAILED,
                    attempts=attempts,
                    last_error=f"No queue handler for job type: {job.type}",
                    run_at=job.run_at,
                )
                summary.failed += 1
                log.error("job_failed", reason="unknown_type")
                continue

            try:
                await definition.handler(job)
            except Exception as exc:
                last_error = describe_error(exc)
                max_attempts = definition.max_attempts if definition.max_attempts > 0 else 1
                if attempts < max_attempts and definition.should_retry(exc):
                    delay_ms = backoff_delay_ms(definition.backoff, attempts)
                    self._repository.finish(
                        job.id,
                        status=JobStatus.PENDING,
                        attempts=attempts,
                        last_error=last_error,
                        run_at=now + timedelta(milliseconds=delay_ms),
                    )
                    summary.retried += 1
                    log.warning("job_retry_scheduled", delay_ms=delay_ms, error=last_error)
                else:
                    self._repository.finish(
                        job.id,
                        status=JobStatus.FAILED,
                        attempts=attempts,
                        last_error=last_error,
                        run_at=job.run_at,
                    )
                    summary.failed += 1
                    log.error("job_failed", max_attempts=max_attempts, error=last_error)
                continue

            self._repository.finish(
                job.id,
                status=JobStatus.DONE,
                attempts=attempts,
                last_error=None,
                run_at=job.run_at,
            )
            summary.succeeded += 1
            log.info("job_done")

        if summary.scanned:
            logger.info("queue_drained", **summary.to_payload())
        return summary


__all__ = [
    "DEFAULT_DRAIN_LIMIT",
    "DeferredJobQueue",
    "JobDefinition",
    "clamp_limit",
    "default_job_definitions",
    "payload_document_id",
]
