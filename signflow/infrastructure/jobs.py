"""Infrastructure layer for deferred job persistence."""
from __future__ import annotations

import copy
import threading
from dataclasses import replace
from datetime import datetime
from typing import Protocol

from signflow.domain import DeferredJob, JobStatus, utc_now


class DeferredJobRepository(Protocol):
    """Persistence contract for the deferred queue.

    ``claim`` atomically moves a job from PENDING to PROCESSING and returns
    ``False`` when another worker got there first. ``finish`` is only called
    by the worker holding the claim. A worker that dies or is cancelled
    mid-job leaves its row in PROCESSING; ``release_stale`` puts rows whose
    claim is older than the lease back to PENDING.
    """

    def add(self, job: DeferredJob) -> DeferredJob: ...

    def get(self, job_id: str) -> DeferredJob | None: ...

    def list_due(self, now: datetime, limit: int) -> list[DeferredJob]: ...

    def list_jobs(self, status: JobStatus | None = None) -> list[DeferredJob]: ...

    def claim(self, job_id: str) -> bool: ...

    def release_stale(self, claimed_before: datetime) -> int: ...

    def finish(
        self,
        job_id: str,
        *,
        status: JobStatus,
        attempts: int,
        last_error: str | None,
        run_at: datetime,
    ) -> None: ...

    def reset(self) -> None: ...


def _copy(job: DeferredJob) -> DeferredJob:
    return replace(job, payload=copy.deepcopy(job.payload))


class InMemoryDeferredJobRepository:
    """Simple in-memory job table for tests and single-process deployments."""

    def __init__(self) -> None:
        self._jobs: dict[str, DeferredJob] = {}
        self._lock = threading.Lock()

    def add(self, job: DeferredJob) -> DeferredJob:
        with self._lock:
            self._jobs[job.id] = _copy(job)
        return _copy(job)

    def get(self, job_id: str) -> DeferredJob | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return _copy(job) if job else None

    def list_due(self, now: datetime, limit: int) -> list[DeferredJob]:
        with self._lock:
            due = [
                _copy(job)
                for job in self._jobs.values()
                if job.status is JobStatus.PENDING and job.run_at <= now
            ]
        due.sort(key=lambda job: (job.run_at, job.created_at))
        return due[:limit]

    def list_jobs(self, status: JobStatus | None = None) -> list[DeferredJob]:
        with self._lock:
            jobs = [_copy(job) for job in self._jobs.values() if status is None or job.status is status]
        jobs.sort(key=lambda job: job.created_at)
        return jobs

    def claim(self, job_id: str) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.PENDING:
                return False
            job.status = JobStatus.PROCESSING
            job.updated_at = utc_now()
            return True

    def release_stale(self, claimed_before: datetime) -> int:
        released = 0
        with self._lock:
            for job in self._jobs.values():
                if job.status is JobStatus.PROCESSING and job.updated_at < claimed_before:
                    job.status = JobStatus.PENDING
                    job.updated_at = utc_now()
                    released += 1
        return released

    def finish(
        self,
        job_id: str,
        *,
        status: JobStatus,
        attempts: int,
        last_error: str | None,
        run_at: datetime,
    ) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(job_id)
            job.status = status
            job.attempts = attempts
            job.last_error = last_error
            job.run_at = run_at
            job.updated_at = utc_now()

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()
