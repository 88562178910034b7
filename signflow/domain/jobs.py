"""Domain entities for deferred (retryable, at-least-once) jobs."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from .sheets import utc_now


class JobStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    DONE = "DONE"
    FAILED = "FAILED"


class JobType:
    NOOP = "NOOP"
    REVOKE_PUBLIC_LINKS = "REVOKE_PUBLIC_LINKS"


@dataclass(slots=True)
class DeferredJob:
    """A durable unit of work; terminal rows (DONE/FAILED) are kept for audit."""

    id: str
    type: str
    payload: dict[str, Any] = field(default_factory=dict)
    status: JobStatus = JobStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    run_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": dict(self.payload),
            "status": self.status.value,
            "attempts": self.attempts,
            "last_error": self.last_error,
            "run_at": self.run_at.isoformat(),
            "created_at": self.created_at.isoformat(),
        }


@dataclass(slots=True)
class DrainSummary:
    scanned: int = 0
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0

    def to_payload(self) -> dict[str, int]:
        return {
            "scanned": self.scanned,
            "processed": self.processed,
            "succeeded": self.succeeded,
            "retried": self.retried,
            "failed": self.failed,
            "skipped": self.skipped,
        }
