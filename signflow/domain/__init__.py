"""Domain layer definitions."""

from .jobs import DeferredJob, DrainSummary, JobStatus, JobType
from .sheets import (
    ParticipantRole,
    Sheet,
    SheetStatus,
    Signer,
    SigningAction,
    SigningEvent,
    SigningResult,
    utc_now,
)

__all__ = [
    "DeferredJob",
    "DrainSummary",
    "JobStatus",
    "JobType",
    "ParticipantRole",
    "Sheet",
    "SheetStatus",
    "Signer",
    "SigningAction",
    "SigningEvent",
    "SigningResult",
    "utc_now",
]
