"""Domain entities for the signing lifecycle of a sheet."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class SheetStatus(str, Enum):
    DRAFT = "DRAFT"
    PENDING_COUNTERPARTY = "PENDING_COUNTERPARTY"
    SIGNED = "SIGNED"
    EXPIRED = "EXPIRED"


class SigningAction(str, Enum):
    FIRST_SIGNED = "FIRST_SIGNED"
    SECOND_SIGNED = "SECOND_SIGNED"


class ParticipantRole(str, Enum):
    FIRST_SIGNER = "FIRST_SIGNER"
    SECOND_SIGNER = "SECOND_SIGNER"


@dataclass(slots=True)
class Signer:
    full_name: str
    email: str | None = None
    tax_id: str | None = None


@dataclass(slots=True)
class Sheet:
    """The signable artifact. Signer timestamps are write-once."""

    id: str
    title: str
    expires_at: datetime
    first_signer: Signer
    second_signer: Signer
    status: SheetStatus = SheetStatus.DRAFT
    first_signer_signed_at: datetime | None = None
    second_signer_signed_at: datetime | None = None
    provider_document_id: str | None = None
    sign_pending: bool = False
    last_signing_error: str | None = None
    last_checked_at: datetime | None = None
    document_path: str | None = None
    created_at: datetime = field(default_factory=utc_now)

    def signed_at_for(self, action: SigningAction) -> datetime | None:
        if action is SigningAction.FIRST_SIGNED:
            return self.first_signer_signed_at
        return self.second_signer_signed_at


@dataclass(slots=True)
class SigningEvent:
    """A signing notification from the webhook or from a status poll.

    ``action`` is ``None`` when the provider said "a participant signed"
    without saying which one; the state machine infers the role.
    """

    document_id: str
    action: SigningAction | None
    occurred_at: datetime
    participant_identity: str | None = None
    event_id: str | None = None
    source: str = "webhook"


@dataclass(slots=True)
class SigningResult:
    processed: bool
    duplicate: bool
    ignored: bool
    message: str
    sheet_id: str | None
    status: SheetStatus | None
    ok: bool = True
    # set when this call moved the sheet to EXPIRED
    expired: bool = False

    def to_payload(self) -> dict[str, object]:
        return {
            "ok": self.ok,
            "processed": self.processed,
            "duplicate": self.duplicate,
            "ignored": self.ignored,
            "message": self.message,
            "sheetId": self.sheet_id,
            "status": self.status.value if self.status else None,
        }


# Fields the state machine and the sign-state helpers are allowed to write.
SHEET_MUTABLE_FIELDS = frozenset(
    {
        "status",
        "first_signer_signed_at",
        "second_signer_signed_at",
        "provider_document_id",
        "sign_pending",
        "last_signing_error",
        "last_checked_at",
        "document_path",
    }
)
