"""Parsing and verification of signing provider webhooks."""
from __future__ import annotations

import hmac
import re
from datetime import datetime, timezone
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, ValidationError

from signflow.domain import ParticipantRole, SigningAction, SigningEvent, utc_now

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

FIRST_SIGNED_EVENTS = frozenset({"FIRST_SIGNED", "FIRST_SIGNER_SIGNED", "FIRST_SIGNATURE_COMPLETED"})
SECOND_SIGNED_EVENTS = frozenset(
    {
        "SECOND_SIGNED",
        "SECOND_SIGNER_SIGNED",
        "SECOND_SIGNATURE_COMPLETED",
        "DOCUMENT_SIGNED",
        "FULLY_SIGNED",
        "SIGNING_COMPLETED",
        "COMPLETED",
    }
)
PARTICIPANT_SIGNED_EVENTS = frozenset({"PARTICIPANT_SIGNED", "SIGNER_SIGNED"})

_NON_ALNUM = re.compile(r"[^A-Z0-9]+")


class WebhookPayloadError(ValueError):
    """Raised when a webhook body cannot be turned into a signing event."""


class WebhookParticipant(BaseModel):
    model_config = ConfigDict(extra="allow")

    email: NonEmptyStr | None = None


class WebhookEventData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    event_type: NonEmptyStr | None = Field(default=None, alias="eventType")
    type: NonEmptyStr | None = None
    document_id: NonEmptyStr | None = Field(default=None, alias="documentId")
    occurred_at: NonEmptyStr | None = Field(default=None, alias="occurredAt")
    participant_role: ParticipantRole | None = Field(default=None, alias="participantRole")
    participant_email: NonEmptyStr | None = Field(default=None, alias="participantEmail")
    participant: WebhookParticipant | None = None

    def identity(self) -> str | None:
        if self.participant_email:
            return self.participant_email
        if self.participant is not None:
            return self.participant.email
        return None


class WebhookPayload(WebhookEventData):
    event_id: NonEmptyStr | None = Field(default=None, alias="eventId")
    data: WebhookEventData | None = None


def normalize_event_name(value: str) -> str:
    return _NON_ALNUM.sub("_", value.strip().upper())


def map_event_action(event_name: str, role: ParticipantRole | None) -> tuple[bool, SigningAction | None]:
    """Return ``(supported, action)``; a supported event may still leave the action open."""

    if event_name in FIRST_SIGNED_EVENTS:
        return True, SigningAction.FIRST_SIGNED
    if event_name in SECOND_SIGNED_EVENTS:
        return True, SigningAction.SECOND_SIGNED
    if event_name in PARTICIPANT_SIGNED_EVENTS:
        if role is ParticipantRole.FIRST_SIGNER:
            return True, SigningAction.FIRST_SIGNED
        if role is ParticipantRole.SECOND_SIGNER:
            return True, SigningAction.SECOND_SIGNED
        return True, None
    return False, None


def parse_occurred_at(value: str | None) -> datetime:
    if not value:
        return utc_now()
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return utc_now()
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_webhook_payload(payload: Any) -> SigningEvent:
    try:
        raw = WebhookPayload.model_validate(payload)
    except ValidationError as exc:
        raise WebhookPayloadError("Invalid webhook payload.") from exc

    data = raw.data or WebhookEventData()
    source_type = raw.event_type or raw.type or data.event_type or data.type
    document_id = raw.document_id or data.document_id
    if not source_type or not document_id:
        raise WebhookPayloadError("Webhook payload must contain eventType/type and documentId.")

    role = raw.participant_role or data.participant_role
    supported, action = map_event_action(normalize_event_name(source_type), role)
    if not supported:
        raise WebhookPayloadError(f"Unsupported webhook event type: {source_type}")

    return SigningEvent(
        document_id=document_id,
        action=action,
        occurred_at=parse_occurred_at(raw.occurred_at or data.occurred_at),
        participant_identity=raw.identity() or data.identity(),
        event_id=raw.event_id,
        source=f"webhook:{source_type}",
    )


def verify_webhook_secret(expected: str | None, provided: str | None) -> bool:
    """An unset secret disables the check; otherwise the header must match exactly."""

    if not expected:
        return True
    if not provided:
        return False
    return hmac.compare_digest(provided.strip().encode("utf-8"), expected.encode("utf-8"))


__all__ = [
    "WebhookPayload",
    "WebhookPayloadError",
    "map_event_action",
    "normalize_event_name",
    "parse_webhook_payload",
    "verify_webhook_secret",
]
