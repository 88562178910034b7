"""Idempotent signing transitions for sheets.

Every write here is a single conditional update through
:meth:`SheetRepository.update_if`; a lost race is detected from its return
value and resolved by re-reading the row. No locks are held across calls and
no provider I/O happens in this module.
"""
from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from signflow.core.logging import get_logger
from signflow.domain import Sheet, SheetStatus, SigningAction, SigningEvent, SigningResult, utc_now
from signflow.infrastructure import SheetRepository

logger = get_logger("state_machine")

MAX_SIGN_STATE_ERROR = 1000
DEFAULT_SIGN_ERROR = "Signing failed. Please try again."
# a lost compare-and-swap is re-evaluated against the fresh row this many times
MAX_APPLY_ROUNDS = 3


def effective_status(sheet: Sheet, now: datetime | None = None) -> SheetStatus:
    """Status as readers should see it: a DRAFT past its deadline reads as EXPIRED."""

    now = now or utc_now()
    if sheet.status is SheetStatus.DRAFT and sheet.expires_at <= now:
        return SheetStatus.EXPIRED
    return sheet.status


def normalize_sign_error(message: str | None) -> str:
    text = (message or "").strip()
    if not text:
        return DEFAULT_SIGN_ERROR
    return text[:MAX_SIGN_STATE_ERROR]


class SigningStateMachine:
    """Applies signing events to sheets; safe to call from concurrent requests."""

    def __init__(self, repository: SheetRepository, *, clock: Callable[[], datetime] = utc_now) -> None:
        self._repository = repository
        self._clock = clock

    # ------------------------------------------------------------------
    # event application
    # ------------------------------------------------------------------
    def apply(self, event: SigningEvent, now: datetime | None = None) -> SigningResult:
        now = now or self._clock()
        log = logger.bind(document_id=event.document_id, source=event.source, event_id=event.event_id)

        sheet = self._repository.find_by_document_id(event.document_id)
        if sheet is None:
            log.info("signing_event_ignored", reason="unknown_document")
            return self._result(None, "No sheet is bound to this document.", ignored=True)

        action = event.action
        for _ in range(MAX_APPLY_ROUNDS):
            if sheet.status is SheetStatus.EXPIRED:
                log.info("signing_event_ignored", sheet_id=sheet.id, reason="expired")
                return self._result(sheet, "Sheet has expired.", ignored=True)

            if sheet.status is SheetStatus.DRAFT and sheet.expires_at <= now:
                expired = self.expire_if_due(sheet, now)
                log.info("signing_event_ignored", sheet_id=sheet.id, reason="expired", expired_now=expired)
                current = self._repository.get(sheet.id) or sheet
                return SigningResult(
                    processed=False,
                    duplicate=False,
                    ignored=True,
                    message="Sheet has expired.",
                    sheet_id=current.id,
                    status=current.status,
                    expired=expired,
                )

            if action is None:
                action = self.infer_action(sheet, event.participant_identity)
                if action is None:
                    return self._result(sheet, "Both signatures are already recorded.", duplicate=True)

            if self._is_duplicate(sheet, action):
                log.info("signing_event_duplicate", sheet_id=sheet.id, action=action.value)
                return self._result(sheet, "Signing event was already applied.", duplicate=True)

            if self._transition(sheet, action, event.occurred_at, now):
                current = self._repository.get(sheet.id) or sheet
                log.info(
                    "signing_event_applied",
                    sheet_id=sheet.id,
                    action=action.value,
                    status=current.status.value,
                )
                return self._result(current, "Signing event applied.", processed=True)

            current = self._repository.get(sheet.id)
            if current is None:
                return self._result(None, "Sheet no longer exists.", ignored=True)
            if current.signed_at_for(action) is not None:
                log.info("signing_event_duplicate", sheet_id=sheet.id, action=action.value, race=True)
                return self._result(current, "Signing event was already applied.", duplicate=True)
            sheet = current

        log.warning("signing_event_ignored", sheet_id=sheet.id, reason="concurrent_updates")
        return self._result(sheet, "Sheet changed concurrently; event not applied.", ignored=True)

    @staticmethod
    def _is_duplicate(sheet: Sheet, action: SigningAction) -> bool:
        if action is SigningAction.FIRST_SIGNED:
            return sheet.first_signer_signed_at is not None or sheet.status in (
                SheetStatus.PENDING_COUNTERPARTY,
                SheetStatus.SIGNED,
            )
        return sheet.second_signer_signed_at is not None or sheet.status is SheetStatus.SIGNED

    def _transition(self, sheet: Sheet, action: SigningAction, signed_at: datetime, now: datetime) -> bool:
        values: dict[str, Any] = {
            "sign_pending": False,
            "last_signing_error": None,
            "last_checked_at": now,
        }

        if action is SigningAction.FIRST_SIGNED:
            values.update(status=SheetStatus.PENDING_COUNTERPARTY, first_signer_signed_at=signed_at)
            return self._repository.update_if(
                sheet.id,
                values,
                status_in={SheetStatus.DRAFT},
                null_fields=("first_signer_signed_at",),
            )

        if sheet.status is SheetStatus.DRAFT:
            # signatures are collected in order, so the second one implies the first
            values.update(
                status=SheetStatus.SIGNED,
                first_signer_signed_at=signed_at,
                second_signer_signed_at=signed_at,
            )
            return self._repository.update_if(
                sheet.id,
                values,
                status_in={SheetStatus.DRAFT},
                null_fields=("first_signer_signed_at", "second_signer_signed_at"),
            )

        values.update(status=SheetStatus.SIGNED, second_signer_signed_at=signed_at)
        return self._repository.update_if(
            sheet.id,
            values,
            status_in={SheetStatus.PENDING_COUNTERPARTY},
            null_fields=("second_signer_signed_at",),
        )

    def infer_action(self, sheet: Sheet, participant_identity: str | None) -> SigningAction | None:
        """Resolve which signer an unqualified "participant signed" event refers to."""

        if participant_identity and participant_identity.strip():
            needle = participant_identity.strip().casefold()
            if sheet.first_signer.email and sheet.first_signer.email.strip().casefold() == needle:
                return SigningAction.FIRST_SIGNED
            if sheet.second_signer.email and sheet.second_signer.email.strip().casefold() == needle:
                return SigningAction.SECOND_SIGNED

        if sheet.first_signer_signed_at is None:
            action = SigningAction.FIRST_SIGNED
        elif sheet.second_signer_signed_at is None:
            action = SigningAction.SECOND_SIGNED
        else:
            return None

        logger.warning(
            "signing_role_inferred_from_slot",
            sheet_id=sheet.id,
            participant=participant_identity,
            action=action.value,
        )
        return action

    # ------------------------------------------------------------------
    # expiry
    # ------------------------------------------------------------------
    def expire_if_due(self, sheet: Sheet, now: datetime | None = None) -> bool:
        """Move a DRAFT past its deadline to EXPIRED; True only for the caller that did it."""

        now = now or self._clock()
        if sheet.status is not SheetStatus.DRAFT or sheet.expires_at > now:
            return False
        expired = self._repository.update_if(
            sheet.id,
            {"status": SheetStatus.EXPIRED, "sign_pending": False},
            status_in={SheetStatus.DRAFT},
        )
        if expired:
            logger.info("sheet_expired", sheet_id=sheet.id, expires_at=sheet.expires_at.isoformat())
        return expired

    # ------------------------------------------------------------------
    # sign state
    # ------------------------------------------------------------------
    def mark_sign_pending(self, sheet_id: str) -> None:
        self._repository.update(sheet_id, {"sign_pending": True, "last_signing_error": None})

    def clear_sign_state(self, sheet_id: str) -> None:
        self._repository.update(sheet_id, {"sign_pending": False, "last_signing_error": None})

    def mark_sign_failed(self, sheet_id: str, message: str | None) -> None:
        self._repository.update(
            sheet_id,
            {"sign_pending": False, "last_signing_error": normalize_sign_error(message)},
        )

    def touch_checked(self, sheet_id: str, at: datetime | None = None) -> None:
        self._repository.update(sheet_id, {"last_checked_at": at or self._clock()})

    @staticmethod
    def _result(
        sheet: Sheet | None,
        message: str,
        *,
        processed: bool = False,
        duplicate: bool = False,
        ignored: bool = False,
    ) -> SigningResult:
        return SigningResult(
            processed=processed,
            duplicate=duplicate,
            ignored=ignored,
            message=message,
            sheet_id=sheet.id if sheet else None,
            status=sheet.status if sheet else None,
        )


__all__ = ["SigningStateMachine", "effective_status", "normalize_sign_error"]
