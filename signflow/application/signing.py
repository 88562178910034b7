"""Application service for the signing lifecycle of sheets."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import BinaryIO, Callable

from signflow.core.documents import load_sheet_pdf, save_sheet_pdf
from signflow.core.errors import PermanentError, classify_error
from signflow.core.logging import get_logger
from signflow.core.settings import Settings
from signflow.domain import (
    JobType,
    ParticipantRole,
    Sheet,
    SheetStatus,
    Signer,
    SigningAction,
    SigningEvent,
    SigningResult,
    utc_now,
)
from signflow.infrastructure import (
    DocumentState,
    InMemoryDeferredJobRepository,
    InMemorySheetRepository,
    ParticipantInput,
    SheetRepository,
    SigningProvider,
    SQLiteDeferredJobRepository,
    SQLiteSheetRepository,
    SQLiteStore,
    configure_signing_provider,
    get_signing_provider,
)
from signflow.infrastructure.provider import DownloadVariant
from signflow.workers.deferred_queue import DeferredJobQueue

from .state_machine import SigningStateMachine, effective_status

logger = get_logger("signing")

DEFAULT_FIRST_SIGNER_NAME = "First signer"
DEFAULT_COUNTERPARTY_NAME = "Counterparty"

# provider error codes that mean "the file exists but is not ready yet"
PROVIDER_NOT_READY_CODES = frozenset(
    {"PROVIDER_HTTP_404", "PROVIDER_HTTP_409", "PROVIDER_HTTP_422", "MOCK_NOT_SIGNED"}
)

DOWNLOAD_KINDS: dict[str, DownloadVariant] = {
    "original": "original",
    "signed": "signed",
    # the provider serves the signature protocol page as the printable copy
    "printable": "protocol",
}


class SetupErrorKind(str, Enum):
    FIRST_SIGNER_EMAIL_MISSING = "FIRST_SIGNER_EMAIL_MISSING"
    COUNTERPARTY_EMAIL_MISSING = "COUNTERPARTY_EMAIL_MISSING"
    SIGNER_EMAILS_COLLIDE = "SIGNER_EMAILS_COLLIDE"


class SigningSetupError(Exception):
    """A sheet cannot be sent for signing as it is; never retried."""

    def __init__(self, kind: SetupErrorKind) -> None:
        super().__init__(kind.value)
        self.kind = kind


class DownloadNotReadyError(Exception):
    """The requested file does not exist yet (e.g. the document is not signed)."""


@dataclass(slots=True)
class RefreshOutcome:
    status: DocumentState
    processed: bool
    duplicate: bool
    ignored: bool


@dataclass(slots=True)
class SheetDownload:
    content: bytes
    filename: str
    content_type: str


def calculate_expires_at(validity_days: int, start: datetime | None = None) -> datetime:
    """End of the start day (UTC) plus ``validity_days`` days."""

    start = (start or utc_now()).astimezone(timezone.utc)
    end_of_day = datetime.combine(start.date(), time(23, 59, 59, 999_000), tzinfo=timezone.utc)
    return end_of_day + timedelta(days=validity_days)


def _clean(value: str | None) -> str | None:
    value = (value or "").strip()
    return value or None


def build_participants(sheet: Sheet) -> list[ParticipantInput]:
    first_email = _clean(sheet.first_signer.email)
    if first_email is None:
        raise SigningSetupError(SetupErrorKind.FIRST_SIGNER_EMAIL_MISSING)

    second_email = _clean(sheet.second_signer.email)
    if second_email is None:
        raise SigningSetupError(SetupErrorKind.COUNTERPARTY_EMAIL_MISSING)

    if first_email.casefold() == second_email.casefold():
        raise SigningSetupError(SetupErrorKind.SIGNER_EMAILS_COLLIDE)

    return [
        ParticipantInput(
            role=ParticipantRole.FIRST_SIGNER,
            full_name=_clean(sheet.first_signer.full_name) or DEFAULT_FIRST_SIGNER_NAME,
            email=first_email,
            tax_id=_clean(sheet.first_signer.tax_id),
            priority=1,
        ),
        ParticipantInput(
            role=ParticipantRole.SECOND_SIGNER,
            full_name=_clean(sheet.second_signer.full_name) or DEFAULT_COUNTERPARTY_NAME,
            email=second_email,
            tax_id=_clean(sheet.second_signer.tax_id),
            priority=2,
        ),
    ]


def _fallback_filename(sheet_id: str, variant: DownloadVariant) -> str:
    base_name = f"sheet-{sheet_id}"
    if variant == "signed":
        return f"{base_name}.p7s"
    if variant == "original":
        return f"{base_name}.pdf"
    return f"{base_name}-{variant}.pdf"


def _fallback_content_type(variant: DownloadVariant) -> str:
    return "application/pkcs7-signature" if variant == "signed" else "application/pdf"


class SigningService:
    """Coordinates sheets, the signing provider and the deferred queue."""

    def __init__(
        self,
        sheets: SheetRepository,
        queue: DeferredJobQueue,
        provider: SigningProvider | None = None,
        *,
        auto_sync_seconds: int = 30,
        documents_root: Path | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._sheets = sheets
        self._queue = queue
        self._provider = provider
        self._auto_sync = timedelta(seconds=auto_sync_seconds)
        self._documents_root = documents_root
        self._clock = clock
        self.machine = SigningStateMachine(sheets, clock=clock)

    @property
    def provider(self) -> SigningProvider:
        return self._provider or get_signing_provider()

    @property
    def queue(self) -> DeferredJobQueue:
        return self._queue

    @property
    def sheets(self) -> SheetRepository:
        return self._sheets

    # ------------------------------------------------------------------
    # sheets
    # ------------------------------------------------------------------
    def create_sheet(
        self,
        title: str,
        first_signer: Signer,
        second_signer: Signer,
        expires_at: datetime,
        pdf: BinaryIO | None = None,
    ) -> Sheet:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        sheet_id = uuid.uuid4().hex
        document_path = None
        if pdf is not None:
            document_path = str(save_sheet_pdf(sheet_id, pdf, self._documents_root))

        sheet = Sheet(
            id=sheet_id,
            title=title,
            expires_at=expires_at,
            first_signer=first_signer,
            second_signer=second_signer,
            document_path=document_path,
            created_at=self._clock(),
        )
        self._sheets.add(sheet)
        logger.info("sheet_created", sheet_id=sheet_id, expires_at=expires_at.isoformat())
        return sheet

    def get_sheet(self, sheet_id: str) -> Sheet | None:
        return self._sheets.get(sheet_id)

    def list_sheets(self) -> list[Sheet]:
        return self._sheets.list_sheets()

    def sheet_view(self, sheet: Sheet) -> dict[str, object]:
        now = self._clock()

        def iso(value: datetime | None) -> str | None:
            return value.isoformat() if value else None

        return {
            "id": sheet.id,
            "title": sheet.title,
            "status": sheet.status.value,
            "effective_status": effective_status(sheet, now).value,
            "expires_at": sheet.expires_at.isoformat(),
            "first_signer": {"full_name": sheet.first_signer.full_name, "email": sheet.first_signer.email},
            "second_signer": {"full_name": sheet.second_signer.full_name, "email": sheet.second_signer.email},
            "first_signer_signed_at": iso(sheet.first_signer_signed_at),
            "second_signer_signed_at": iso(sheet.second_signer_signed_at),
            "provider_document_id": sheet.provider_document_id,
            "sign_pending": sheet.sign_pending,
            "last_signing_error": sheet.last_signing_error,
            "last_checked_at": iso(sheet.last_checked_at),
            "has_document": bool(sheet.document_path),
            "created_at": sheet.created_at.isoformat(),
        }

    # ------------------------------------------------------------------
    # events and expiry
    # ------------------------------------------------------------------
    async def apply_event(self, event: SigningEvent) -> SigningResult:
        result = self.machine.apply(event, self._clock())
        if result.expired and result.sheet_id:
            await self.revoke_links(event.document_id, sheet_id=result.sheet_id)
        return result

    async def expire_if_due(self, sheet: Sheet) -> bool:
        """Lazily expire ``sheet``; the caller that expires it also revokes its signing links."""

        expired = self.machine.expire_if_due(sheet, self._clock())
        if expired and sheet.provider_document_id:
            await self.revoke_links(sheet.provider_document_id, sheet_id=sheet.id)
        return expired

    async def revoke_links(self, document_id: str, *, sheet_id: str | None = None) -> None:
        """Revoke public links now, or hand the revocation to the deferred queue."""

        try:
            await self.provider.revoke_public_links(document_id)
        except Exception as exc:
            classified = classify_error(exc)
            logger.warning(
                "revoke_links_deferred",
                document_id=document_id,
                sheet_id=sheet_id,
                severity=classified.severity.value,
                error=classified.message,
            )
            self._queue.enqueue(JobType.REVOKE_PUBLIC_LINKS, {"document_id": document_id, "sheet_id": sheet_id})
            return
        logger.info("signing_links_revoked", document_id=document_id, sheet_id=sheet_id)

    # ------------------------------------------------------------------
    # provider polling
    # ------------------------------------------------------------------
    async def refresh_status(self, sheet_id: str) -> RefreshOutcome | None:
        """Poll the provider and replay what it reports through the state machine.

        A fully signed document yields the first and then the second event, so
        a sheet that missed both webhooks still ends up SIGNED.
        """

        sheet = self._sheets.get(sheet_id)
        if sheet is None or not sheet.provider_document_id:
            return None

        document_id = sheet.provider_document_id
        checked_at = self._clock()
        try:
            status = await self.provider.get_status(document_id)
            if status.status is DocumentState.CREATED:
                return RefreshOutcome(status.status, processed=False, duplicate=False, ignored=True)

            # signatures are collected in order, so the first one is never later than the second
            first_at = status.first_signed_at or status.second_signed_at or checked_at
            first = await self.apply_event(
                SigningEvent(document_id, SigningAction.FIRST_SIGNED, first_at, source="manual_refresh")
            )
            if status.status is DocumentState.FIRST_SIGNED:
                return RefreshOutcome(status.status, first.processed, first.duplicate, first.ignored)

            second = await self.apply_event(
                SigningEvent(
                    document_id,
                    SigningAction.SECOND_SIGNED,
                    status.second_signed_at or first_at,
                    source="manual_refresh",
                )
            )
            return RefreshOutcome(
                status.status,
                processed=first.processed or second.processed,
                duplicate=first.duplicate and second.duplicate,
                ignored=first.ignored and second.ignored,
            )
        finally:
            self.machine.touch_checked(sheet_id, checked_at)

    def needs_auto_sync(self, sheet: Sheet) -> bool:
        if not sheet.provider_document_id or sheet.sign_pending:
            return False
        if sheet.status not in (SheetStatus.DRAFT, SheetStatus.PENDING_COUNTERPARTY):
            return False
        if sheet.last_checked_at is None:
            return True
        return self._clock() - sheet.last_checked_at >= self._auto_sync

    async def load_sheet(self, sheet_id: str, *, auto_sync: bool = True) -> Sheet | None:
        """Read a sheet for display: lazily expire it and sync it with the provider when stale."""

        sheet = self._sheets.get(sheet_id)
        if sheet is None:
            return None

        if await self.expire_if_due(sheet):
            return self._sheets.get(sheet_id)

        if auto_sync and self.needs_auto_sync(sheet):
            try:
                await self.refresh_status(sheet_id)
            except Exception as exc:
                logger.warning("auto_sync_failed", sheet_id=sheet_id, error=repr(exc))
            sheet = self._sheets.get(sheet_id) or sheet
        return sheet

    # ------------------------------------------------------------------
    # signing session
    # ------------------------------------------------------------------
    async def ensure_signing_link(self, sheet_id: str) -> str | None:
        """Create the provider document on first use and return a signing URL."""

        sheet = self._sheets.get(sheet_id)
        if sheet is None:
            return None

        document_id = sheet.provider_document_id
        if not document_id:
            participants = build_participants(sheet)
            if not sheet.document_path:
                raise PermanentError("Sheet has no PDF document to sign.", code="SHEET_PDF_MISSING")
            pdf_bytes = load_sheet_pdf(sheet.document_path)

            document_id = await self.provider.create_document_with_participants(pdf_bytes, sheet.title, participants)
            saved = self._sheets.update_if(
                sheet.id,
                {"provider_document_id": document_id},
                null_fields=("provider_document_id",),
            )
            if not saved:
                current = self._sheets.get(sheet.id)
                stored = current.provider_document_id if current else None
                logger.warning(
                    "provider_document_race",
                    sheet_id=sheet.id,
                    created=document_id,
                    stored=stored,
                )
                document_id = stored or document_id
            else:
                logger.info("provider_document_bound", sheet_id=sheet.id, document_id=document_id)

        return await self.provider.generate_signing_link(document_id)

    # ------------------------------------------------------------------
    # downloads
    # ------------------------------------------------------------------
    async def prepare_download(self, sheet: Sheet, kind: str) -> SheetDownload:
        variant = DOWNLOAD_KINDS.get(kind)
        if variant is None:
            raise ValueError(f"Unknown download kind: {kind}")

        if not sheet.provider_document_id:
            if variant == "original" and sheet.document_path:
                return SheetDownload(
                    content=load_sheet_pdf(sheet.document_path),
                    filename=_fallback_filename(sheet.id, variant),
                    content_type=_fallback_content_type(variant),
                )
            raise DownloadNotReadyError(f"{kind} file is not available for this sheet yet.")

        try:
            downloaded = await self.provider.download_file(sheet.provider_document_id, variant)
        except Exception as exc:
            if classify_error(exc).code in PROVIDER_NOT_READY_CODES:
                raise DownloadNotReadyError(f"{kind} file is not available for this sheet yet.") from exc
            raise

        return SheetDownload(
            content=downloaded.content,
            filename=downloaded.filename or _fallback_filename(sheet.id, variant),
            content_type=downloaded.content_type or _fallback_content_type(variant),
        )

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def reset(self) -> None:
        self._sheets.reset()
        self._queue.repository.reset()


def _build_service(settings: Settings | None = None) -> SigningService:
    settings = settings or Settings()
    if settings.database_path:
        store = SQLiteStore(settings.database_path)
        sheets: SheetRepository = SQLiteSheetRepository(store)
        queue = DeferredJobQueue(SQLiteDeferredJobRepository(store))
    else:
        sheets = InMemorySheetRepository()
        queue = DeferredJobQueue(InMemoryDeferredJobRepository())
    return SigningService(
        sheets,
        queue,
        auto_sync_seconds=settings.auto_sync_seconds,
        documents_root=settings.documents_root,
    )


_service = _build_service()


def configure_signing_service(settings: Settings) -> SigningService:
    """Rebuild the process services from settings (in-memory or SQLite storage)."""

    global _service
    _service = _build_service(settings)
    return _service


def get_signing_service() -> SigningService:
    """Return the singleton signing service for the process."""

    return _service


def get_deferred_queue() -> DeferredJobQueue:
    return _service.queue


def reset_signing_state() -> None:
    """Reset the in-memory stores and the provider registry (used in tests)."""

    _service.reset()
    configure_signing_provider(None)


__all__ = [
    "DOWNLOAD_KINDS",
    "DownloadNotReadyError",
    "RefreshOutcome",
    "SetupErrorKind",
    "SheetDownload",
    "SigningService",
    "SigningSetupError",
    "build_participants",
    "calculate_expires_at",
    "configure_signing_service",
    "get_deferred_queue",
    "get_signing_service",
    "reset_signing_state",
]
