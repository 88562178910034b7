from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, File, Form, HTTPException, Response, UploadFile

from signflow.application import SetupErrorKind, SigningService, SigningSetupError, effective_status, get_signing_service
from signflow.application.signing import DOWNLOAD_KINDS, DownloadNotReadyError, calculate_expires_at
from signflow.core.logging import get_logger
from signflow.domain import Sheet, SheetStatus, Signer
from signflow.routes.errors import ApiError

router = APIRouter(prefix="/sheets", tags=["sheets"])

logger = get_logger("routes.sheets")

SIGNING_UNAVAILABLE_MESSAGE = "Signing service is temporarily unavailable. Please try again."
REFRESH_FAILED_MESSAGE = "Could not refresh the document status. Please try again."


def _setup_error_message(kind: SetupErrorKind) -> str:
    match kind:
        case SetupErrorKind.SIGNER_EMAILS_COLLIDE:
            return "The signer and the counterparty must use different email addresses."
        case SetupErrorKind.FIRST_SIGNER_EMAIL_MISSING:
            return "The signer has no email address. Add one before signing."
        case SetupErrorKind.COUNTERPARTY_EMAIL_MISSING:
            return "Signing is not fully configured. Contact the counterparty."


def _require_sheet(service: SigningService, sheet_id: str) -> Sheet:
    sheet = service.get_sheet(sheet_id)
    if sheet is None:
        raise ApiError(404, "SHEET_NOT_FOUND", "Sheet not found.")
    return sheet


async def _reject_if_expired(service: SigningService, sheet: Sheet) -> None:
    if sheet.status is SheetStatus.EXPIRED or effective_status(sheet) is SheetStatus.EXPIRED:
        await service.expire_if_due(sheet)
        raise ApiError(409, "SHEET_EXPIRED", "The signing period for this sheet has ended.")


def _parse_expires_at(expires_at: str | None, validity_days: int | None) -> datetime:
    if expires_at:
        try:
            parsed = datetime.fromisoformat(expires_at.strip().replace("Z", "+00:00"))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail="expires_at must be an ISO 8601 timestamp") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    if validity_days is not None:
        if validity_days < 1:
            raise HTTPException(status_code=400, detail="validity_days must be positive")
        return calculate_expires_at(validity_days)
    raise HTTPException(status_code=400, detail="Either expires_at or validity_days is required")


@router.post("", status_code=201)
def create_sheet(
    title: str = Form(...),
    first_signer_name: str = Form(...),
    second_signer_name: str = Form(...),
    first_signer_email: str | None = Form(default=None),
    first_signer_tax_id: str | None = Form(default=None),
    second_signer_email: str | None = Form(default=None),
    second_signer_tax_id: str | None = Form(default=None),
    expires_at: str | None = Form(default=None),
    validity_days: int | None = Form(default=None),
    file: UploadFile | None = File(default=None),
) -> dict:
    """Create a DRAFT sheet, optionally with the PDF that will be signed."""

    if not title.strip():
        raise HTTPException(status_code=400, detail="Title must not be empty")

    deadline = _parse_expires_at(expires_at, validity_days)
    service = get_signing_service()
    try:
        sheet = service.create_sheet(
            title=title.strip(),
            first_signer=Signer(first_signer_name.strip(), first_signer_email, first_signer_tax_id),
            second_signer=Signer(second_signer_name.strip(), second_signer_email, second_signer_tax_id),
            expires_at=deadline,
            pdf=file.file if file is not None and file.filename else None,
        )
    finally:
        if file is not None:
            file.file.close()
    return {"ok": True, "sheet": service.sheet_view(sheet)}


@router.get("")
def list_sheets() -> dict:
    service = get_signing_service()
    return {"items": [service.sheet_view(sheet) for sheet in service.list_sheets()]}


@router.get("/{sheet_id}")
async def get_sheet(sheet_id: str) -> dict:
    service = get_signing_service()
    sheet = await service.load_sheet(sheet_id)
    if sheet is None:
        raise ApiError(404, "SHEET_NOT_FOUND", "Sheet not found.")
    return {"ok": True, "sheet": service.sheet_view(sheet)}


@router.post("/{sheet_id}/status-refresh")
async def refresh_sheet_status(sheet_id: str) -> dict:
    """Poll the provider for the sheet's document and apply whatever changed."""

    service = get_signing_service()
    sheet = _require_sheet(service, sheet_id)
    await _reject_if_expired(service, sheet)

    if sheet.status is SheetStatus.SIGNED:
        return {
            "ok": True,
            "changed": False,
            "message": "The document is already signed by both parties.",
            "sheet": service.sheet_view(sheet),
        }

    if not sheet.provider_document_id:
        raise ApiError(409, "SIGNING_NOT_STARTED", "Signing has not started yet. Request a signing link first.")

    before = (sheet.status, sheet.first_signer_signed_at, sheet.second_signer_signed_at)
    service.machine.mark_sign_pending(sheet.id)
    try:
        await service.refresh_status(sheet.id)
        service.machine.clear_sign_state(sheet.id)
    except Exception as exc:
        logger.error("status_refresh_failed", sheet_id=sheet.id, error=repr(exc))
        service.machine.mark_sign_failed(sheet.id, REFRESH_FAILED_MESSAGE)
        raise ApiError(502, "SIGNING_UNAVAILABLE", REFRESH_FAILED_MESSAGE) from exc

    updated = _require_sheet(service, sheet.id)
    changed = before != (updated.status, updated.first_signer_signed_at, updated.second_signer_signed_at)
    if not changed:
        message = "No change in the document status."
    elif updated.status is SheetStatus.SIGNED:
        message = "Status updated: the document is signed by both parties."
    elif updated.first_signer_signed_at:
        message = "Status updated: the first signature was recorded."
    else:
        message = "Document status updated."

    return {"ok": True, "changed": changed, "message": message, "sheet": service.sheet_view(updated)}


@router.post("/{sheet_id}/sign-link")
async def create_sign_link(sheet_id: str) -> dict:
    """Start (or resume) signing and return the provider URL to redirect to."""

    service = get_signing_service()
    sheet = _require_sheet(service, sheet_id)
    await _reject_if_expired(service, sheet)

    if sheet.status is not SheetStatus.DRAFT:
        raise ApiError(409, "SHEET_ALREADY_SUBMITTED", "The sheet was already submitted for signing.")

    service.machine.mark_sign_pending(sheet.id)
    try:
        redirect_url = await service.ensure_signing_link(sheet.id)
    except SigningSetupError as exc:
        message = _setup_error_message(exc.kind)
        service.machine.mark_sign_failed(sheet.id, message)
        raise ApiError(409, "SIGNING_NOT_CONFIGURED", message, details={"kind": exc.kind.value}) from exc
    except Exception as exc:
        logger.error("sign_link_failed", sheet_id=sheet.id, error=repr(exc))
        service.machine.mark_sign_failed(sheet.id, SIGNING_UNAVAILABLE_MESSAGE)
        raise ApiError(502, "SIGNING_UNAVAILABLE", SIGNING_UNAVAILABLE_MESSAGE) from exc

    if redirect_url is None:
        raise ApiError(404, "SHEET_NOT_FOUND", "Sheet not found.")

    service.machine.clear_sign_state(sheet.id)
    return {"ok": True, "message": "The signing link is ready.", "redirectUrl": redirect_url}


@router.get("/{sheet_id}/downloads/{kind}")
async def download_sheet_file(sheet_id: str, kind: str) -> Response:
    if kind not in DOWNLOAD_KINDS:
        raise HTTPException(status_code=404, detail="Unknown download kind")

    service = get_signing_service()
    sheet = _require_sheet(service, sheet_id)
    try:
        prepared = await service.prepare_download(sheet, kind)
    except DownloadNotReadyError as exc:
        raise ApiError(409, "DOWNLOAD_NOT_READY", str(exc)) from exc
    except Exception as exc:
        logger.error("download_failed", sheet_id=sheet.id, kind=kind, error=repr(exc))
        raise ApiError(502, "SIGNING_UNAVAILABLE", "Could not download the file. Please try again.") from exc

    return Response(
        content=prepared.content,
        media_type=prepared.content_type,
        headers={"Content-Disposition": f'attachment; filename="{prepared.filename}"'},
    )
