"""HTTP client for the signing provider REST API."""
from __future__ import annotations

import asyncio
import re
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Sequence
from urllib.parse import urlparse

import httpx

from signflow.core.errors import (
    CriticalError,
    IntegrationError,
    classify_error,
    classify_http_status,
    error_for_severity,
)
from signflow.core.logging import get_logger
from signflow.core.retry import RETRY_PRESETS, AttemptContext, RetryEvent, RetryOptions, run_with_retry
from signflow.core.settings import Settings

from .provider import DocumentState, DocumentStatusResult, DownloadResult, DownloadVariant, ParticipantInput

logger = get_logger("provider.http")

FULLY_SIGNED_STATUSES = frozenset({"SIGNED", "FULLY_SIGNED", "COMPLETED", "SECOND_SIGNED"})
PARTIALLY_SIGNED_STATUSES = frozenset({"PARTIALLY_SIGNED", "FIRST_SIGNED", "IN_PROGRESS_SIGNED"})
ALREADY_GONE_STATUSES = (404, 410)

_FILENAME_RE = re.compile(r'filename="?([^";]+)"?')


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _priority(participant: dict[str, Any]) -> int:
    try:
        return int(participant.get("priority"))
    except (TypeError, ValueError):
        return 1_000_000


def _signed_at(participant: dict[str, Any]) -> datetime | None:
    return _parse_timestamp(participant.get("signedAt")) or _parse_timestamp(participant.get("executedAt"))


def _is_signed(participant: dict[str, Any]) -> bool:
    if participant.get("isSigned") is True or participant.get("signed") is True:
        return True
    return _signed_at(participant) is not None


def map_document_status(document_id: str, payload: dict[str, Any]) -> DocumentStatusResult:
    """Translate a provider status payload into the two-signature progress model.

    Per-participant signals win over the coarse document status: the
    participants are ordered by ``priority`` and the signed ones fill the
    first and second slot in that order. The document-level string is only
    consulted when no participants are listed.
    """

    raw_participants = payload.get("participants") or payload.get("signers") or []
    participants = [item for item in raw_participants if isinstance(item, dict)]

    if participants:
        ordered = sorted(participants, key=_priority)
        signed = [_signed_at(item) for item in ordered if _is_signed(item)]
        if len(signed) >= 2:
            return DocumentStatusResult(document_id, DocumentState.SECOND_SIGNED, signed[0], signed[1])
        if len(signed) == 1:
            return DocumentStatusResult(document_id, DocumentState.FIRST_SIGNED, signed[0], None)
        return DocumentStatusResult(document_id, DocumentState.CREATED)

    status = str(payload.get("status") or "").strip().upper()
    if status in FULLY_SIGNED_STATUSES:
        return DocumentStatusResult(document_id, DocumentState.SECOND_SIGNED)
    if status in PARTIALLY_SIGNED_STATUSES:
        return DocumentStatusResult(document_id, DocumentState.FIRST_SIGNED)
    return DocumentStatusResult(document_id, DocumentState.CREATED)


class HttpSigningProvider:
    """Signing provider client; every call goes through the ``provider`` retry preset."""

    def __init__(
        self,
        api_base: str,
        api_key: str,
        org_id: str,
        *,
        timeout: float = 30.0,
        retry: RetryOptions | None = None,
        http_client: httpx.AsyncClient | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        parsed = urlparse(api_base)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError("api_base must include scheme and host")

        self._api_base = api_base.rstrip("/")
        self._headers = {
            "X-API-Key": api_key,
            "X-Organization-Id": org_id,
            "Accept": "application/json",
        }
        options = retry or RETRY_PRESETS["provider"]
        if options.on_retry is None:
            options = replace(options, on_retry=self._log_retry)
        self._retry = options
        self._sleep = sleep
        self._client = http_client or httpx.AsyncClient(timeout=timeout)
        self._owns_client = http_client is None

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _log_retry(event: RetryEvent) -> None:
        logger.warning(
            "provider_call_retry",
            attempt=event.attempt,
            max_attempts=event.max_attempts,
            next_delay_ms=event.next_delay_ms,
            error=repr(event.error),
        )

    @staticmethod
    def _http_error(operation: str, response: httpx.Response) -> IntegrationError:
        status_code = response.status_code
        body = response.text[:300] if response.content else ""
        message = f"Provider {operation} failed with HTTP {status_code}"
        if body:
            message = f"{message}: {body}"
        return error_for_severity(
            classify_http_status(status_code),
            message,
            code=f"PROVIDER_HTTP_{status_code}",
        )

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        ok_statuses: tuple[int, ...] = (),
        **kwargs: Any,
    ) -> httpx.Response:
        url = f"{self._api_base}{path}"

        async def attempt(context: AttemptContext) -> httpx.Response:
            response = await self._client.request(method, url, headers=self._headers, **kwargs)
            if response.is_error and response.status_code not in ok_statuses:
                raise self._http_error(operation, response)
            return response

        try:
            return await run_with_retry(attempt, self._retry, sleep=self._sleep)
        except Exception as exc:
            classified = classify_error(exc)
            logger.error(
                "provider_call_failed",
                operation=operation,
                severity=classified.severity.value,
                code=classified.code,
                error=classified.message,
            )
            if classified is exc:
                raise
            raise classified from exc

    @staticmethod
    def _json(response: httpx.Response, operation: str) -> dict[str, Any]:
        try:
            data = response.json()
        except ValueError as exc:
            raise CriticalError(f"Provider {operation} returned a non-JSON body.", code="PROVIDER_CONTRACT", cause=exc) from exc
        if not isinstance(data, dict):
            raise CriticalError(f"Provider {operation} returned an unexpected payload.", code="PROVIDER_CONTRACT")
        return data

    @staticmethod
    def _filename(response: httpx.Response) -> str | None:
        disposition = response.headers.get("content-disposition")
        if not disposition:
            return None
        match = _FILENAME_RE.search(disposition)
        return match.group(1) if match else None

    # ------------------------------------------------------------------
    # public API
    # ------------------------------------------------------------------
    async def create_document(self, pdf_bytes: bytes, title: str) -> str:
        response = await self._request(
            "POST",
            "/documents",
            operation="create_document",
            files={"file": ("document.pdf", pdf_bytes, "application/pdf")},
            data={"title": title},
        )
        data = self._json(response, "create_document")
        document_id = data.get("id") or data.get("documentId")
        if not isinstance(document_id, str) or not document_id:
            raise CriticalError("Provider create_document response has no document id.", code="PROVIDER_CONTRACT")
        logger.info("provider_document_created", document_id=document_id)
        return document_id

    async def add_participants(self, document_id: str, participants: Sequence[ParticipantInput]) -> None:
        ordered = sorted(participants, key=lambda item: item.priority)
        body = {
            "participants": [
                {
                    "role": item.role.value,
                    "fullName": item.full_name,
                    "email": item.email,
                    "taxId": item.tax_id,
                    "priority": item.priority,
                }
                for item in ordered
            ]
        }
        await self._request("POST", f"/documents/{document_id}/participants", operation="add_participants", json=body)

    async def start_flow(self, document_id: str) -> None:
        await self._request("POST", f"/documents/{document_id}/start", operation="start_flow")

    async def create_document_with_participants(
        self,
        pdf_bytes: bytes,
        title: str,
        participants: Sequence[ParticipantInput],
    ) -> str:
        document_id = await self.create_document(pdf_bytes, title)
        if participants:
            await self.add_participants(document_id, participants)
            await self.start_flow(document_id)
        return document_id

    async def get_status(self, document_id: str) -> DocumentStatusResult:
        response = await self._request("GET", f"/documents/{document_id}", operation="get_status")
        return map_document_status(document_id, self._json(response, "get_status"))

    async def download_file(self, document_id: str, variant: DownloadVariant) -> DownloadResult:
        response = await self._request(
            "GET",
            f"/documents/{document_id}/download",
            operation="download_file",
            params={"file": variant},
        )
        return DownloadResult(
            document_id=document_id,
            variant=variant,
            content=response.content,
            content_type=response.headers.get("content-type", "application/octet-stream"),
            filename=self._filename(response),
        )

    async def revoke_public_links(self, document_id: str) -> None:
        response = await self._request(
            "DELETE",
            f"/documents/{document_id}/public-links",
            operation="revoke_public_links",
            ok_statuses=ALREADY_GONE_STATUSES,
        )
        if response.status_code in ALREADY_GONE_STATUSES:
            logger.info("provider_links_already_gone", document_id=document_id, status_code=response.status_code)

    async def generate_signing_link(self, document_id: str) -> str:
        response = await self._request(
            "POST",
            f"/documents/{document_id}/signing-links",
            operation="generate_signing_link",
        )
        url = self._json(response, "generate_signing_link").get("url")
        if not isinstance(url, str) or not url:
            raise CriticalError("Provider signing link response has no url.", code="PROVIDER_CONTRACT")
        return url

    async def aclose(self) -> None:  # pragma: no cover - best effort cleanup
        if self._owns_client:
            await self._client.aclose()


def provider_from_settings(settings: Settings) -> HttpSigningProvider | None:
    """Build the HTTP client when credentials are configured, otherwise ``None``."""

    if not settings.provider_configured:
        return None
    return HttpSigningProvider(
        api_base=settings.provider_api_base,
        api_key=settings.provider_api_key or "",
        org_id=settings.provider_org_id or "",
    )


__all__ = ["HttpSigningProvider", "map_document_status", "provider_from_settings"]
