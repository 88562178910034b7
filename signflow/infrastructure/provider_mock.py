"""In-process signing provider used when no credentials are configured.

Documents advance on their own: the first signer signs on the second status
check and the counterparty on the third, which is enough to walk a sheet
through the whole lifecycle from a browser or a test without a real provider.
"""
from __future__ import annotations

import re
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from signflow.core.errors import PermanentError, TemporaryError
from signflow.domain import ParticipantRole, utc_now

from .provider import DocumentState, DocumentStatusResult, DownloadResult, DownloadVariant, ParticipantInput


@dataclass(slots=True)
class _MockDocument:
    id: str
    title: str
    content: bytes
    participants: list[ParticipantInput] = field(default_factory=list)
    status_checks: int = 0
    first_signed_at: datetime | None = None
    second_signed_at: datetime | None = None
    link_token: str | None = None
    revoked: bool = False


class MockSigningProvider:
    def __init__(self, *, auto_advance: bool = True) -> None:
        self.auto_advance = auto_advance
        self._documents: dict[str, _MockDocument] = {}
        self._lock = threading.Lock()

    def _require(self, document_id: str) -> _MockDocument:
        document = self._documents.get(document_id)
        if document is None:
            raise PermanentError(f"Mock document {document_id} not found.", code="MOCK_DOCUMENT_NOT_FOUND")
        return document

    @staticmethod
    def _has_role(document: _MockDocument, role: ParticipantRole) -> bool:
        return any(item.role is role for item in document.participants)

    def _resolve(self, document: _MockDocument) -> DocumentStatusResult:
        document.status_checks += 1
        if self.auto_advance:
            if (
                self._has_role(document, ParticipantRole.FIRST_SIGNER)
                and document.first_signed_at is None
                and document.status_checks >= 2
            ):
                document.first_signed_at = utc_now()
            if (
                self._has_role(document, ParticipantRole.SECOND_SIGNER)
                and document.first_signed_at is not None
                and document.second_signed_at is None
                and document.status_checks >= 3
            ):
                document.second_signed_at = utc_now()

        if document.second_signed_at is not None:
            state = DocumentState.SECOND_SIGNED
        elif document.first_signed_at is not None:
            state = DocumentState.FIRST_SIGNED
        else:
            state = DocumentState.CREATED
        return DocumentStatusResult(document.id, state, document.first_signed_at, document.second_signed_at)

    @staticmethod
    def _base_name(document: _MockDocument) -> str:
        slug = re.sub(r"\s+", "-", document.title.strip().lower())
        slug = re.sub(r"[^a-z0-9_-]", "", slug)[:64]
        return slug or f"sheet-{document.id}"

    # ------------------------------------------------------------------
    # provider contract
    # ------------------------------------------------------------------
    async def create_document(self, pdf_bytes: bytes, title: str) -> str:
        document_id = f"mock-doc-{uuid.uuid4()}"
        with self._lock:
            self._documents[document_id] = _MockDocument(id=document_id, title=title, content=bytes(pdf_bytes))
        return document_id

    async def add_participants(self, document_id: str, participants: Sequence[ParticipantInput]) -> None:
        with self._lock:
            document = self._require(document_id)
            document.participants = sorted(participants, key=lambda item: item.priority)

    async def create_document_with_participants(
        self,
        pdf_bytes: bytes,
        title: str,
        participants: Sequence[ParticipantInput],
    ) -> str:
        document_id = await self.create_document(pdf_bytes, title)
        await self.add_participants(document_id, participants)
        return document_id

    async def get_status(self, document_id: str) -> DocumentStatusResult:
        with self._lock:
            return self._resolve(self._require(document_id))

    async def download_file(self, document_id: str, variant: DownloadVariant) -> DownloadResult:
        with self._lock:
            document = self._require(document_id)
            if variant == "signed" and self._resolve(document).status is DocumentState.CREATED:
                raise TemporaryError("Mock document is not signed yet.", code="MOCK_NOT_SIGNED")

        base_name = self._base_name(document)
        if variant == "signed":
            body = "\n".join(
                [
                    "-----BEGIN PKCS7-----",
                    f"mock-document-id:{document.id}",
                    f"title:{document.title}",
                    f"bytes:{len(document.content)}",
                    "-----END PKCS7-----",
                ]
            )
            return DownloadResult(
                document_id=document.id,
                variant=variant,
                content=body.encode("utf-8"),
                content_type="application/pkcs7-signature",
                filename=f"{base_name}-signed.p7s",
            )

        suffix = "" if variant == "original" else f"-{variant}"
        return DownloadResult(
            document_id=document.id,
            variant=variant,
            content=document.content,
            content_type="application/pdf",
            filename=f"{base_name}{suffix}.pdf",
        )

    async def revoke_public_links(self, document_id: str) -> None:
        with self._lock:
            document = self._documents.get(document_id)
            # an unknown document has no live links
            if document is not None:
                document.link_token = None
                document.revoked = True

    async def generate_signing_link(self, document_id: str) -> str:
        with self._lock:
            document = self._require(document_id)
            if document.link_token is None:
                document.link_token = uuid.uuid4().hex
                document.revoked = False
            return f"https://mock.signflow.local/sign/{document.id}/{document.link_token}"

    # ------------------------------------------------------------------
    # testing helpers
    # ------------------------------------------------------------------
    def mark_signed(self, document_id: str, role: ParticipantRole, at: datetime | None = None) -> None:
        with self._lock:
            document = self._require(document_id)
            if role is ParticipantRole.FIRST_SIGNER:
                document.first_signed_at = document.first_signed_at or at or utc_now()
            else:
                document.second_signed_at = document.second_signed_at or at or utc_now()

    def is_revoked(self, document_id: str) -> bool:
        with self._lock:
            return self._require(document_id).revoked

    def reset(self) -> None:
        with self._lock:
            self._documents.clear()


__all__ = ["MockSigningProvider"]
