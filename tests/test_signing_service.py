from __future__ import annotations

import asyncio
import sys
from datetime import timedelta
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

from signflow.application.signing import SigningService
from signflow.domain import Sheet, SheetStatus, Signer, utc_now
from signflow.infrastructure import (
    DocumentState,
    DocumentStatusResult,
    InMemoryDeferredJobRepository,
    InMemorySheetRepository,
)
from signflow.workers.deferred_queue import DeferredJobQueue


class _StatusProvider:
    """Provider stub that always reports the same status."""

    def __init__(self, result: DocumentStatusResult) -> None:
        self.result = result

    async def get_status(self, document_id: str) -> DocumentStatusResult:
        return self.result

    async def revoke_public_links(self, document_id: str) -> None:
        return None


def _service(provider) -> tuple[SigningService, InMemorySheetRepository]:
    sheets = InMemorySheetRepository()
    queue = DeferredJobQueue(InMemoryDeferredJobRepository())
    return SigningService(sheets, queue, provider), sheets


def _add_sheet(sheets: InMemorySheetRepository) -> None:
    sheets.add(
        Sheet(
            id="sheet-1",
            title="Survey",
            expires_at=utc_now() + timedelta(days=7),
            first_signer=Signer("Alice Owner", "alice@example.com"),
            second_signer=Signer("Bob Counter", "bob@example.com"),
            provider_document_id="doc-1",
        )
    )


def test_refresh_without_first_timestamp_keeps_signatures_ordered():
    second_at = utc_now() - timedelta(hours=1)
    provider = _StatusProvider(DocumentStatusResult("doc-1", DocumentState.SECOND_SIGNED, None, second_at))
    service, sheets = _service(provider)
    _add_sheet(sheets)

    outcome = asyncio.run(service.refresh_status("sheet-1"))

    assert outcome.processed
    stored = sheets.get("sheet-1")
    assert stored.status is SheetStatus.SIGNED
    assert stored.first_signer_signed_at == second_at
    assert stored.second_signer_signed_at == second_at
    assert stored.last_checked_at is not None


def test_refresh_uses_provider_timestamps_when_present():
    first_at = utc_now() - timedelta(hours=2)
    second_at = utc_now() - timedelta(hours=1)
    provider = _StatusProvider(DocumentStatusResult("doc-1", DocumentState.SECOND_SIGNED, first_at, second_at))
    service, sheets = _service(provider)
    _add_sheet(sheets)

    asyncio.run(service.refresh_status("sheet-1"))

    stored = sheets.get("sheet-1")
    assert stored.first_signer_signed_at == first_at
    assert stored.second_signer_signed_at == second_at


def test_refresh_of_unsigned_document_only_stamps_check_time():
    provider = _StatusProvider(DocumentStatusResult("doc-1", DocumentState.CREATED))
    service, sheets = _service(provider)
    _add_sheet(sheets)

    outcome = asyncio.run(service.refresh_status("sheet-1"))

    assert outcome.ignored
    stored = sheets.get("sheet-1")
    assert stored.status is SheetStatus.DRAFT
    assert stored.last_checked_at is not None
