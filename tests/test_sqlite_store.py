from __future__ import annotations

import sys
from datetime import timedelta
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import pytest

from signflow.application.state_machine import SigningStateMachine
from signflow.domain import (
    DeferredJob,
    JobStatus,
    Sheet,
    SheetStatus,
    Signer,
    SigningAction,
    SigningEvent,
    utc_now,
)
from signflow.infrastructure import SQLiteDeferredJobRepository, SQLiteSheetRepository, SQLiteStore


@pytest.fixture()
def store(tmp_path) -> SQLiteStore:
    return SQLiteStore(tmp_path / "state" / "signflow.db")


@pytest.fixture()
def sheets(store) -> SQLiteSheetRepository:
    return SQLiteSheetRepository(store)


@pytest.fixture()
def jobs(store) -> SQLiteDeferredJobRepository:
    return SQLiteDeferredJobRepository(store)


def _sheet(sheet_id: str = "sheet-1", **overrides) -> Sheet:
    values = {
        "id": sheet_id,
        "title": "Survey",
        "expires_at": utc_now() + timedelta(days=3),
        "first_signer": Signer("Alice Owner", "alice@example.com", "1234567890"),
        "second_signer": Signer("Bob Counter", "bob@example.com"),
    }
    values.update(overrides)
    return Sheet(**values)


def test_sheet_roundtrip_keeps_signers_and_timestamps(sheets):
    signed_at = utc_now() - timedelta(hours=1)
    sheets.add(_sheet(first_signer_signed_at=signed_at, status=SheetStatus.PENDING_COUNTERPARTY, sign_pending=True))

    stored = sheets.get("sheet-1")

    assert stored.status is SheetStatus.PENDING_COUNTERPARTY
    assert stored.first_signer.tax_id == "1234567890"
    assert stored.second_signer.tax_id is None
    assert stored.first_signer_signed_at == signed_at
    assert stored.sign_pending is True
    assert sheets.get("missing") is None


def test_update_if_respects_status_and_null_guards(sheets):
    sheets.add(_sheet())
    now = utc_now()

    assert sheets.update_if(
        "sheet-1",
        {"status": SheetStatus.PENDING_COUNTERPARTY, "first_signer_signed_at": now},
        status_in=(SheetStatus.DRAFT,),
        null_fields=("first_signer_signed_at",),
    )
    # the same guarded write loses the second time
    assert not sheets.update_if(
        "sheet-1",
        {"status": SheetStatus.PENDING_COUNTERPARTY, "first_signer_signed_at": utc_now()},
        status_in=(SheetStatus.DRAFT,),
        null_fields=("first_signer_signed_at",),
    )
    assert sheets.get("sheet-1").first_signer_signed_at == now
    assert not sheets.update_if("missing", {"sign_pending": True})


def test_update_if_rejects_unknown_fields(sheets):
    sheets.add(_sheet())
    with pytest.raises(ValueError):
        sheets.update_if("sheet-1", {"title": "renamed"})


def test_provider_document_id_is_unique(sheets):
    sheets.add(_sheet("sheet-1", provider_document_id="doc-1"))
    sheets.add(_sheet("sheet-2"))

    with pytest.raises(ValueError):
        sheets.update_if("sheet-2", {"provider_document_id": "doc-1"})

    assert sheets.find_by_document_id("doc-1").id == "sheet-1"
    assert sheets.find_by_document_id("doc-2") is None


def test_list_sheets_newest_first(sheets):
    sheets.add(_sheet("older", created_at=utc_now() - timedelta(days=1)))
    sheets.add(_sheet("newer"))

    assert [sheet.id for sheet in sheets.list_sheets()] == ["newer", "older"]


def test_state_machine_runs_on_sqlite(sheets):
    sheets.add(_sheet(provider_document_id="doc-1"))
    machine = SigningStateMachine(sheets)

    first = machine.apply(SigningEvent("doc-1", SigningAction.FIRST_SIGNED, utc_now()))
    again = machine.apply(SigningEvent("doc-1", SigningAction.FIRST_SIGNED, utc_now()))
    final = machine.apply(SigningEvent("doc-1", SigningAction.SECOND_SIGNED, utc_now()))

    assert first.processed
    assert again.duplicate
    assert final.status is SheetStatus.SIGNED
    assert sheets.get("sheet-1").status is SheetStatus.SIGNED


def test_job_claim_is_exclusive(jobs):
    jobs.add(DeferredJob(id="job-1", type="NOOP", payload={"document_id": "doc-1"}))

    assert jobs.claim("job-1") is True
    assert jobs.claim("job-1") is False
    assert jobs.get("job-1").status is JobStatus.PROCESSING
    assert jobs.get("job-1").payload == {"document_id": "doc-1"}


def test_list_due_orders_by_run_at_then_created_at(jobs):
    now = utc_now()
    jobs.add(DeferredJob(id="b", type="NOOP", run_at=now - timedelta(minutes=1), created_at=now - timedelta(minutes=1)))
    jobs.add(DeferredJob(id="a", type="NOOP", run_at=now - timedelta(minutes=1), created_at=now - timedelta(minutes=2)))
    jobs.add(DeferredJob(id="first", type="NOOP", run_at=now - timedelta(minutes=5)))
    jobs.add(DeferredJob(id="future", type="NOOP", run_at=now + timedelta(minutes=5)))
    jobs.add(DeferredJob(id="done", type="NOOP", status=JobStatus.DONE, run_at=now - timedelta(hours=1)))

    assert [job.id for job in jobs.list_due(now, 10)] == ["first", "a", "b"]
    assert [job.id for job in jobs.list_due(now, 1)] == ["first"]


def test_finish_records_outcome(jobs):
    now = utc_now()
    jobs.add(DeferredJob(id="job-1", type="NOOP", run_at=now))
    jobs.claim("job-1")

    jobs.finish("job-1", status=JobStatus.PENDING, attempts=1, last_error="boom", run_at=now + timedelta(seconds=1))

    stored = jobs.get("job-1")
    assert stored.status is JobStatus.PENDING
    assert stored.attempts == 1
    assert stored.last_error == "boom"
    assert stored.run_at == now + timedelta(seconds=1)
    assert jobs.list_jobs(JobStatus.PENDING)[0].id == "job-1"


def test_reset_clears_both_tables(store, sheets, jobs):
    sheets.add(_sheet())
    jobs.add(DeferredJob(id="job-1", type="NOOP"))

    store.reset()

    assert sheets.list_sheets() == []
    assert jobs.list_jobs() == []


class _ExpiringSQLiteRepository(SQLiteSheetRepository):
    expire_next_write = False

    def update_if(self, sheet_id, values, *, status_in=None, null_fields=()):
        if self.expire_next_write:
            self.expire_next_write = False
            super().update_if(sheet_id, {"status": SheetStatus.EXPIRED})
        return super().update_if(sheet_id, values, status_in=status_in, null_fields=null_fields)


def test_event_losing_to_concurrent_expiry_is_ignored_on_sqlite(store):
    sheets = _ExpiringSQLiteRepository(store)
    sheets.add(_sheet(provider_document_id="doc-1"))
    machine = SigningStateMachine(sheets)
    sheets.expire_next_write = True

    result = machine.apply(SigningEvent("doc-1", SigningAction.FIRST_SIGNED, utc_now()))

    assert result.ignored
    assert not result.processed
    assert not result.duplicate
    assert sheets.get("sheet-1").status is SheetStatus.EXPIRED
    assert sheets.get("sheet-1").first_signer_signed_at is None


def test_update_if_with_no_values_writes_nothing(sheets):
    sheets.add(_sheet())

    assert sheets.update_if("sheet-1", {}) is False
    assert sheets.update_if("sheet-1", {}, status_in=(SheetStatus.DRAFT,)) is False
    assert sheets.get("sheet-1").status is SheetStatus.DRAFT


def test_release_stale_returns_claimed_jobs_to_pending(jobs):
    jobs.add(DeferredJob(id="job-1", type="NOOP"))
    jobs.claim("job-1")

    assert jobs.release_stale(utc_now() - timedelta(minutes=15)) == 0
    assert jobs.release_stale(utc_now() + timedelta(seconds=1)) == 1

    assert jobs.get("job-1").status is JobStatus.PENDING
    assert jobs.claim("job-1") is True
