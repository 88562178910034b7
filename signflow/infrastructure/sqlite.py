"""SQLite-backed repositories for sheets and deferred jobs.

Every cross-request write is a single guarded ``UPDATE`` whose
``cursor.rowcount`` tells the caller whether it won. Nothing holds a
transaction open across a provider call.
"""
from __future__ import annotations

import json
import sqlite3
from collections.abc import Collection, Iterator, Mapping
from contextlib import closing, contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any

from signflow.core.logging import get_logger
from signflow.domain import DeferredJob, JobStatus, Sheet, SheetStatus, Signer, utc_now
from signflow.infrastructure.sheets import check_sheet_fields

_logger = get_logger("storage.sqlite")

SCHEMA_VERSION = 1

# async routes that also await the provider call these repositories on the
# event loop, so a locked database must fail fast instead of stalling it
BUSY_TIMEOUT_SECONDS = 5

SHEET_COLUMNS = (
    "id",
    "title",
    "status",
    "expires_at",
    "first_signer_name",
    "first_signer_email",
    "first_signer_tax_id",
    "second_signer_name",
    "second_signer_email",
    "second_signer_tax_id",
    "first_signer_signed_at",
    "second_signer_signed_at",
    "provider_document_id",
    "sign_pending",
    "last_signing_error",
    "last_checked_at",
    "document_path",
    "created_at",
)

JOB_COLUMNS = ("id", "type", "payload", "status", "attempts", "last_error", "run_at", "created_at", "updated_at")


def _dt_to_str(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # fixed width so that text ordering matches time ordering
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _str_to_dt(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _to_column(value: Any) -> Any:
    if isinstance(value, datetime):
        return _dt_to_str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


class SQLiteStore:
    """Owns the database file and its schema; repositories share one store."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._migrate()

    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection; the block commits on success and rolls back on error."""

        with closing(sqlite3.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS)) as conn:
            conn.row_factory = sqlite3.Row
            with conn:
                yield conn

    def _migrate(self) -> None:
        with self.connect() as db:
            db.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY,
                    applied_at TEXT NOT NULL
                )
                """
            )
            row = db.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
            current = row["version"] or 0
            if current >= SCHEMA_VERSION:
                return

            db.execute(
                """
                CREATE TABLE IF NOT EXISTS sheets (
                    id TEXT PRIMARY KEY,
                    title TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'DRAFT',
                    expires_at TEXT NOT NULL,
                    first_signer_name TEXT NOT NULL,
                    first_signer_email TEXT,
                    first_signer_tax_id TEXT,
                    second_signer_name TEXT NOT NULL,
                    second_signer_email TEXT,
                    second_signer_tax_id TEXT,
                    first_signer_signed_at TEXT,
                    second_signer_signed_at TEXT,
                    provider_document_id TEXT UNIQUE,
                    sign_pending INTEGER NOT NULL DEFAULT 0,
                    last_signing_error TEXT,
                    last_checked_at TEXT,
                    document_path TEXT,
                    created_at TEXT NOT NULL
                )
                """
            )
            db.execute(
                """
                CREATE TABLE IF NOT EXISTS deferred_jobs (
                    id TEXT PRIMARY KEY,
                    type TEXT NOT NULL,
                    payload TEXT NOT NULL DEFAULT '{}',
                    status TEXT NOT NULL DEFAULT 'PENDING',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    run_at TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            db.execute(
                "CREATE INDEX IF NOT EXISTS idx_deferred_jobs_due ON deferred_jobs (status, run_at, created_at)"
            )
            db.execute(
                "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                (SCHEMA_VERSION, _dt_to_str(utc_now())),
            )
            _logger.info("schema_migrated", from_version=current, to_version=SCHEMA_VERSION, path=str(self.db_path))

    def reset(self) -> None:
        with self.connect() as db:
            db.execute("DELETE FROM sheets")
            db.execute("DELETE FROM deferred_jobs")


class SQLiteSheetRepository:
    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    @staticmethod
    def _row_to_sheet(row: sqlite3.Row) -> Sheet:
        return Sheet(
            id=row["id"],
            title=row["title"],
            status=SheetStatus(row["status"]),
            expires_at=_str_to_dt(row["expires_at"]),
            first_signer=Signer(
                full_name=row["first_signer_name"],
                email=row["first_signer_email"],
                tax_id=row["first_signer_tax_id"],
            ),
            second_signer=Signer(
                full_name=row["second_signer_name"],
                email=row["second_signer_email"],
                tax_id=row["second_signer_tax_id"],
            ),
            first_signer_signed_at=_str_to_dt(row["first_signer_signed_at"]),
            second_signer_signed_at=_str_to_dt(row["second_signer_signed_at"]),
            provider_document_id=row["provider_document_id"],
            sign_pending=bool(row["sign_pending"]),
            last_signing_error=row["last_signing_error"],
            last_checked_at=_str_to_dt(row["last_checked_at"]),
            document_path=row["document_path"],
            created_at=_str_to_dt(row["created_at"]),
        )

    def add(self, sheet: Sheet) -> Sheet:
        values = (
            sheet.id,
            sheet.title,
            sheet.status.value,
            _dt_to_str(sheet.expires_at),
            sheet.first_signer.full_name,
            sheet.first_signer.email,
            sheet.first_signer.tax_id,
            sheet.second_signer.full_name,
            sheet.second_signer.email,
            sheet.second_signer.tax_id,
            _dt_to_str(sheet.first_signer_signed_at),
            _dt_to_str(sheet.second_signer_signed_at),
            sheet.provider_document_id,
            int(sheet.sign_pending),
            sheet.last_signing_error,
            _dt_to_str(sheet.last_checked_at),
            sheet.document_path,
            _dt_to_str(sheet.created_at),
        )
        placeholders = ", ".join("?" for _ in SHEET_COLUMNS)
        try:
            with self._store.connect() as db:
                db.execute(f"INSERT INTO sheets ({', '.join(SHEET_COLUMNS)}) VALUES ({placeholders})", values)
        except sqlite3.IntegrityError as exc:
            raise ValueError(str(exc)) from exc
        return sheet

    def get(self, sheet_id: str) -> Sheet | None:
        with self._store.connect() as db:
            row = db.execute("SELECT * FROM sheets WHERE id = ?", (sheet_id,)).fetchone()
        return self._row_to_sheet(row) if row else None

    def find_by_document_id(self, document_id: str) -> Sheet | None:
        with self._store.connect() as db:
            row = db.execute("SELECT * FROM sheets WHERE provider_document_id = ?", (document_id,)).fetchone()
        return self._row_to_sheet(row) if row else None

    def list_sheets(self) -> list[Sheet]:
        with self._store.connect() as db:
            rows = db.execute("SELECT * FROM sheets ORDER BY created_at DESC").fetchall()
        return [self._row_to_sheet(row) for row in rows]

    def update(self, sheet_id: str, values: Mapping[str, Any]) -> bool:
        return self.update_if(sheet_id, values)

    def update_if(
        self,
        sheet_id: str,
        values: Mapping[str, Any],
        *,
        status_in: Collection[SheetStatus] | None = None,
        null_fields: Collection[str] = (),
    ) -> bool:
        if not values:
            return False
        check_sheet_fields(values.keys())
        check_sheet_fields(null_fields)

        assignments = ", ".join(f"{name} = ?" for name in values)
        params: list[Any] = [_to_column(value) for value in values.values()]
        clauses = ["id = ?"]
        params.append(sheet_id)
        if status_in is not None:
            statuses = [SheetStatus(status).value for status in status_in]
            if not statuses:
                return False
            clauses.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(statuses)
        for name in null_fields:
            clauses.append(f"{name} IS NULL")

        try:
            with self._store.connect() as db:
                cursor = db.execute(f"UPDATE sheets SET {assignments} WHERE {' AND '.join(clauses)}", params)
                return cursor.rowcount == 1
        except sqlite3.IntegrityError as exc:
            raise ValueError(str(exc)) from exc

    def reset(self) -> None:
        self._store.reset()


class SQLiteDeferredJobRepository:
    def __init__(self, store: SQLiteStore) -> None:
        self._store = store

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> DeferredJob:
        return DeferredJob(
            id=row["id"],
            type=row["type"],
            payload=json.loads(row["payload"] or "{}"),
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            last_error=row["last_error"],
            run_at=_str_to_dt(row["run_at"]),
            created_at=_str_to_dt(row["created_at"]),
            updated_at=_str_to_dt(row["updated_at"]),
        )

    def add(self, job: DeferredJob) -> DeferredJob:
        with self._store.connect() as db:
            db.execute(
                f"INSERT INTO deferred_jobs ({', '.join(JOB_COLUMNS)}) VALUES ({', '.join('?' for _ in JOB_COLUMNS)})",
                (
                    job.id,
                    job.type,
                    json.dumps(job.payload),
                    job.status.value,
                    job.attempts,
                    job.last_error,
                    _dt_to_str(job.run_at),
                    _dt_to_str(job.created_at),
                    _dt_to_str(job.updated_at),
                ),
            )
        return job

    def get(self, job_id: str) -> DeferredJob | None:
        with self._store.connect() as db:
            row = db.execute("SELECT * FROM deferred_jobs WHERE id = ?", (job_id,)).fetchone()
        return self._row_to_job(row) if row else None

    def list_due(self, now: datetime, limit: int) -> list[DeferredJob]:
        with self._store.connect() as db:
            rows = db.execute(
                """
                SELECT * FROM deferred_jobs
                WHERE status = ? AND run_at <= ?
                ORDER BY run_at ASC, created_at ASC
                LIMIT ?
                """,
                (JobStatus.PENDING.value, _dt_to_str(now), limit),
            ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def list_jobs(self, status: JobStatus | None = None) -> list[DeferredJob]:
        with self._store.connect() as db:
            if status is None:
                rows = db.execute("SELECT * FROM deferred_jobs ORDER BY created_at ASC").fetchall()
            else:
                rows = db.execute(
                    "SELECT * FROM deferred_jobs WHERE status = ? ORDER BY created_at ASC",
                    (status.value,),
                ).fetchall()
        return [self._row_to_job(row) for row in rows]

    def claim(self, job_id: str) -> bool:
        with self._store.connect() as db:
            cursor = db.execute(
                "UPDATE deferred_jobs SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
                (JobStatus.PROCESSING.value, _dt_to_str(utc_now()), job_id, JobStatus.PENDING.value),
            )
            return cursor.rowcount == 1

    def release_stale(self, claimed_before: datetime) -> int:
        with self._store.connect() as db:
            cursor = db.execute(
                "UPDATE deferred_jobs SET status = ?, updated_at = ? WHERE status = ? AND updated_at < ?",
                (
                    JobStatus.PENDING.value,
                    _dt_to_str(utc_now()),
                    JobStatus.PROCESSING.value,
                    _dt_to_str(claimed_before),
                ),
            )
            return cursor.rowcount

    def finish(
        self,
        job_id: str,
        *,
        status: JobStatus,
        attempts: int,
        last_error: str | None,
        run_at: datetime,
    ) -> None:
        with self._store.connect() as db:
            db.execute(
                """
                UPDATE deferred_jobs
                SET status = ?, attempts = ?, last_error = ?, run_at = ?, updated_at = ?
                WHERE id = ?
                """,
                (status.value, attempts, last_error, _dt_to_str(run_at), _dt_to_str(utc_now()), job_id),
            )

    def reset(self) -> None:
        self._store.reset()


__all__ = ["SQLiteDeferredJobRepository", "SQLiteSheetRepository", "SQLiteStore"]
