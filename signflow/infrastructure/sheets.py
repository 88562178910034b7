"""Infrastructure layer for sheet persistence."""
from __future__ import annotations

import threading
from collections.abc import Collection, Mapping
from dataclasses import replace
from typing import Any, Protocol

from signflow.domain import Sheet, SheetStatus
from signflow.domain.sheets import SHEET_MUTABLE_FIELDS


class SheetRepository(Protocol):
    """Persistence contract for sheets.

    ``update_if`` is the compare-and-swap primitive every signing transition
    relies on: it applies ``values`` only if the row still matches the guard
    and reports whether it did. An empty ``values`` mapping writes nothing and
    reports ``False``.
    """

    def add(self, sheet: Sheet) -> Sheet: ...

    def get(self, sheet_id: str) -> Sheet | None: ...

    def find_by_document_id(self, document_id: str) -> Sheet | None: ...

    def list_sheets(self) -> list[Sheet]: ...

    def update(self, sheet_id: str, values: Mapping[str, Any]) -> bool: ...

    def update_if(
        self,
        sheet_id: str,
        values: Mapping[str, Any],
        *,
        status_in: Collection[SheetStatus] | None = None,
        null_fields: Collection[str] = (),
    ) -> bool: ...

    def reset(self) -> None: ...


def check_sheet_fields(names: Collection[str]) -> None:
    unknown = set(names) - SHEET_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported sheet fields: {sorted(unknown)}")


class InMemorySheetRepository:
    """In-memory repository for fast iteration and tests.

    Each public method holds ``_lock`` for its whole body, which gives every
    single-row write the same atomicity a database row update has. Callers
    always receive copies, never the stored objects.
    """

    def __init__(self) -> None:
        self._sheets: dict[str, Sheet] = {}
        self._lock = threading.Lock()

    def add(self, sheet: Sheet) -> Sheet:
        with self._lock:
            if sheet.id in self._sheets:
                raise ValueError(f"sheet {sheet.id} already exists")
            if sheet.provider_document_id and self._find(sheet.provider_document_id):
                raise ValueError(f"document {sheet.provider_document_id} is already bound to a sheet")
            self._sheets[sheet.id] = replace(sheet)
            return replace(sheet)

    def get(self, sheet_id: str) -> Sheet | None:
        with self._lock:
            sheet = self._sheets.get(sheet_id)
            return replace(sheet) if sheet else None

    def _find(self, document_id: str) -> Sheet | None:
        for sheet in self._sheets.values():
            if sheet.provider_document_id == document_id:
                return sheet
        return None

    def find_by_document_id(self, document_id: str) -> Sheet | None:
        with self._lock:
            sheet = self._find(document_id)
            return replace(sheet) if sheet else None

    def list_sheets(self) -> list[Sheet]:
        with self._lock:
            sheets = [replace(sheet) for sheet in self._sheets.values()]
        sheets.sort(key=lambda item: item.created_at, reverse=True)
        return sheets

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
        with self._lock:
            sheet = self._sheets.get(sheet_id)
            if sheet is None:
                return False
            if status_in is not None and sheet.status not in status_in:
                return False
            if any(getattr(sheet, name) is not None for name in null_fields):
                return False
            document_id = values.get("provider_document_id")
            if document_id is not None:
                owner = self._find(document_id)
                if owner is not None and owner.id != sheet_id:
                    raise ValueError(f"document {document_id} is already bound to a sheet")
            for name, value in values.items():
                setattr(sheet, name, value)
            return True

    def reset(self) -> None:
        with self._lock:
            self._sheets.clear()
