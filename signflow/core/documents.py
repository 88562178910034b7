from __future__ import annotations

import os
import shutil
from pathlib import Path
from typing import BinaryIO

SHEET_PDF_NAME = "sheet.pdf"


def _base_root(root: Path | None = None) -> Path:
    if root is not None:
        return Path(root)
    env_root = os.getenv("SIGNFLOW_DOCUMENTS_ROOT")
    if env_root:
        return Path(env_root).expanduser().resolve()
    return Path(__file__).resolve().parents[2] / "documents"


def ensure_sheet_root(sheet_id: str, root: Path | None = None) -> Path:
    """Ensure the sheet's document folder exists and return it."""

    folder = _base_root(root) / sheet_id
    folder.mkdir(parents=True, exist_ok=True)
    return folder


def save_sheet_pdf(sheet_id: str, source: BinaryIO, root: Path | None = None) -> Path:
    """Persist the uploaded PDF for a sheet and return its path."""

    target = ensure_sheet_root(sheet_id, root) / SHEET_PDF_NAME
    with target.open("wb") as buffer:
        shutil.copyfileobj(source, buffer)
    return target


def load_sheet_pdf(path: str | Path) -> bytes:
    """Read the stored PDF bytes; the content is opaque to this service."""

    return Path(path).read_bytes()
