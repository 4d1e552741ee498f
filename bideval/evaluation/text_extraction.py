#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Best-effort text extraction for proposal documents.

Reads the files attached to a proposal (proposal_files table) and returns
their concatenated text. PDF via pypdf, DOCX via python-docx, anything else
read as UTF-8 text. The orchestrator calls this only when a proposal has
little or no extracted text, and treats any failure as non-fatal.
"""

import logging
import os
import sqlite3
from pathlib import Path

logger = logging.getLogger("bideval.evaluation.text_extraction")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
UPLOAD_DIR = Path(os.environ.get("BIDEVAL_UPLOAD_DIR", str(BASE_DIR / "data" / "uploads")))


def _extract_pdf(path: Path) -> str:
    from pypdf import PdfReader
    reader = PdfReader(str(path))
    return "\n\n".join((page.extract_text() or "") for page in reader.pages)


def _extract_docx(path: Path) -> str:
    from docx import Document
    doc = Document(str(path))
    return "\n\n".join(p.text for p in doc.paragraphs if p.text.strip())


def extract_text(file_path: Path, mime_type: str = "") -> str:
    """Extract raw text from a single document."""
    suffix = file_path.suffix.lower()
    mime_type = mime_type or ""
    if suffix == ".pdf" or "pdf" in mime_type:
        return _extract_pdf(file_path)
    if suffix == ".docx" or "wordprocessingml" in mime_type:
        return _extract_docx(file_path)
    return file_path.read_text(encoding="utf-8", errors="replace")


class FileTextExtractor:
    """Callable collaborator: proposal_id -> extracted text ('' when nothing found)."""

    def __init__(self, db_path, upload_dir: Path = None):
        self._db_path = str(db_path)
        self._upload_dir = Path(upload_dir) if upload_dir else UPLOAD_DIR

    def _resolve(self, file_path: str) -> Path:
        path = Path(file_path)
        return path if path.is_absolute() else self._upload_dir / path

    def __call__(self, proposal_id: str) -> str:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        try:
            rows = conn.execute(
                "SELECT file_name, file_path, mime_type FROM proposal_files "
                "WHERE proposal_id = ? ORDER BY uploaded_at, id",
                (proposal_id,),
            ).fetchall()
        finally:
            conn.close()

        texts = []
        for row in rows:
            path = self._resolve(row["file_path"])
            if not path.exists():
                logger.warning("Proposal %s file missing on disk: %s", proposal_id, path)
                continue
            text = extract_text(path, row["mime_type"] or "").strip()
            if text:
                texts.append(text)
        logger.info("Extracted %d file(s) for proposal %s", len(texts), proposal_id)
        return "\n\n".join(texts)
