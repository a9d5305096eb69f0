"""PDF text extraction.

Uses PyMuPDF (fitz) for fast PDF text extraction. Only the first pages are
read; the extracted text is bounded by the caller anyway.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Iterator

import fitz  # PyMuPDF

from filescout.errors import DecodeError
from filescout.utils.text import normalize_whitespace, truncate_chars

LOGGER = logging.getLogger(__name__)


def iter_text_parts(path: Path, *, max_pages: int = 25) -> Iterator[str]:
    """Yield text content from the first ``max_pages`` pages of a PDF."""
    try:
        doc = fitz.open(path)
    except Exception as exc:
        raise DecodeError(f"Failed to open PDF: {exc}", path) from exc

    try:
        for index in range(min(len(doc), max_pages)):
            try:
                text = doc[index].get_text() or ""
            except Exception as exc:  # pragma: no cover - corrupt page
                LOGGER.warning("Failed to read page %s in %s: %s", index, path, exc)
                continue
            normalized = normalize_whitespace(text.splitlines())
            if normalized:
                yield normalized
    finally:
        doc.close()


def read_pdf_text(path: Path, *, max_chars: int, max_pages: int = 25) -> str:
    """Return up to ``max_chars`` characters of text from a PDF.

    Raises DecodeError when the file cannot be parsed or holds no text layer.
    """
    parts = []
    produced = 0
    for part in iter_text_parts(path, max_pages=max_pages):
        parts.append(part)
        produced += len(part) + 1
        if produced >= max_chars:
            break
    text = "\n".join(parts)
    if not text.strip():
        raise DecodeError("No text content found in PDF", path)
    return truncate_chars(text, max_chars)


def get_pdf_metadata(path: Path) -> Dict[str, str]:
    """Extract title and page count from a PDF using PyMuPDF."""
    try:
        doc = fitz.open(path)
    except Exception as exc:
        raise DecodeError(f"Failed to open PDF: {exc}", path) from exc
    try:
        metadata = doc.metadata or {}
        return {
            "title": metadata.get("title") or path.stem,
            "page_count": str(len(doc)),
        }
    finally:
        doc.close()
