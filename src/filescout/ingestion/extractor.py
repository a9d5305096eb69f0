"""Category-aware text extraction.

Produces the bounded text payload that feeds both the full-text index and the
embedding input. Oversized or undecodable files are demoted to a synthesized
metadata string instead of failing; unreadable files raise FileUnreadable.
"""

from __future__ import annotations

import csv
from pathlib import Path
from typing import Iterable, List

from docx import Document

from filescout.errors import (
    DecodeError,
    FileTooLarge,
    FileUnreadable,
    handle_error,
)
from filescout.ingestion.categorizer import ContentPolicy, infer_language, policy_for
from filescout.ingestion.pdf_loader import get_pdf_metadata, read_pdf_text
from filescout.models import Category, ExtractedText, ScanDecision
from filescout.utils.files import drive_label, folder_tokens
from filescout.utils.text import read_text_prefix, truncate_chars

_SNIFF_BYTES = 8192
# Document formats with no reader here; they are indexed by metadata.
_UNREADABLE_DOCUMENTS = frozenset({"doc", "odt", "rtf"})
_UNREADABLE_SHEETS = frozenset({"xls", "xlsx", "ods"})


def build_metadata_text(
    path: Path, category: Category, mounts: Iterable[Path] = ()
) -> str:
    """Synthesize the searchable string for a file whose bytes are not read."""
    path = Path(path)
    folders = folder_tokens(path)
    return (
        f"filename: {path.name} stem: {path.stem} "
        f"extension: {path.suffix.lower().lstrip('.')} path: {path} "
        f"parent_folder: {folders[-1] if folders else ''} "
        f"folder_hierarchy: {' > '.join(folders)} "
        f"drive: {drive_label(path, mounts)} category: {category.value}"
    )


def build_code_text(path: Path) -> str:
    path = Path(path)
    return (
        f"code_file: {path.name} language: {infer_language(path.suffix)} "
        f"filename: {path.name} stem: {path.stem}"
    )


def _open_binary(path: Path):
    try:
        return path.open("rb")
    except OSError as exc:
        raise FileUnreadable(f"Cannot open: {exc}", path) from exc


def _check_size(path: Path, max_file_size: int) -> None:
    try:
        size = path.stat().st_size
    except OSError as exc:
        raise FileUnreadable(f"Cannot stat: {exc}", path) from exc
    if size > max_file_size:
        raise FileTooLarge(f"{size} bytes exceeds {max_file_size}", path)


def read_text_file(path: Path, max_chars: int) -> str:
    """Decode the head of a text file, rejecting binary content."""
    with _open_binary(path) as handle:
        try:
            head = handle.read(_SNIFF_BYTES)
            if b"\x00" in head:
                raise DecodeError("NUL bytes in text file", path)
            handle.seek(0)
            return read_text_prefix(handle, max_chars)
        except OSError as exc:
            raise FileUnreadable(f"Read failed: {exc}", path) from exc


def read_docx_text(path: Path, max_chars: int) -> str:
    try:
        doc = Document(str(path))
    except Exception as exc:
        raise DecodeError(f"DOCX extraction failed: {exc}", path) from exc
    parts: List[str] = []
    produced = 0
    for paragraph in doc.paragraphs:
        if paragraph.text.strip():
            parts.append(paragraph.text.strip())
            produced += len(paragraph.text) + 1
            if produced >= max_chars:
                break
    return truncate_chars("\n".join(parts), max_chars)


def read_table_text(path: Path, max_chars: int, max_rows: int) -> str:
    """Render a header row plus the first data rows as ``header: value`` lines."""
    delimiter = "\t" if path.suffix.lower() == ".tsv" else ","
    with _open_binary(path) as handle:
        if b"\x00" in handle.read(_SNIFF_BYTES):
            raise DecodeError("NUL bytes in table file", path)
    lines: List[str] = []
    try:
        with path.open("r", encoding="utf-8-sig", errors="replace", newline="") as handle:
            reader = csv.reader(handle, delimiter=delimiter)
            headers = next(reader, [])
            for index, row in enumerate(reader):
                if index >= max_rows:
                    lines.append(f"[truncated after {max_rows} rows]")
                    break
                if headers and len(headers) == len(row):
                    pairs = zip(headers, row)
                else:
                    pairs = ((f"col{i + 1}", value) for i, value in enumerate(row))
                lines.append(" | ".join(f"{key}: {value}" for key, value in pairs))
            if not lines and headers:
                lines.append(" | ".join(headers))
    except csv.Error as exc:
        raise DecodeError(f"Malformed table: {exc}", path) from exc
    except OSError as exc:
        raise FileUnreadable(f"Read failed: {exc}", path) from exc
    return truncate_chars("\n".join(lines), max_chars)


def read_pdf_document(path: Path, max_chars: int, max_pages: int) -> str:
    """PDF body text, led by the embedded title when it differs from the filename."""
    text = read_pdf_text(path, max_chars=max_chars, max_pages=max_pages)
    title = get_pdf_metadata(path)["title"].strip()
    if title and title.casefold() != path.stem.casefold():
        text = f"title: {title}\n{text}"
    return truncate_chars(text, max_chars)


def _read_document(path: Path, max_chars: int, max_file_size: int, pdf_max_pages: int) -> str:
    _check_size(path, max_file_size)
    extension = path.suffix.lower().lstrip(".")
    if extension == "pdf":
        return read_pdf_document(path, max_chars, pdf_max_pages)
    if extension == "docx":
        return read_docx_text(path, max_chars)
    if extension in _UNREADABLE_DOCUMENTS:
        raise DecodeError(f"No reader for .{extension} documents", path)
    return read_text_file(path, max_chars)


def extract(
    path: Path,
    category: Category,
    decision: ScanDecision,
    max_chars: int,
    max_file_size: int,
    *,
    spreadsheet_rows: int = 50,
    pdf_max_pages: int = 25,
    mounts: Iterable[Path] = (),
) -> ExtractedText:
    """Produce the text payload for ``path`` according to its decision and category."""
    if decision is ScanDecision.SKIP:
        raise ValueError(f"Skipped files are not extracted: {path}")

    path = Path(path)
    metadata = ExtractedText(
        truncate_chars(build_metadata_text(path, category, mounts), max_chars), False
    )
    if decision is ScanDecision.METADATA_ONLY:
        return metadata

    policy = policy_for(category)
    try:
        if policy is ContentPolicy.METADATA:
            return metadata
        if policy is ContentPolicy.CODE_METADATA:
            return ExtractedText(truncate_chars(build_code_text(path), max_chars), True)
        if policy is ContentPolicy.TABULAR:
            if path.suffix.lower().lstrip(".") in _UNREADABLE_SHEETS:
                raise DecodeError("No reader for binary spreadsheets", path)
            text = read_table_text(path, max_chars, spreadsheet_rows)
        elif policy is ContentPolicy.DOCUMENT:
            text = _read_document(path, max_chars, max_file_size, pdf_max_pages)
        else:
            _check_size(path, max_file_size)
            text = read_text_file(path, max_chars)
    except (FileTooLarge, DecodeError) as exc:
        handle_error(exc, path, "extract")
        metadata.demoted_reason = exc.kind
        return metadata

    if not text.strip():
        metadata.demoted_reason = "empty"
        return metadata
    return ExtractedText(text, True)
