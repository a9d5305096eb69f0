"""Tests for PDF text extraction."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import fitz
import pytest

from filescout.errors import DecodeError
from filescout.ingestion.pdf_loader import get_pdf_metadata, iter_text_parts, read_pdf_text


def _make_pdf(path: Path, pages: list[str]) -> Path:
    doc = fitz.open()
    for text in pages:
        page = doc.new_page()
        if text:
            page.insert_text((72, 72), text)
    doc.save(str(path))
    doc.close()
    return path


class TestReadPdfText:
    """Tests for read_pdf_text function."""

    def test_reads_page_text(self, tmp_path: Path) -> None:
        pdf = _make_pdf(tmp_path / "report.pdf", ["Hello PDF world"])
        assert "Hello PDF world" in read_pdf_text(pdf, max_chars=100)

    def test_respects_max_chars(self, tmp_path: Path) -> None:
        pdf = _make_pdf(tmp_path / "report.pdf", ["A" * 40, "B" * 40])
        assert len(read_pdf_text(pdf, max_chars=50)) == 50

    def test_respects_max_pages(self, tmp_path: Path) -> None:
        pdf = _make_pdf(tmp_path / "report.pdf", ["Page one", "Page two", "Page three"])
        text = read_pdf_text(pdf, max_chars=1000, max_pages=2)
        assert "Page two" in text
        assert "Page three" not in text

    def test_corrupt_file_raises_decode_error(self, tmp_path: Path) -> None:
        bad = tmp_path / "bad.pdf"
        bad.write_bytes(b"this is not a pdf")
        with pytest.raises(DecodeError):
            read_pdf_text(bad, max_chars=100)

    def test_pdf_without_text_layer(self, tmp_path: Path) -> None:
        pdf = _make_pdf(tmp_path / "scan.pdf", [""])
        with pytest.raises(DecodeError, match="No text"):
            read_pdf_text(pdf, max_chars=100)


class TestIterTextParts:
    """Tests for iter_text_parts with a mocked document."""

    @patch("filescout.ingestion.pdf_loader.fitz.open")
    def test_normalizes_and_skips_blank_pages(self, mock_open: MagicMock) -> None:
        pages = [MagicMock(), MagicMock()]
        pages[0].get_text.return_value = "  line one \n\n line two  "
        pages[1].get_text.return_value = "   "
        doc = MagicMock()
        doc.__len__.return_value = 2
        doc.__getitem__.side_effect = lambda index: pages[index]
        mock_open.return_value = doc

        parts = list(iter_text_parts(Path("x.pdf")))

        assert parts == ["line one\nline two"]
        doc.close.assert_called_once()


def test_get_pdf_metadata(tmp_path: Path) -> None:
    pdf = _make_pdf(tmp_path / "slides.pdf", ["One", "Two", "Three"])
    metadata = get_pdf_metadata(pdf)
    assert metadata["page_count"] == "3"
    assert metadata["title"] == "slides"
