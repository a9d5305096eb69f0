"""Tests for data models."""

from __future__ import annotations

import dataclasses
from pathlib import Path

import pytest

from filescout.models import (
    Category,
    FileRecord,
    IndexStats,
    ScanDecision,
    ScanProgress,
    ScanStage,
    SearchFilters,
    SearchResult,
)


def _record() -> FileRecord:
    return FileRecord(
        path=Path("/d/a.txt"),
        name="a.txt",
        extension="txt",
        category=Category.DOCUMENT,
        text="hello",
        content_processed=True,
        decision=ScanDecision.FULL_CONTENT,
    )


class TestSearchResult:
    """Tests for SearchResult.match_type."""

    def test_hybrid(self) -> None:
        assert SearchResult(_record(), 0.9, vector_score=0.8, text_score=0.5).match_type == "hybrid"

    def test_vector_only(self) -> None:
        assert SearchResult(_record(), 0.8, vector_score=0.8).match_type == "vector"

    def test_text_only(self) -> None:
        assert SearchResult(_record(), 0.5, text_score=0.5).match_type == "text"


class TestIndexStats:
    """Tests for IndexStats."""

    def test_increment(self) -> None:
        stats = IndexStats()
        stats.increment("inserted", Path("/a"))
        stats.increment("updated", Path("/b"))
        stats.increment("unchanged", Path("/c"))
        stats.increment("failed", Path("/d"))
        assert (stats.inserted, stats.updated, stats.unchanged, stats.failed) == (1, 1, 1, 1)
        assert stats.processed_files == [Path("/a"), Path("/b"), Path("/c"), Path("/d")]


def test_enums_use_string_values() -> None:
    assert Category("spreadsheet") is Category.SPREADSHEET
    assert ScanDecision.METADATA_ONLY.value == "metadata_only"


def test_progress_events_are_immutable() -> None:
    event = ScanProgress(ScanStage.SCANNING, 1)
    with pytest.raises(dataclasses.FrozenInstanceError):
        event.current = 2  # type: ignore[misc]


def test_record_defaults() -> None:
    record = _record()
    assert record.id is None
    assert record.needs_retry is False
    assert record.pending_text is None
    assert record.folders == ()
    assert record.importance == 0.0


class TestSearchFilters:
    """Tests for SearchFilters.build."""

    def test_extension_is_normalized(self) -> None:
        assert SearchFilters.build(extension=" .PDF ").extension == "pdf"

    def test_blank_values_mean_no_filter(self) -> None:
        filters = SearchFilters.build(extension="  ", path_prefix="")
        assert filters.is_empty

    def test_prefix_expands_home(self) -> None:
        filters = SearchFilters.build(path_prefix="~/work")
        assert filters.path_prefix == Path.home() / "work"
        assert not filters.is_empty

    def test_min_score_alone_is_a_filter(self) -> None:
        assert not SearchFilters.build(min_score=0.0).is_empty
