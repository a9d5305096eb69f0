"""Tests for hybrid search."""

from __future__ import annotations

import itertools
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

from filescout.errors import EmbeddingUnavailable
from filescout.index.indexer import Indexer
from filescout.index.search import HybridSearcher, fuse_scores
from filescout.models import Category, FileRecord, ScanDecision, SearchFilters


@pytest.fixture
def searcher(client, store) -> HybridSearcher:
    hybrid = HybridSearcher(client, store)
    yield hybrid
    hybrid.close()


def _index(indexer: Indexer, make_candidate, path: Path, body: bytes, decision: ScanDecision):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(body)
    indexer.index_candidate(make_candidate(path, decision))


def _record(file_id: int, modified_at: float, text: str = "text") -> FileRecord:
    return FileRecord(
        id=file_id,
        path=Path(f"/d/{file_id}.txt"),
        name=f"{file_id}.txt",
        extension="txt",
        category=Category.DOCUMENT,
        text=text,
        content_processed=True,
        decision=ScanDecision.FULL_CONTENT,
        modified_at=modified_at,
    )


class TestFuseScores:
    """Tests for score fusion."""

    def test_never_below_either_signal(self) -> None:
        grid = [0.0, 0.1, 0.35, 0.5, 0.8, 1.0]
        for v, t in itertools.product(grid, grid):
            fused = fuse_scores(v, t)
            assert fused >= max(v, t) - 1e-12
            assert fused <= 1.0

    def test_single_signal_passes_through(self) -> None:
        assert fuse_scores(0.42, None) == pytest.approx(0.42)
        assert fuse_scores(None, 0.3) == pytest.approx(0.3)

    def test_monotonic_in_each_signal(self) -> None:
        assert fuse_scores(0.6, 0.2) > fuse_scores(0.5, 0.2)
        assert fuse_scores(0.5, 0.3) > fuse_scores(0.5, 0.2)

    def test_negative_cosine_counts_as_zero(self) -> None:
        assert fuse_scores(-0.5, 0.2) == pytest.approx(0.2)


class TestHybridSearch:
    """End-to-end searches over a real store."""

    def test_empty_query_does_nothing(self, backend) -> None:
        store = MagicMock()
        client = MagicMock()
        hybrid = HybridSearcher(client, store)

        assert hybrid.search("") == []
        assert hybrid.search("   ") == []

        client.embed.assert_not_called()
        store.text_search.assert_not_called()
        hybrid.close()

    def test_document_with_both_signals_ranks_first(
        self, client, store, config, make_candidate, searcher, tmp_path: Path
    ) -> None:
        indexer = Indexer(client, store, config)
        report = tmp_path / "work" / "q3_report.md"
        sheet = tmp_path / "drive" / "Q3_marketing_budget.xlsx"
        photos = tmp_path / "drive" / "holiday_photos.jpg"
        _index(
            indexer,
            make_candidate,
            report,
            b"Q3 marketing budget for the campaign",
            ScanDecision.FULL_CONTENT,
        )
        _index(indexer, make_candidate, sheet, b"PK\x03\x04", ScanDecision.METADATA_ONLY)
        _index(indexer, make_candidate, photos, b"\xff\xd8", ScanDecision.METADATA_ONLY)

        results = searcher.search("Q3 marketing budget", limit=10)

        names = [r.record.name for r in results]
        assert names[0] == "q3_report.md"
        assert "Q3_marketing_budget.xlsx" in names
        assert names.index("Q3_marketing_budget.xlsx") < names.index("holiday_photos.jpg")
        top = results[0]
        assert top.match_type == "hybrid"
        assert "budget" in top.snippet
        sheet_result = results[names.index("Q3_marketing_budget.xlsx")]
        assert sheet_result.snippet.startswith("filename: Q3_marketing_budget.xlsx")
        scores = [r.score for r in results]
        assert scores == sorted(scores, reverse=True)

    def test_falls_back_to_text_when_embedding_fails(
        self, client, store, config, backend, make_candidate, searcher, tmp_path: Path
    ) -> None:
        indexer = Indexer(client, store, config)
        _index(
            indexer,
            make_candidate,
            tmp_path / "plan.txt",
            b"annual budget plan",
            ScanDecision.FULL_CONTENT,
        )
        backend.fail = True

        results = searcher.search("budget")

        assert [r.record.name for r in results] == ["plan.txt"]
        assert results[0].vector_score is None
        assert results[0].match_type == "text"

    def test_limit_and_unique_results(
        self, client, store, config, make_candidate, searcher, tmp_path: Path
    ) -> None:
        indexer = Indexer(client, store, config)
        for index in range(6):
            _index(
                indexer,
                make_candidate,
                tmp_path / f"budget{index}.txt",
                f"budget item {index}".encode(),
                ScanDecision.FULL_CONTENT,
            )

        results = searcher.search("budget item", limit=3)

        assert len(results) == 3
        ids = [r.record.id for r in results]
        assert len(ids) == len(set(ids))

    def test_filters_narrow_both_lookups(
        self, client, store, config, make_candidate, searcher, tmp_path: Path
    ) -> None:
        indexer = Indexer(client, store, config)
        files = {
            tmp_path / "a" / "budget.md": b"budget plan",
            tmp_path / "a" / "budget.txt": b"budget notes",
            tmp_path / "b" / "budget.txt": b"old budget",
        }
        for path, body in files.items():
            _index(indexer, make_candidate, path, body, ScanDecision.FULL_CONTENT)

        unfiltered = searcher.search("budget")
        by_ext = searcher.search("budget", filters=SearchFilters.build(extension=".TXT"))
        by_folder = searcher.search(
            "budget", filters=SearchFilters.build(path_prefix=tmp_path / "a")
        )

        assert {r.record.path for r in unfiltered} == set(files)
        assert {r.record.path for r in by_ext} == {
            tmp_path / "a" / "budget.txt",
            tmp_path / "b" / "budget.txt",
        }
        assert {r.record.path for r in by_folder} == {
            tmp_path / "a" / "budget.md",
            tmp_path / "a" / "budget.txt",
        }

    def test_min_score_excludes_low_importance(
        self, client, store, config, make_candidate, searcher, tmp_path: Path
    ) -> None:
        indexer = Indexer(client, store, config, included_paths=[tmp_path / "vip"])
        for folder in ("vip", "logs"):
            _index(
                indexer,
                make_candidate,
                tmp_path / folder / "plan.txt",
                b"budget",
                ScanDecision.FULL_CONTENT,
            )

        results = searcher.search("budget", filters=SearchFilters.build(min_score=5.0))

        assert [r.record.path.parent.name for r in results] == ["vip"]

class TestRankingWithMocks:
    """Ranking details checked against a mocked store."""

    def _searcher(self, vector_hits, text_hits, records):
        client = MagicMock()
        client.embed.return_value = np.ones(4, dtype="float32") / 2
        store = MagicMock()
        store.vector_search.return_value = vector_hits
        store.text_search.return_value = text_hits
        store.get_many.return_value = {record.id: record for record in records}
        return HybridSearcher(client, store), store

    def test_candidate_pool_is_twice_the_limit(self) -> None:
        hybrid, store = self._searcher([], [], [])
        hybrid.search("budget", limit=3)
        store.vector_search.assert_called_once()
        assert store.vector_search.call_args.kwargs["top_k"] == 6
        assert store.text_search.call_args.kwargs["top_k"] == 6
        hybrid.close()

    def test_filters_reach_both_lookups(self) -> None:
        hybrid, store = self._searcher([], [], [])
        filters = SearchFilters.build(extension="md")
        hybrid.search("budget", filters=filters)
        assert store.vector_search.call_args.kwargs["filters"] is filters
        assert store.text_search.call_args.kwargs["filters"] is filters
        hybrid.close()

    def test_ties_prefer_recent_files(self) -> None:
        hybrid, _ = self._searcher(
            [(1, 0.5), (2, 0.5)], [], [_record(1, 100.0), _record(2, 200.0)]
        )
        results = hybrid.search("budget")
        assert [r.record.id for r in results] == [2, 1]
        hybrid.close()

    def test_text_rank_scores(self) -> None:
        hybrid, _ = self._searcher(
            [], [(1, 9.0), (2, 3.0)], [_record(1, 0.0), _record(2, 0.0)]
        )
        results = hybrid.search("budget")
        assert results[0].text_score == pytest.approx(0.5)
        assert results[1].text_score == pytest.approx(0.5 * 10 / 11)
        hybrid.close()

    def test_record_deleted_between_lookups_is_dropped(self) -> None:
        hybrid, _ = self._searcher([(1, 0.9), (2, 0.8)], [], [_record(2, 0.0)])
        assert [r.record.id for r in hybrid.search("budget")] == [2]
        hybrid.close()

    def test_query_embedding_error_uses_text_only(self) -> None:
        hybrid, store = self._searcher([], [(1, 1.0)], [_record(1, 0.0)])
        hybrid.client.embed.side_effect = EmbeddingUnavailable("down")
        results = hybrid.search("budget")
        store.vector_search.assert_not_called()
        assert [r.match_type for r in results] == ["text"]
        hybrid.close()

    def test_snippet_centers_on_query_terms(self) -> None:
        text = "filler " * 100 + "the budget line " + "filler " * 100
        hybrid, _ = self._searcher([(1, 0.9)], [], [_record(1, 0.0, text)])
        snippet = hybrid.search("budget")[0].snippet
        assert "budget" in snippet
        assert len(snippet) <= 160 + 6
        hybrid.close()
