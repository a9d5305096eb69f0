"""Hybrid search: vector similarity fused with full-text relevance.

Fusion treats each signal as a probability-like score in [0, 1]:

    v = max(cosine, 0) * vector_weight
    t = text_weight * k / (k + rank)        rank is 0 for the best text hit
    fused = 1 - (1 - v) * (1 - t)

The fused score is never below either signal alone and equals the single
signal when the other is absent. Text relevance is rank based because bm25
values are unbounded and unstable on small corpora.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

from filescout.embedding.encoder import EmbeddingClient
from filescout.errors import EmbeddingUnavailable
from filescout.index.storage import SQLiteFileStore
from filescout.models import SearchFilters, SearchResult
from filescout.utils.text import make_snippet, tokenize

LOGGER = logging.getLogger(__name__)

RANK_CONSTANT = 10


def fuse_scores(vector_score: Optional[float], text_score: Optional[float]) -> float:
    """Probabilistic OR of two signals already scaled to [0, 1]."""
    v = min(max(vector_score or 0.0, 0.0), 1.0)
    t = min(max(text_score or 0.0, 0.0), 1.0)
    return 1.0 - (1.0 - v) * (1.0 - t)


class HybridSearcher:
    """High-level API to query the file index."""

    def __init__(
        self,
        client: EmbeddingClient,
        store: SQLiteFileStore,
        *,
        vector_weight: float = 1.0,
        text_weight: float = 0.5,
        snippet_width: int = 160,
    ) -> None:
        self.client = client
        self.store = store
        self.vector_weight = vector_weight
        self.text_weight = text_weight
        self.snippet_width = snippet_width
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="text-search")

    def search(
        self,
        query: str,
        limit: int = 10,
        *,
        filters: SearchFilters | None = None,
    ) -> List[SearchResult]:
        """Return up to ``limit`` results, best first.

        ``filters`` narrows both candidate lookups before they are cut to
        ``2 * limit``. Fusion is unchanged; text ranks count filtered hits only.
        """
        if not query or not query.strip() or limit <= 0:
            return []
        top_k = 2 * limit

        try:
            embedding = self.client.embed(query)
        except EmbeddingUnavailable as exc:
            LOGGER.warning("Query embedding failed, using full-text search only: %s", exc)
            embedding = None

        text_future = self._executor.submit(
            self.store.text_search, query, top_k=top_k, filters=filters
        )
        vector_hits = (
            self.store.vector_search(embedding, top_k=top_k, filters=filters)
            if embedding is not None
            else []
        )
        text_hits = text_future.result()

        vector_scores: Dict[int, float] = {
            file_id: max(score, 0.0) * self.vector_weight for file_id, score in vector_hits
        }
        text_scores: Dict[int, float] = {
            file_id: self.text_weight * RANK_CONSTANT / (RANK_CONSTANT + rank)
            for rank, (file_id, _) in enumerate(text_hits)
        }

        ids = list(dict.fromkeys([*vector_scores, *text_scores]))
        records = self.store.get_many(ids)
        terms = tokenize(query)

        results: List[SearchResult] = []
        for file_id in ids:
            record = records.get(file_id)
            if record is None:
                continue  # deleted between the lookups
            vector_score = vector_scores.get(file_id)
            text_score = text_scores.get(file_id)
            if record.content_processed:
                snippet = make_snippet(record.text, terms, width=self.snippet_width)
            else:
                snippet = record.text
            results.append(
                SearchResult(
                    record=record,
                    score=fuse_scores(vector_score, text_score),
                    vector_score=vector_score,
                    text_score=text_score,
                    snippet=snippet,
                )
            )

        results.sort(key=lambda r: (r.score, r.record.modified_at), reverse=True)
        return results[:limit]

    def close(self) -> None:
        self._executor.shutdown(wait=False)
