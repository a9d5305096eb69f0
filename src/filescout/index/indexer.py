"""File indexing: extraction, embedding and persistence of scan candidates."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path, PurePath
from typing import Iterable, List, Optional, Sequence

import numpy as np

from filescout.config import AppConfig
from filescout.embedding.encoder import EmbeddingClient
from filescout.errors import (
    EmbeddingUnavailable,
    FileScoutError,
    failure_kind,
    handle_error,
)
from filescout.index.storage import SQLiteFileStore
from filescout.ingestion.extractor import build_metadata_text, extract
from filescout.models import (
    ExtractedText,
    FileRecord,
    IndexStats,
    ScanCandidate,
    ScanDecision,
    ScanStage,
)
from filescout.progress import ProgressReporter
from filescout.scan.scoring import importance_score
from filescout.utils.files import drive_label, folder_tokens, split_name, text_sha256
from filescout.utils.text import truncate_chars

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class IndexOutcome:
    """What happened to one candidate."""

    path: Path
    status: str  # inserted, updated, unchanged or failed
    failure: Optional[str] = None
    demoted_reason: Optional[str] = None
    retry_pending: bool = False


@dataclass(slots=True)
class _Pending:
    candidate: ScanCandidate
    record: FileRecord
    existing: Optional[FileRecord]
    extracted: ExtractedText
    vector: Optional[np.ndarray] = None


class Indexer:
    """Coordinates extraction, embedding and persistence for scanned files."""

    def __init__(
        self,
        client: EmbeddingClient,
        store: SQLiteFileStore,
        config: AppConfig | None = None,
        *,
        mounts: Sequence[Path] = (),
        included_paths: Iterable[PurePath] = (),
        reporter: ProgressReporter | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.config = config or AppConfig()
        self.mounts = tuple(mounts)
        self.included_paths = tuple(included_paths)
        self.reporter = reporter or ProgressReporter(None)
        self._processed = 0

    def index_candidate(self, candidate: ScanCandidate) -> str:
        """Index one file and return its status."""
        return self.index_batch([candidate])[0].status

    def index_batch(
        self, candidates: Sequence[ScanCandidate], *, preserve_content: bool = False
    ) -> List[IndexOutcome]:
        """Index a group of candidates, embedding them as one bounded batch.

        With ``preserve_content`` a record written by a full-content pass
        (including one still waiting for its embedding) is only touched, never
        replaced by a metadata-only version.
        """
        outcomes: dict[Path, IndexOutcome] = {}
        pending: List[_Pending] = []

        for candidate in candidates:
            self._processed += 1
            self.reporter.emit(ScanStage.READING, self._processed, 0, str(candidate.path))
            try:
                outcome, item = self._prepare(candidate, preserve_content)
            except FileScoutError as exc:
                handle_error(exc, candidate.path, "index")
                outcome, item = IndexOutcome(candidate.path, "failed", failure_kind(exc)), None
            except OSError as exc:
                handle_error(exc, candidate.path, "index")
                outcome, item = IndexOutcome(candidate.path, "failed", failure_kind(exc)), None
            if outcome is not None:
                outcomes[candidate.path] = outcome
            if item is not None:
                pending.append(item)

        self._embed(pending)

        for item in pending:
            self.reporter.emit(ScanStage.STORING, self._processed, 0, str(item.record.path))
            outcomes[item.candidate.path] = self._store(item)

        return [outcomes[candidate.path] for candidate in candidates]

    def _prepare(
        self, candidate: ScanCandidate, preserve_content: bool
    ) -> tuple[Optional[IndexOutcome], Optional[_Pending]]:
        existing = self.store.get(candidate.path)
        if existing is not None:
            unchanged = (
                existing.modified_at == candidate.modified_at
                and existing.decision == candidate.decision
                and not existing.needs_retry
            )
            # Deferred records keep decision FULL_CONTENT and hold pending_text.
            downgrade = (
                preserve_content
                and (
                    existing.content_processed
                    or existing.decision is ScanDecision.FULL_CONTENT
                )
                and candidate.decision is ScanDecision.METADATA_ONLY
            )
            if unchanged or downgrade:
                self.store.touch(candidate.path)
                return IndexOutcome(candidate.path, "unchanged"), None

        extracted = extract(
            candidate.path,
            candidate.category,
            candidate.decision,
            self.config.max_chars,
            self.config.max_file_size,
            spreadsheet_rows=self.config.spreadsheet_rows,
            pdf_max_pages=self.config.pdf_max_pages,
            mounts=self.mounts,
        )
        name, extension = split_name(candidate.path)
        record = FileRecord(
            path=candidate.path,
            name=name,
            extension=extension,
            category=candidate.category,
            text=extracted.text,
            content_processed=extracted.content_processed,
            decision=candidate.decision,
            folders=folder_tokens(candidate.path),
            drive=drive_label(candidate.path, self.mounts),
            size=candidate.size,
            created_at=candidate.created_at,
            modified_at=candidate.modified_at,
            content_hash=text_sha256(extracted.text),
            importance=importance_score(
                candidate.path,
                candidate.category,
                size=candidate.size,
                modified_at=candidate.modified_at,
                included_paths=self.included_paths,
            ),
        )
        item = _Pending(candidate, record, existing, extracted)
        if (
            existing is not None
            and existing.id is not None
            and not existing.needs_retry
            and existing.content_hash == record.content_hash
        ):
            # Same text as before: keep the stored vector instead of re-embedding.
            item.vector = self.store.get_vector(existing.id)
        return None, item

    def _embed(self, pending: List[_Pending]) -> None:
        todo = [item for item in pending if item.vector is None]
        if not todo:
            return
        self.reporter.emit(ScanStage.EMBEDDING, self._processed, 0, str(todo[0].record.path))
        vectors = self.client.try_embed_batch([item.record.text for item in todo])
        for item, vector in zip(todo, vectors):
            item.vector = vector
            if vector is None:
                self._defer(item.record)

    def _defer(self, record: FileRecord) -> None:
        """Fall back to a metadata-only record that the retry pass picks up."""
        handle_error(
            EmbeddingUnavailable("no vector after retries", record.path), record.path, "index"
        )
        if record.content_processed:
            record.pending_text = record.text
            record.text = truncate_chars(
                build_metadata_text(record.path, record.category, self.mounts),
                self.config.max_chars,
            )
            record.content_processed = False
        record.content_hash = ""
        record.needs_retry = True

    def _store(self, item: _Pending) -> IndexOutcome:
        record = item.record
        try:
            status = self.store.upsert(record, item.vector)
        except FileScoutError as exc:
            handle_error(exc, record.path, "store")
            return IndexOutcome(record.path, "failed", failure_kind(exc))
        return IndexOutcome(
            record.path,
            status,
            demoted_reason=item.extracted.demoted_reason,
            retry_pending=record.needs_retry,
        )

    def retry_pending(self, *, limit: int | None = None) -> IndexStats:
        """Re-embed records whose embedding failed during an earlier scan."""
        stats = IndexStats()
        records = self.store.pending_retry(limit)
        batch_size = self.config.embed_batch_size
        for start in range(0, len(records), batch_size):
            batch = records[start : start + batch_size]
            vectors = self.client.try_embed_batch([r.pending_text or r.text for r in batch])
            for record, vector in zip(batch, vectors):
                if vector is None:
                    stats.retry_pending += 1
                    continue
                if record.pending_text:
                    record.text = record.pending_text
                    record.content_processed = True
                record.pending_text = None
                record.needs_retry = False
                record.content_hash = text_sha256(record.text)
                try:
                    self.store.upsert(record, vector)
                except FileScoutError as exc:
                    handle_error(exc, record.path, "retry")
                    stats.increment("failed", record.path)
                    continue
                stats.increment("updated", record.path)
        LOGGER.info(
            "Retry finished: %d updated, %d still pending", stats.updated, stats.retry_pending
        )
        return stats

    def mark_stale(self, paths: Iterable[Path]) -> int:
        return self.store.mark_stale(paths)
