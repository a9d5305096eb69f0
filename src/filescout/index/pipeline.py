"""Scan orchestration: scanner to indexer, stale cleanup and background runs."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from filescout.config import AppConfig, ScanRuleSet
from filescout.embedding.encoder import EmbeddingClient
from filescout.errors import InvalidRule, ScanAlreadyRunning, handle_error
from filescout.index.indexer import Indexer, IndexOutcome
from filescout.index.storage import SQLiteFileStore
from filescout.models import ScanCandidate, ScanPhase, ScanStage
from filescout.progress import ProgressReporter, ProgressSink
from filescout.scan.scanner import Scanner, discover_drives
from filescout.utils.files import is_under, path_exists

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class ScanSummary:
    phase: ScanPhase
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0
    demoted: int = 0
    retry_pending: int = 0
    stale_removed: int = 0
    cancelled: bool = False
    failures: Dict[str, int] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def indexed(self) -> int:
        return self.inserted + self.updated + self.unchanged

    def add(self, outcome: IndexOutcome) -> None:
        if outcome.status == "inserted":
            self.inserted += 1
        elif outcome.status == "updated":
            self.updated += 1
        elif outcome.status == "unchanged":
            self.unchanged += 1
        else:
            self.failed += 1
            kind = outcome.failure or "unexpected"
            self.failures[kind] = self.failures.get(kind, 0) + 1
        if outcome.demoted_reason:
            self.demoted += 1
        if outcome.retry_pending:
            self.retry_pending += 1

    def to_dict(self) -> dict:
        data = asdict(self)
        data["phase"] = self.phase.value
        return data


class ScanPipeline:
    """Run one scan phase from traversal to persistence."""

    def __init__(
        self,
        client: EmbeddingClient,
        store: SQLiteFileStore,
        config: AppConfig,
        rules: ScanRuleSet,
        sink: ProgressSink | None = None,
        *,
        drive_provider: Callable[[], Sequence[Path]] = discover_drives,
    ) -> None:
        self.client = client
        self.store = store
        self.config = config
        self.rules = rules
        self.sink = sink
        self.drive_provider = drive_provider

    def run(
        self, phase: ScanPhase, cancel_event: threading.Event | None = None
    ) -> ScanSummary:
        """Scan and index one phase. Raises InvalidRule before doing any work."""
        try:
            self.config.validate()
            self.rules.validate()
        except InvalidRule as exc:
            handle_error(exc, context=phase.value)
            raise

        start = time.monotonic()
        cancel_event = cancel_event or threading.Event()
        reporter = ProgressReporter(self.sink, every=self.config.progress_every)
        mounts = list(self.drive_provider())
        scanner = Scanner(
            self.rules,
            reporter=reporter,
            drive_provider=lambda: mounts,
            cancel_event=cancel_event,
        )
        indexer = Indexer(
            self.client,
            self.store,
            self.config,
            mounts=mounts,
            included_paths=self.rules.included_paths,
            reporter=reporter,
        )
        summary = ScanSummary(phase)
        seen: set[Path] = set()
        batch: List[ScanCandidate] = []
        preserve = phase is ScanPhase.SWEEP

        def flush() -> None:
            for outcome in indexer.index_batch(batch, preserve_content=preserve):
                summary.add(outcome)
            batch.clear()

        for candidate in scanner.scan(phase):
            seen.add(candidate.path)
            batch.append(candidate)
            if len(batch) >= self.config.embed_batch_size:
                flush()
            if cancel_event.is_set():
                break
        # Files already visited are indexed even when the scan was cancelled.
        if batch:
            flush()

        summary.skipped = scanner.skipped
        if scanner.errors:
            kinds = Counter(error.kind for error in scanner.errors)
            for kind, count in kinds.items():
                summary.failures[kind] = summary.failures.get(kind, 0) + count
            summary.failed += len(scanner.errors)

        summary.cancelled = cancel_event.is_set()
        if not summary.cancelled:
            roots = (
                [Path(p) for p in self.rules.included_paths]
                if phase is ScanPhase.VIP
                else scanner.roots
            )
            summary.stale_removed = self._remove_stale(phase, roots, seen)

        summary.duration_seconds = time.monotonic() - start
        reporter.emit(ScanStage.COMPLETE, summary.indexed, 0, force=True)
        LOGGER.info(
            "%s scan %s: %d inserted, %d updated, %d unchanged, %d skipped, %d failed, "
            "%d stale removed in %.1fs",
            phase.value,
            "cancelled" if summary.cancelled else "complete",
            summary.inserted,
            summary.updated,
            summary.unchanged,
            summary.skipped,
            summary.failed,
            summary.stale_removed,
            summary.duration_seconds,
        )
        return summary

    def _remove_stale(self, phase: ScanPhase, roots: Sequence[Path], seen: set[Path]) -> int:
        stale: set[Path] = set()
        included = [Path(p) for p in self.rules.included_paths]
        for root in roots:
            for path, content_processed, needs_retry in self.store.paths_under(root):
                if path in seen:
                    continue
                if not path_exists(path):
                    stale.add(path)
                elif phase is ScanPhase.VIP and (content_processed or needs_retry):
                    stale.add(path)
                elif (
                    phase is ScanPhase.SWEEP
                    and not content_processed
                    and not needs_retry
                    and not any(is_under(path, inc) for inc in included)
                ):
                    # Records under an include belong to the VIP phase.
                    stale.add(path)
        if not stale:
            return 0
        removed = self.store.mark_stale(sorted(stale))
        LOGGER.info("Removed %d stale record(s)", removed)
        return removed


class ScanRunner:
    """Run scans in the background, one at a time, on a single worker thread."""

    def __init__(self, pipeline: ScanPipeline) -> None:
        self.pipeline = pipeline
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="scan")
        self._lock = threading.Lock()
        self._future: Optional[Future] = None
        self._cancel_event = threading.Event()
        self._phase: Optional[ScanPhase] = None
        self.last_summary: Optional[ScanSummary] = None
        self.last_error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._future is not None and not self._future.done()

    def start(self, phase: ScanPhase, rules: ScanRuleSet | None = None) -> Future:
        """Start a scan in the background; ``rules`` replaces the snapshot for it."""
        with self._lock:
            if self._future is not None and not self._future.done():
                raise ScanAlreadyRunning(f"A {self._phase.value} scan is already running")
            if rules is not None:
                self.pipeline.rules = rules
            self._cancel_event = threading.Event()
            self._phase = phase
            self.last_error = None
            self._future = self._executor.submit(self._run, phase, self._cancel_event)
            return self._future

    def _run(self, phase: ScanPhase, cancel_event: threading.Event) -> ScanSummary:
        try:
            summary = self.pipeline.run(phase, cancel_event)
        except Exception as exc:
            self.last_error = str(exc)
            LOGGER.error("Scan failed: %s", exc)
            raise
        self.last_summary = summary
        return summary

    def cancel(self) -> bool:
        """Ask the running scan to stop after the current file."""
        with self._lock:
            if self._future is None or self._future.done():
                return False
            self._cancel_event.set()
            return True

    def wait(self, timeout: float | None = None) -> Optional[ScanSummary]:
        future = self._future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "phase": self._phase.value if self._phase else None,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None,
            "error": self.last_error,
        }

    def shutdown(self) -> None:
        self._cancel_event.set()
        self._executor.shutdown(wait=True)
