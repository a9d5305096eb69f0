"""Filesystem traversal for both scan phases.

Walks roots depth-first with entries sorted by name, so the order of yielded
candidates is stable for a given filesystem snapshot. Symlinks are never
followed. Errors on single entries are recorded and the walk goes on.
"""

from __future__ import annotations

import logging
import os
import threading
from pathlib import Path, PurePath
from typing import Callable, Iterator, List, Optional, Sequence

import psutil

from filescout.config import ScanRuleSet
from filescout.errors import FileUnreadable, handle_error
from filescout.ingestion.categorizer import categorize
from filescout.models import ScanCandidate, ScanDecision, ScanPhase, ScanStage
from filescout.progress import ProgressReporter
from filescout.scan.rules import decide, should_prune_dir
from filescout.utils.files import is_under

LOGGER = logging.getLogger(__name__)

# Pseudo filesystems that never hold user files.
_IGNORED_FSTYPES = frozenset(
    {"proc", "sysfs", "devtmpfs", "devpts", "tmpfs", "squashfs", "overlay", "autofs", "cgroup2"}
)


def discover_drives() -> List[Path]:
    """Return the mount points of the local physical partitions."""
    drives = []
    for part in psutil.disk_partitions(all=False):
        if part.fstype.lower() in _IGNORED_FSTYPES:
            continue
        if not os.path.isdir(part.mountpoint):
            continue
        drives.append(Path(part.mountpoint))
    return sorted(set(drives))


class Scanner:
    """Yield scan candidates for one phase, consulting the rule engine per file."""

    def __init__(
        self,
        rules: ScanRuleSet,
        *,
        reporter: ProgressReporter | None = None,
        drive_provider: Callable[[], Sequence[Path]] = discover_drives,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.rules = rules
        self.reporter = reporter or ProgressReporter(None)
        self.drive_provider = drive_provider
        self.cancel_event = cancel_event or threading.Event()
        self.errors: List[FileUnreadable] = []
        self.roots: List[Path] = []
        self.visited = 0
        self.skipped = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def scan(self, phase: ScanPhase) -> Iterator[ScanCandidate]:
        if phase is ScanPhase.SWEEP:
            self.reporter.emit(ScanStage.PHASE2_DISCOVERY, force=True)
            candidates = [Path(drive) for drive in self.drive_provider()]
            stage = ScanStage.PHASE2_SCANNING
        else:
            candidates = [Path(root) for root in self.rules.included_paths]
            stage = ScanStage.SCANNING
        self.roots = self._dedupe_roots(candidates, phase)
        LOGGER.info("Scanning %d root(s) in %s phase", len(self.roots), phase.value)

        for root in self.roots:
            if self.cancelled:
                break
            yield from self._walk(root, phase, stage)

        if phase is ScanPhase.SWEEP and not self.cancelled:
            self.reporter.emit(ScanStage.PHASE2_SCAN_COMPLETE, self.visited, force=True)

    def _dedupe_roots(self, roots: Sequence[Path], phase: ScanPhase) -> List[Path]:
        """Drop roots that an enclosing root's walk already reaches."""
        ordered = sorted(set(roots), key=lambda p: (len(p.parts), str(p)))
        kept: List[Path] = []
        for root in ordered:
            outer = next((k for k in kept if k != root and is_under(root, k)), None)
            if outer is not None and not self._pruned_between(outer, root, phase):
                continue
            kept.append(root)
        return sorted(kept)

    def _pruned_between(self, outer: Path, inner: Path, phase: ScanPhase) -> bool:
        current = PurePath(inner)
        while current != PurePath(outer) and current != current.parent:
            if should_prune_dir(current, phase, self.rules):
                return True
            current = current.parent
        return False

    def _walk(self, root: Path, phase: ScanPhase, stage: ScanStage) -> Iterator[ScanCandidate]:
        if not root.is_dir():
            self._record_error(OSError(f"Root is not a directory: {root}"), root)
            return
        stack: List[Path] = [root]
        while stack:
            if self.cancelled:
                return
            directory = stack.pop()
            try:
                with os.scandir(directory) as iterator:
                    entries = sorted(iterator, key=lambda e: e.name)
            except OSError as exc:
                self._record_error(exc, directory)
                continue

            subdirs: List[Path] = []
            for entry in entries:
                if self.cancelled:
                    return
                candidate = self._visit(entry, phase, subdirs)
                if candidate is not None:
                    self.reporter.emit(stage, self.visited, 0, str(candidate.path))
                    yield candidate
            # Reversed so the stack pops subdirectories in name order.
            stack.extend(reversed(subdirs))

    def _visit(
        self, entry: os.DirEntry, phase: ScanPhase, subdirs: List[Path]
    ) -> Optional[ScanCandidate]:
        path = Path(entry.path)
        try:
            if entry.is_symlink():
                return None
            if entry.is_dir(follow_symlinks=False):
                if not should_prune_dir(path, phase, self.rules):
                    subdirs.append(path)
                return None
            if not entry.is_file(follow_symlinks=False):
                return None
            stat = entry.stat(follow_symlinks=False)
        except OSError as exc:
            self._record_error(exc, path)
            return None

        self.visited += 1
        category = categorize(path.suffix)
        decision = decide(path, category, phase, self.rules)
        if decision is ScanDecision.SKIP:
            self.skipped += 1
            return None
        return ScanCandidate(
            path=path,
            category=category,
            decision=decision,
            size=stat.st_size,
            created_at=getattr(stat, "st_birthtime", stat.st_ctime),
            modified_at=stat.st_mtime,
        )

    def _record_error(self, error: OSError, path: Path) -> None:
        handle_error(error, path, "scan")
        self.errors.append(FileUnreadable(str(error), path))
