"""Core filescout data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Tuple


class Category(str, Enum):
    """Closed set of file categories, derived from the extension only."""

    CODE = "code"
    DOCUMENT = "document"
    SPREADSHEET = "spreadsheet"
    DATABASE = "database"
    MEDIA = "media"
    CONFIG = "config"
    BINARY = "binary"
    ARCHIVE = "archive"
    UNKNOWN = "unknown"


class ScanDecision(str, Enum):
    """Per-file outcome of the rule engine for one scan pass."""

    SKIP = "skip"
    METADATA_ONLY = "metadata_only"
    FULL_CONTENT = "full_content"


class ScanPhase(str, Enum):
    """Which pass of the two-phase scan is running."""

    VIP = "vip"  # phase 1: configured include paths, deep
    SWEEP = "sweep"  # phase 2: every mounted drive, metadata only


class ScanStage(str, Enum):
    SCANNING = "scanning"
    READING = "reading"
    EMBEDDING = "embedding"
    STORING = "storing"
    PHASE2_DISCOVERY = "phase2_discovery"
    PHASE2_SCANNING = "phase2_scanning"
    PHASE2_SCAN_COMPLETE = "phase2_scan_complete"
    COMPLETE = "complete"


@dataclass(frozen=True, slots=True)
class ScanProgress:
    """Progress event handed to a sink. Never stored."""

    stage: ScanStage
    current: int = 0
    total: int = 0  # 0 when unknown
    current_file: str = ""


@dataclass(frozen=True, slots=True)
class ScanCandidate:
    """A file the scanner visited and did not skip."""

    path: Path
    category: Category
    decision: ScanDecision
    size: int
    created_at: float
    modified_at: float


@dataclass(slots=True)
class ExtractedText:
    """Text payload used for both the full-text index and the embedding input."""

    text: str
    content_processed: bool
    demoted_reason: Optional[str] = None


@dataclass(slots=True)
class FileRecord:
    """One indexed path."""

    path: Path
    name: str
    extension: str
    category: Category
    text: str
    content_processed: bool
    decision: ScanDecision
    folders: Tuple[str, ...] = ()
    drive: str = ""
    size: int = 0
    created_at: float = 0.0
    modified_at: float = 0.0
    content_hash: str = ""
    needs_retry: bool = False
    pending_text: Optional[str] = None
    importance: float = 0.0
    id: Optional[int] = None
    record_created_at: Optional[str] = None
    record_updated_at: Optional[str] = None
    last_seen_at: Optional[str] = None


@dataclass(frozen=True, slots=True)
class SearchFilters:
    """Optional restrictions applied to both lookups before fusion."""

    extension: Optional[str] = None
    path_prefix: Optional[Path] = None
    min_score: Optional[float] = None  # minimum importance score

    @classmethod
    def build(
        cls,
        extension: Optional[str] = None,
        path_prefix: Optional[str | Path] = None,
        min_score: Optional[float] = None,
    ) -> "SearchFilters":
        ext = extension.strip().lstrip(".").lower() if extension else None
        prefix = Path(path_prefix).expanduser() if path_prefix else None
        return cls(ext or None, prefix, min_score)

    @property
    def is_empty(self) -> bool:
        return self.extension is None and self.path_prefix is None and self.min_score is None


@dataclass(slots=True)
class SearchResult:
    record: FileRecord
    score: float
    vector_score: Optional[float] = None
    text_score: Optional[float] = None
    snippet: str = ""

    @property
    def match_type(self) -> str:
        if self.vector_score is not None and self.text_score is not None:
            return "hybrid"
        if self.vector_score is not None:
            return "vector"
        return "text"


@dataclass(slots=True)
class IndexStats:
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    demoted: int = 0
    retry_pending: int = 0
    processed_files: list[Path] = field(default_factory=list)

    def increment(self, status: str, path: Path) -> None:
        if status == "inserted":
            self.inserted += 1
        elif status == "updated":
            self.updated += 1
        elif status == "unchanged":
            self.unchanged += 1
        else:
            self.failed += 1
        self.processed_files.append(path)
