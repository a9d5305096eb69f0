"""Application configuration defaults and scan rule sets."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, fields
from pathlib import Path, PurePath
from typing import Any, Iterable, Mapping

from filescout.errors import InvalidRule

DEFAULT_MODEL = "nomic-embed-text"
DEFAULT_OLLAMA_URL = "http://localhost:11434"
DEFAULT_DIMENSION = 768


def _get_default_db_path() -> Path:
    """Prefer a local data/ database when running from a checkout."""
    local_db = Path("data/filescout.db")
    if local_db.exists():
        return local_db
    return Path.home() / ".filescout" / "filescout.db"


@dataclass(slots=True)
class AppConfig:
    db_path: Path | None = None
    embedding_backend: str = "ollama"
    embedding_model: str = DEFAULT_MODEL
    embedding_url: str = DEFAULT_OLLAMA_URL
    embedding_dimension: int = DEFAULT_DIMENSION
    embedding_timeout: float = 30.0
    embedding_concurrency: int = 4
    embedding_retries: int = 2
    embedding_backoff: float = 0.5
    max_chars: int = 2000
    max_file_size: int = 10_000_000
    spreadsheet_rows: int = 50
    pdf_max_pages: int = 25
    embed_batch_size: int = 16
    progress_every: int = 200

    def __post_init__(self) -> None:
        if self.db_path is None:
            self.db_path = _get_default_db_path()

    def resolve_db_path(self, base_dir: Path | None = None) -> Path:
        if self.db_path is None:
            self.db_path = _get_default_db_path()
        if Path(self.db_path).is_absolute() or base_dir is None:
            return Path(self.db_path)
        return base_dir / self.db_path

    def validate(self) -> None:
        for name in (
            "max_chars",
            "max_file_size",
            "spreadsheet_rows",
            "pdf_max_pages",
            "embed_batch_size",
            "progress_every",
            "embedding_concurrency",
            "embedding_dimension",
        ):
            if getattr(self, name) <= 0:
                raise InvalidRule(f"{name} must be positive, got {getattr(self, name)!r}")
        if self.embedding_retries < 0:
            raise InvalidRule("embedding_retries must not be negative")
        if self.embedding_backend not in ("ollama", "local"):
            raise InvalidRule(f"Unknown embedding backend: {self.embedding_backend!r}")

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "AppConfig":
        """Build a config from ``FILESCOUT_*`` environment variables.

        Supported variables:
            FILESCOUT_DB: database path
            FILESCOUT_EMBEDDING_BACKEND: "ollama" or "local"
            FILESCOUT_EMBEDDING_MODEL / FILESCOUT_EMBEDDING_URL
            FILESCOUT_EMBEDDING_DIMENSION
            FILESCOUT_MAX_CHARS / FILESCOUT_MAX_FILE_SIZE
        """
        env = os.environ if environ is None else environ
        config = cls()
        if db := env.get("FILESCOUT_DB"):
            config.db_path = Path(db)
        if backend := env.get("FILESCOUT_EMBEDDING_BACKEND"):
            config.embedding_backend = backend
        if model := env.get("FILESCOUT_EMBEDDING_MODEL"):
            config.embedding_model = model
        if url := env.get("FILESCOUT_EMBEDDING_URL"):
            config.embedding_url = url
        try:
            if dimension := env.get("FILESCOUT_EMBEDDING_DIMENSION"):
                config.embedding_dimension = int(dimension)
            if max_chars := env.get("FILESCOUT_MAX_CHARS"):
                config.max_chars = int(max_chars)
            if max_size := env.get("FILESCOUT_MAX_FILE_SIZE"):
                config.max_file_size = int(max_size)
        except ValueError as exc:
            raise InvalidRule(f"Invalid numeric setting: {exc}") from exc
        return config


def _normalize_path(raw: str) -> PurePath:
    # Blank entries normalize to "." and are rejected by validate().
    return PurePath(os.path.normpath(os.path.expanduser(raw.strip())))


def _normalize_ext(raw: str) -> str:
    return raw.strip().lstrip(".").lower()


@dataclass(frozen=True, slots=True)
class ScanRuleSet:
    """Immutable snapshot of include/exclude rules for one scan invocation."""

    included_paths: frozenset[PurePath] = frozenset()
    excluded_paths: frozenset[PurePath] = frozenset()
    included_folders: frozenset[str] = frozenset()
    excluded_folders: frozenset[str] = frozenset()
    included_extensions: frozenset[str] = frozenset()
    excluded_extensions: frozenset[str] = frozenset()
    excluded_filenames: frozenset[str] = frozenset()

    @classmethod
    def from_dict(cls, data: Mapping[str, Iterable[str]]) -> "ScanRuleSet":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise InvalidRule(f"Unknown rule keys: {', '.join(sorted(unknown))}")

        def strings(key: str) -> list[str]:
            value = data.get(key, ())
            if isinstance(value, str):
                raise InvalidRule(f"{key} must be a list, not a string")
            items = list(value)
            if not all(isinstance(item, str) for item in items):
                raise InvalidRule(f"{key} must only contain strings")
            return items

        return cls(
            included_paths=frozenset(_normalize_path(p) for p in strings("included_paths")),
            excluded_paths=frozenset(_normalize_path(p) for p in strings("excluded_paths")),
            included_folders=frozenset(name.strip().casefold() for name in strings("included_folders")),
            excluded_folders=frozenset(name.strip().casefold() for name in strings("excluded_folders")),
            included_extensions=frozenset(_normalize_ext(e) for e in strings("included_extensions")),
            excluded_extensions=frozenset(_normalize_ext(e) for e in strings("excluded_extensions")),
            excluded_filenames=frozenset(name.strip() for name in strings("excluded_filenames")),
        )

    @classmethod
    def load(cls, path: Path) -> "ScanRuleSet":
        """Load a rule set from a JSON file."""
        try:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise InvalidRule(f"Cannot load rules from {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise InvalidRule(f"Rules file {path} must contain a JSON object")
        return cls.from_dict(data)

    @classmethod
    def default(cls, included_paths: Iterable[str | Path] = ()) -> "ScanRuleSet":
        return cls.from_dict(
            {
                "included_paths": [str(p) for p in included_paths],
                "excluded_folders": ["node_modules", ".venv", ".git", "__pycache__"],
                "excluded_extensions": ["log", "tmp"],
                "excluded_filenames": [".DS_Store", "Thumbs.db", "desktop.ini"],
            }
        )

    def with_included_paths(self, paths: Iterable[str | Path]) -> "ScanRuleSet":
        added = frozenset(_normalize_path(str(p)) for p in paths)
        return ScanRuleSet(
            included_paths=self.included_paths | added,
            excluded_paths=self.excluded_paths,
            included_folders=self.included_folders,
            excluded_folders=self.excluded_folders,
            included_extensions=self.included_extensions,
            excluded_extensions=self.excluded_extensions,
            excluded_filenames=self.excluded_filenames,
        )

    def validate(self) -> None:
        """Raise InvalidRule if the rule set cannot be applied safely."""
        for kind, paths in (("included", self.included_paths), ("excluded", self.excluded_paths)):
            for path in paths:
                if str(path) in ("", "."):
                    raise InvalidRule(f"Empty {kind} path")
                if not path.is_absolute():
                    raise InvalidRule(f"{kind.capitalize()} path must be absolute: {path}")
        for kind, names in (
            ("included folder", self.included_folders),
            ("excluded folder", self.excluded_folders),
            ("excluded filename", self.excluded_filenames),
        ):
            for name in names:
                if not name:
                    raise InvalidRule(f"Empty {kind} name")
                if "/" in name or "\\" in name:
                    raise InvalidRule(f"{kind.capitalize()} name must not contain a separator: {name}")
        for kind, extensions in (
            ("included", self.included_extensions),
            ("excluded", self.excluded_extensions),
        ):
            for ext in extensions:
                if not ext:
                    raise InvalidRule(f"Empty {kind} extension")
                if any(ch in ext for ch in "/\\*?"):
                    raise InvalidRule(f"Invalid {kind} extension: {ext}")

    def to_dict(self) -> dict[str, Any]:
        return {
            "included_paths": sorted(str(p) for p in self.included_paths),
            "excluded_paths": sorted(str(p) for p in self.excluded_paths),
            "included_folders": sorted(self.included_folders),
            "excluded_folders": sorted(self.excluded_folders),
            "included_extensions": sorted(self.included_extensions),
            "excluded_extensions": sorted(self.excluded_extensions),
            "excluded_filenames": sorted(self.excluded_filenames),
        }
