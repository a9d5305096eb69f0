"""Extension-based file categorization.

Processing policy hangs off the category, never off an individual extension,
so mapping a new extension cannot change how an existing category is handled.
"""

from __future__ import annotations

from enum import Enum

from filescout.models import Category


class ContentPolicy(Enum):
    METADATA = "metadata"  # never decode the bytes
    CODE_METADATA = "code_metadata"  # filename, language and stem only
    DOCUMENT = "document"  # decoded text, size-gated
    TABULAR = "tabular"  # header plus the first rows
    RAW_TEXT = "raw_text"  # decoded text


CATEGORY_POLICIES: dict[Category, ContentPolicy] = {
    Category.CODE: ContentPolicy.CODE_METADATA,
    Category.DOCUMENT: ContentPolicy.DOCUMENT,
    Category.SPREADSHEET: ContentPolicy.TABULAR,
    Category.DATABASE: ContentPolicy.METADATA,
    Category.MEDIA: ContentPolicy.METADATA,
    Category.BINARY: ContentPolicy.METADATA,
    Category.ARCHIVE: ContentPolicy.METADATA,
    Category.CONFIG: ContentPolicy.RAW_TEXT,
    Category.UNKNOWN: ContentPolicy.RAW_TEXT,
}

_LANGUAGES = {
    "rs": "rust",
    "js": "javascript",
    "ts": "typescript",
    "jsx": "react_javascript",
    "tsx": "react_typescript",
    "py": "python",
    "java": "java",
    "c": "c",
    "cpp": "cpp",
    "h": "c_header",
    "hpp": "c_header",
    "cs": "csharp",
    "php": "php",
    "rb": "ruby",
    "go": "go",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "clj": "clojure",
    "hs": "haskell",
    "ml": "ocaml",
    "fs": "fsharp",
    "elm": "elm",
    "dart": "dart",
    "r": "r",
    "m": "objective_c",
    "mm": "objective_c",
    "pl": "perl",
    "sh": "shell",
    "bash": "shell",
    "zsh": "shell",
    "fish": "shell",
}

_EXTENSIONS: dict[Category, frozenset[str]] = {
    Category.CODE: frozenset(_LANGUAGES),
    Category.DOCUMENT: frozenset(
        {"md", "txt", "pdf", "doc", "docx", "rtf", "odt", "tex", "rst", "adoc"}
    ),
    Category.SPREADSHEET: frozenset({"csv", "tsv", "xls", "xlsx", "ods"}),
    Category.DATABASE: frozenset({"db", "sqlite", "sqlite3", "sql", "mdb", "accdb"}),
    Category.MEDIA: frozenset(
        {
            "jpg", "jpeg", "png", "gif", "bmp", "svg", "webp", "ico", "tiff", "tif",
            "mp3", "wav", "flac", "aac", "ogg", "wma", "m4a",
            "mp4", "avi", "mkv", "mov", "wmv", "flv", "webm", "m4v",
        }
    ),
    Category.CONFIG: frozenset(
        {
            "json", "yaml", "yml", "toml", "ini", "cfg", "conf", "config",
            "xml", "plist", "properties", "env",
        }
    ),
    Category.ARCHIVE: frozenset({"zip", "rar", "7z", "tar", "gz", "bz2", "xz", "dmg", "iso"}),
    Category.BINARY: frozenset({"exe", "dll", "so", "dylib", "bin", "app", "deb", "rpm", "msi"}),
}

_BY_EXTENSION: dict[str, Category] = {
    ext: category for category, extensions in _EXTENSIONS.items() for ext in extensions
}


def normalize_extension(extension: str) -> str:
    return extension.strip().lstrip(".").lower()


def categorize(extension: str) -> Category:
    """Map an extension (with or without the dot, any case) to its category."""
    return _BY_EXTENSION.get(normalize_extension(extension), Category.UNKNOWN)


def policy_for(category: Category) -> ContentPolicy:
    return CATEGORY_POLICIES[category]


def infer_language(extension: str) -> str:
    return _LANGUAGES.get(normalize_extension(extension), "unknown")
