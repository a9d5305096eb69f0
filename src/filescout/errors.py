"""Error taxonomy and handling policies for scanning and indexing.

Every per-file failure maps to an action: skip the file, demote it to
metadata-only, retry it, or abort the whole scan. Only a malformed rule set
aborts; everything else is counted in the scan summary and the batch goes on.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Optional

LOGGER = logging.getLogger(__name__)


class ErrorAction(Enum):
    SKIP = auto()
    DEMOTE = auto()  # keep the file, index metadata only
    RETRY = auto()
    ABORT = auto()


class FileScoutError(Exception):
    """Base exception for filescout."""

    kind = "error"

    def __init__(self, message: str, path: Optional[Path] = None) -> None:
        super().__init__(message)
        self.path = path


class FileUnreadable(FileScoutError):
    """Permission denied, vanished file, broken link or other I/O failure."""

    kind = "file_unreadable"


class FileTooLarge(FileScoutError):
    kind = "file_too_large"


class DecodeError(FileScoutError):
    """Binary content masquerading as text, or a format with no reader."""

    kind = "decode_error"


class EmbeddingUnavailable(FileScoutError):
    """The embedding service could not produce a vector. Retriable."""

    kind = "embedding_unavailable"


class StoreWriteFailure(FileScoutError):
    kind = "store_write_failure"


class InvalidRule(FileScoutError):
    """The scan rule set is inconsistent; the scan must not start."""

    kind = "invalid_rule"


class ScanAlreadyRunning(FileScoutError):
    kind = "scan_already_running"


@dataclass(frozen=True)
class ErrorPolicy:
    action: ErrorAction
    log_level: int
    message_template: str = "{file}: {error}"


ERROR_POLICIES: dict[type, ErrorPolicy] = {
    InvalidRule: ErrorPolicy(ErrorAction.ABORT, logging.ERROR, "Invalid scan rules: {error}"),
    FileTooLarge: ErrorPolicy(
        ErrorAction.DEMOTE, logging.DEBUG, "Too large, indexing metadata only: {file}"
    ),
    DecodeError: ErrorPolicy(
        ErrorAction.DEMOTE, logging.DEBUG, "Cannot decode, indexing metadata only: {file}"
    ),
    EmbeddingUnavailable: ErrorPolicy(
        ErrorAction.RETRY, logging.WARNING, "Embedding unavailable for {file}: {error}"
    ),
    StoreWriteFailure: ErrorPolicy(
        ErrorAction.SKIP, logging.ERROR, "Failed to store {file}: {error}"
    ),
    FileUnreadable: ErrorPolicy(ErrorAction.SKIP, logging.WARNING, "Cannot read {file}: {error}"),
    PermissionError: ErrorPolicy(ErrorAction.SKIP, logging.WARNING, "Permission denied: {file}"),
    FileNotFoundError: ErrorPolicy(
        ErrorAction.SKIP, logging.DEBUG, "File not found (possibly deleted): {file}"
    ),
    OSError: ErrorPolicy(ErrorAction.SKIP, logging.WARNING, "OS error on {file}: {error}"),
}


def failure_kind(error: BaseException) -> str:
    """Summary bucket for an exception."""
    if isinstance(error, FileScoutError):
        return error.kind
    if isinstance(error, OSError):
        return FileUnreadable.kind
    return "unexpected"


def handle_error(
    error: BaseException, file_path: Optional[Path] = None, context: str = ""
) -> ErrorAction:
    """Log ``error`` according to its policy and return the action to take."""
    policy = None
    for error_type, candidate in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            policy = candidate
            break
    if policy is None:
        policy = ErrorPolicy(ErrorAction.SKIP, logging.ERROR, "Unexpected error: {file} - {error}")

    if file_path is None and isinstance(error, FileScoutError):
        file_path = error.path
    message = policy.message_template.format(
        file=str(file_path) if file_path else "<unknown>", error=str(error)
    )
    if context:
        message = f"[{context}] {message}"
    LOGGER.log(policy.log_level, message)
    return policy.action
