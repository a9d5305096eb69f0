"""Per-file scan decisions from a rule set and the current scan phase."""

from __future__ import annotations

from pathlib import PurePath
from typing import Iterable

from filescout.config import ScanRuleSet
from filescout.models import Category, ScanDecision, ScanPhase
from filescout.utils.files import is_under

# Top-level directories a drive-wide sweep never enters (compared casefolded).
RESERVED_DIRS = frozenset(
    {
        "proc",
        "sys",
        "dev",
        "run",
        "snap",
        "boot",
        "lost+found",
        "system",
        "library",
        "private",
        "windows",
        "program files",
        "program files (x86)",
        "programdata",
        "$recycle.bin",
        "system volume information",
    }
)


def _dir_segments(directory: PurePath) -> tuple[str, ...]:
    return tuple(part for part in directory.parts if part != directory.anchor)


def _matching_excluded_paths(path: PurePath, rules: ScanRuleSet) -> list[PurePath]:
    return [root for root in rules.excluded_paths if is_under(path, root)]


def _has_excluded_folder(segments: Iterable[str], rules: ScanRuleSet) -> bool:
    return any(segment.casefold() in rules.excluded_folders for segment in segments)


def _rescuing_include(path: PurePath, rules: ScanRuleSet, excluded: list[PurePath]) -> bool:
    # An include identical to a matching exclude does not rescue the file.
    return any(
        is_under(path, root) and root not in excluded for root in rules.included_paths
    )


def _under_included(path: PurePath, rules: ScanRuleSet) -> bool:
    return any(is_under(path, root) for root in rules.included_paths)


def _reserved_segment(segments: tuple[str, ...], rules: ScanRuleSet) -> str | None:
    """First segment that makes a sweep skip the path, or None."""
    for index, segment in enumerate(segments):
        folded = segment.casefold()
        if folded in rules.included_folders:
            continue
        if segment.startswith("."):
            return segment
        if index == 0 and folded in RESERVED_DIRS:
            return segment
    return None


def decide(
    path: PurePath, category: Category, phase: ScanPhase, rules: ScanRuleSet
) -> ScanDecision:
    """Return the scan decision for ``path``; the first matching rule wins.

    ``category`` is part of the contract but none of the current rules use it.
    """
    path = PurePath(path)
    if path.name in rules.excluded_filenames:
        return ScanDecision.SKIP

    segments = _dir_segments(path.parent)
    excluded = _matching_excluded_paths(path, rules)
    if excluded or _has_excluded_folder(segments, rules):
        if _rescuing_include(path, rules, excluded):
            return ScanDecision.METADATA_ONLY
        return ScanDecision.SKIP

    extension = path.suffix.lower().lstrip(".")
    if extension and extension in rules.excluded_extensions:
        return ScanDecision.SKIP

    if phase is ScanPhase.VIP:
        allowed = not rules.included_extensions or extension in rules.included_extensions
        if allowed and _under_included(path, rules):
            return ScanDecision.FULL_CONTENT
        return ScanDecision.SKIP

    # Included paths were chosen by the user, hidden or reserved names or not.
    if not _under_included(path, rules) and _reserved_segment(segments, rules) is not None:
        return ScanDecision.SKIP
    return ScanDecision.METADATA_ONLY


def should_prune_dir(directory: PurePath, phase: ScanPhase, rules: ScanRuleSet) -> bool:
    """True when every file below ``directory`` would be skipped."""
    directory = PurePath(directory)
    segments = _dir_segments(directory)

    if phase is ScanPhase.SWEEP and _reserved_segment(segments, rules) is not None:
        leads_to_include = _under_included(directory, rules) or any(
            is_under(root, directory) for root in rules.included_paths
        )
        if not leads_to_include:
            return True

    excluded = _matching_excluded_paths(directory, rules)
    if not excluded and not _has_excluded_folder(segments, rules):
        return False
    if _rescuing_include(directory, rules, excluded):
        return False
    # An include nested below an excluded directory still needs the walk.
    return not any(is_under(root, directory) for root in rules.included_paths)
