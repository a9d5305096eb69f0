"""Static importance score for indexed files.

The score is a rough prior in [0, 10] built from the category, whether the file
sits under an included path, how recently it changed, its size and a few
telling words in its name. It is stored with the record and can be used to
filter search results; it never enters the relevance fusion.
"""

from __future__ import annotations

import time
from pathlib import PurePath
from typing import Iterable, Optional

from filescout.models import Category
from filescout.utils.files import is_under

MAX_SCORE = 10.0

CATEGORY_SCORES = {
    Category.DOCUMENT: 4.0,
    Category.CODE: 3.0,
    Category.SPREADSHEET: 3.0,
    Category.DATABASE: 3.0,
    Category.CONFIG: 2.0,
    Category.MEDIA: 1.0,
    Category.ARCHIVE: 1.0,
    Category.BINARY: 1.0,
    Category.UNKNOWN: 0.0,
}

# Folders holding throwaway files score low whatever their category.
_SCRATCH_FOLDERS = frozenset({"log", "logs", "tmp"})
_SCRATCH_SCORE = 0.5
_INCLUDED_BONUS = 3.0

_DAY = 86_400.0
# (max age in seconds, points), checked in order.
_RECENCY_STEPS = ((7 * _DAY, 2.0), (30 * _DAY, 1.5), (182 * _DAY, 1.0))

_MB = 1024 * 1024
_SIZE_PENALTIES = ((500 * _MB, -1.0), (100 * _MB, -0.5))

_NAME_WORDS = ("project", "report", "final", "db")
_NAME_WORD_BONUS = 0.5
_NAME_BONUS_CAP = 1.0


def _category_score(path: PurePath, category: Category) -> float:
    if any(part.casefold() in _SCRATCH_FOLDERS for part in path.parent.parts):
        return _SCRATCH_SCORE
    return CATEGORY_SCORES[category]


def _recency_score(modified_at: float, now: float) -> float:
    if modified_at <= 0:
        return 0.0
    age = max(now - modified_at, 0.0)
    for limit, points in _RECENCY_STEPS:
        if age < limit:
            return points
    return 0.0


def _size_penalty(size: int) -> float:
    for limit, penalty in _SIZE_PENALTIES:
        if size > limit:
            return penalty
    return 0.0


def _name_bonus(name: str) -> float:
    folded = name.casefold()
    hits = sum(1 for word in _NAME_WORDS if word in folded)
    return min(hits * _NAME_WORD_BONUS, _NAME_BONUS_CAP)


def importance_score(
    path: PurePath,
    category: Category,
    *,
    size: int,
    modified_at: float,
    included_paths: Iterable[PurePath] = (),
    now: Optional[float] = None,
) -> float:
    """Return the importance of ``path``, clamped to [0, 10] with one decimal."""
    path = PurePath(path)
    now = time.time() if now is None else now
    total = (
        _category_score(path, category)
        + (_INCLUDED_BONUS if any(is_under(path, root) for root in included_paths) else 0.0)
        + _recency_score(modified_at, now)
        + _size_penalty(size)
        + _name_bonus(path.name)
    )
    return round(min(max(total, 0.0), MAX_SCORE), 1)
