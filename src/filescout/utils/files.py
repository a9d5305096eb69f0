"""Utility helpers for working with paths."""

from __future__ import annotations

import hashlib
from pathlib import Path, PurePath
from typing import Iterable, Tuple


def is_under(path: PurePath, root: PurePath) -> bool:
    """True if ``path`` equals ``root`` or lies inside it, compared by segment."""
    try:
        PurePath(path).relative_to(root)
    except ValueError:
        return False
    return True


def folder_tokens(path: PurePath) -> Tuple[str, ...]:
    """Names of the folders between the anchor and the file, outermost first."""
    parent = PurePath(path).parent
    return tuple(part for part in parent.parts if part != parent.anchor)


def drive_label(path: PurePath, mounts: Iterable[PurePath] = ()) -> str:
    """Volume identifier of ``path``.

    Windows paths carry their drive letter. Elsewhere the deepest known mount
    point containing the path wins, falling back to the filesystem anchor.
    """
    pure = PurePath(path)
    if pure.drive:
        return pure.drive
    best: PurePath | None = None
    for mount in mounts:
        mount = PurePath(mount)
        if is_under(pure, mount) and (best is None or len(mount.parts) > len(best.parts)):
            best = mount
    if best is not None:
        return str(best)
    return pure.anchor or "unknown"


def split_name(path: PurePath) -> tuple[str, str]:
    """Return (file name, lowercase extension without the dot)."""
    pure = PurePath(path)
    return pure.name, pure.suffix.lower().lstrip(".")


def text_sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8", errors="surrogatepass")).hexdigest()


def path_exists(path: str | Path) -> bool:
    try:
        return Path(path).exists()
    except OSError:
        return False
