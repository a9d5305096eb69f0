"""Text helpers: whitespace cleanup, bounded decoding and snippets."""

from __future__ import annotations

import codecs
import re
from typing import BinaryIO, Iterable, List

_TOKEN_RE = re.compile(r"[^\W_]+", re.UNICODE)


def normalize_whitespace(lines: Iterable[str]) -> str:
    """Collapse whitespace and join lines."""
    return "\n".join(line.strip() for line in lines if line.strip())


def truncate_chars(text: str, max_chars: int) -> str:
    """Cut ``text`` to at most ``max_chars`` characters.

    Python strings are sequences of code points, so slicing never lands inside a
    UTF-8 sequence. A dangling high surrogate (from surrogateescape input) is
    dropped as well.
    """
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    cut = text[:max_chars]
    if cut and "\ud800" <= cut[-1] <= "\udbff":
        cut = cut[:-1]
    return cut


def read_text_prefix(handle: BinaryIO, max_chars: int, *, chunk_size: int = 1 << 16) -> str:
    """Decode at most ``max_chars`` characters of UTF-8 from a binary handle.

    Reads at most ``4 * max_chars`` bytes. The incremental decoder holds back
    an incomplete trailing sequence, so the result always ends on a character
    boundary. Invalid sequences inside the text are replaced.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    parts: List[str] = []
    produced = 0
    budget = max_chars * 4
    while produced < max_chars and budget > 0:
        block = handle.read(min(chunk_size, budget))
        if not block:
            break
        budget -= len(block)
        piece = decoder.decode(block, final=False)
        parts.append(piece)
        produced += len(piece)
    text = "".join(parts)
    if text.startswith("\ufeff"):
        text = text[1:]
    return truncate_chars(text, max_chars)


def tokenize(text: str) -> List[str]:
    """Lowercased word tokens, used for FTS queries and snippet matching."""
    return [token.lower() for token in _TOKEN_RE.findall(text)]


def make_snippet(text: str, terms: Iterable[str], *, width: int = 160) -> str:
    """Return a window of ``text`` around the first occurrence of any term.

    Falls back to the start of the text when nothing matches.
    """
    if not text:
        return ""
    flat = " ".join(text.split())
    lowered = flat.lower()
    hits = [lowered.find(term) for term in terms if term]
    hits = [pos for pos in hits if pos >= 0]
    if not hits:
        return truncate_chars(flat, width)

    first = min(hits)
    start = max(first - width // 4, 0)
    end = min(start + width, len(flat))
    start = max(end - width, 0)
    snippet = flat[start:end]
    if start > 0:
        snippet = "..." + snippet
    if end < len(flat):
        snippet = snippet + "..."
    return snippet
