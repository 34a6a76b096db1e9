"""Snippet generation for match sets.

Picks the window of the text with the most query-term hits, moves its start
back to a sentence boundary when that keeps the hits inside the window, and
wraps every hit in highlight markers.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from enum import IntFlag
import re

from search_bridge.analyzers import RegexTokenizer, Token


SENTENCE_END_PATTERN = re.compile(r"[.!?]\s+")


class SnippetFlags(IntFlag):
    NONE = 0
    BACKGROUND_MODEL = 1
    EXHAUSTIVE = 2
    EMPTY_WITHOUT_MATCH = 4


def find_sentence_start(text: str, position: int, max_lookback: int = 200) -> int:
    """Start of the sentence containing ``position`` (or ``position`` if none is near)."""
    if position == 0:
        return 0
    start_search = max(0, position - max_lookback)
    matches = list(SENTENCE_END_PATTERN.finditer(text, start_search, position))
    if matches:
        return matches[-1].end()
    if start_search == 0:
        return 0
    return position


def _best_window(hits: list[Token], length: int) -> int:
    best_start = hits[0].start_char
    best_count = 0
    for index, first in enumerate(hits):
        limit = first.start_char + length
        count = sum(1 for hit in hits[index:] if hit.end_char <= limit)
        if count > best_count:
            best_start, best_count = first.start_char, count
    return best_start


def generate_snippet(
    text: str,
    terms: Collection[str],
    *,
    stems: Collection[str] = (),
    stemmer: Callable[[str], str] | None = None,
    length: int = 500,
    highlight: tuple[str, str] = ("<b>", "</b>"),
    omit: str = "...",
    flags: SnippetFlags = SnippetFlags.NONE,
) -> str:
    """Return a highlighted excerpt of ``text`` of at most ``length`` source characters.

    A word is a hit when its lowercased form is in ``terms`` or its stem is
    in ``stems``.
    """
    tokens = list(RegexTokenizer()(text))

    def is_hit(word: str) -> bool:
        lowered = word.lower()
        if lowered in terms:
            return True
        return stemmer is not None and bool(stems) and stemmer(lowered) in stems

    hits = [token for token in tokens if is_hit(token.text)]
    if not hits and flags & SnippetFlags.EMPTY_WITHOUT_MATCH:
        return ""

    start = 0
    if hits:
        start = _best_window(hits, length)
        sentence_start = find_sentence_start(text, start)
        covered = [hit for hit in hits if start <= hit.start_char and hit.end_char <= start + length]
        if all(hit.end_char <= sentence_start + length for hit in covered):
            start = sentence_start
    end = min(len(text), start + length)
    if end < len(text):
        ends = [token.end_char for token in tokens if start < token.end_char <= end]
        if ends:
            end = ends[-1]

    hit_starts = {hit.start_char for hit in hits}
    open_mark, close_mark = highlight
    pieces: list[str] = []
    cursor = start
    for token in tokens:
        if token.start_char < start or token.end_char > end:
            continue
        if token.start_char in hit_starts:
            pieces.append(text[cursor : token.start_char])
            pieces.append(f"{open_mark}{token.text}{close_mark}")
            cursor = token.end_char
    pieces.append(text[cursor:end])
    body = "".join(pieces).strip()
    prefix = omit if start > 0 else ""
    suffix = omit if end < len(text) else ""
    return f"{prefix}{body}{suffix}"
