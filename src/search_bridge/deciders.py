"""Ready-made stoppers, expand deciders and match spies."""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable

from search_bridge.analyzers import DEFAULT_STOPWORDS
from search_bridge.callbacks import ExpandDecider, MatchSpy, Stopper
from search_bridge.document import Document


class SimpleStopper(Stopper):
    """Stopper backed by a set of words."""

    def __init__(self, words: Iterable[str] = ()) -> None:
        self._words = set(words)

    @classmethod
    def english(cls) -> SimpleStopper:
        return cls(DEFAULT_STOPWORDS)

    def add(self, word: str) -> None:
        self._words.add(word)

    def is_stopword(self, word: str) -> bool:
        return word in self._words

    def __len__(self) -> int:
        return len(self._words)

    def __repr__(self) -> str:
        return f"SimpleStopper({len(self._words)} words)"


class ExpandDeciderAnd(ExpandDecider):
    """Keeps a term only if both deciders keep it."""

    def __init__(self, first: ExpandDecider, second: ExpandDecider) -> None:
        self._first = first
        self._second = second

    def should_keep(self, term: str) -> bool:
        return bool(self._first(term)) and bool(self._second(term))


class ExpandDeciderFilterPrefix(ExpandDecider):
    """Keeps only terms starting with ``prefix``."""

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    def should_keep(self, term: str) -> bool:
        return term.startswith(self.prefix)


class ExpandDeciderFilterTerms(ExpandDecider):
    """Drops the given terms (typically the ones already in the query)."""

    def __init__(self, terms: Iterable[str]) -> None:
        self._rejected = frozenset(terms)

    def should_keep(self, term: str) -> bool:
        return term not in self._rejected


class ValueCountMatchSpy(MatchSpy):
    """Counts the values found in one slot across the matching documents.

    Useful for faceting: after a match, :meth:`top_values` lists the most
    common values with their counts.
    """

    def __init__(self, slot: int) -> None:
        self.slot = slot
        self._counts: Counter[bytes] = Counter()
        self._total = 0

    def observe(self, document: Document, weight: float) -> None:
        self._total += 1
        value = document.value(self.slot)
        if value:
            self._counts[value] += 1

    def name(self) -> str:
        return f"ValueCountMatchSpy({self.slot})"

    @property
    def total(self) -> int:
        """Number of documents observed."""
        return self._total

    def values(self) -> dict[bytes, int]:
        return dict(sorted(self._counts.items()))

    def top_values(self, maxvalues: int) -> list[tuple[bytes, int]]:
        """Most frequent values first, ties in ascending value order."""
        ranked = sorted(self._counts.items(), key=lambda item: (-item[1], item[0]))
        return ranked[:maxvalues]

    def reset(self) -> None:
        self._counts.clear()
        self._total = 0
