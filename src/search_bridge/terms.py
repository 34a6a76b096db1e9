"""Indexing of free text into document terms."""

from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass
from enum import IntEnum
import logging
from typing import TYPE_CHECKING

from search_bridge.analyzers import Stem, word_analyzer
from search_bridge.callbacks import CallbackRegistry, Stopper, StopperTrampoline
from search_bridge.exceptions import InvalidOperationError


if TYPE_CHECKING:
    from search_bridge.document import Document

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Term:
    """A term list entry."""

    term: str
    wdf: int
    termfreq: int = 0
    positions: tuple[int, ...] = ()


@dataclass(frozen=True)
class Expansion:
    """An expansion set entry."""

    term: str
    weight: float


class StemStrategy(IntEnum):
    """Which forms of each word are indexed or searched for."""

    NONE = 0
    """Unstemmed words only."""
    SOME = 1
    """Unstemmed words with positions, plus ``Z``-prefixed stems without positions."""
    ALL = 2
    """Stemmed words only, with positions."""
    ALL_Z = 3
    """``Z``-prefixed stems only, with positions."""
    SOME_FULL_POS = 4
    """Like SOME, but the ``Z``-prefixed stems carry positions too."""


class StopStrategy(IntEnum):
    """How the term generator treats stopwords."""

    NONE = 0
    ALL = 1
    STEMMED = 2


def should_stem(word: str) -> bool:
    """Words starting with a digit are never stemmed."""
    return bool(word) and not word[0].isdigit()


class TermGenerator:
    """Splits text into words and adds the resulting terms to a document."""

    def __init__(self) -> None:
        self._document: Document | None = None
        self._stemmer = Stem("none")
        self._strategy = StemStrategy.SOME
        self._stop_strategy = StopStrategy.ALL
        self._termpos = 0
        self._analyzer = word_analyzer()
        self._callbacks = CallbackRegistry("TermGenerator")

    def set_document(self, document: Document) -> None:
        self._document = document
        self._termpos = 0

    def get_document(self) -> Document:
        if self._document is None:
            raise InvalidOperationError("TermGenerator has no document set")
        return self._document

    def set_stemmer(self, stemmer: Stem | str) -> None:
        self._stemmer = stemmer if isinstance(stemmer, Stem) else Stem(stemmer)

    def set_stemming_strategy(self, strategy: StemStrategy) -> None:
        self._strategy = StemStrategy(strategy)

    def set_stopper(self, stopper: Stopper | Callable[[str], bool] | Collection[str] | None) -> None:
        if stopper is None:
            self._callbacks.unregister("stopper")
            return
        self._callbacks.register("stopper", StopperTrampoline(stopper))

    def set_stopper_strategy(self, strategy: StopStrategy) -> None:
        self._stop_strategy = StopStrategy(strategy)

    @property
    def termpos(self) -> int:
        return self._termpos

    def set_termpos(self, termpos: int) -> None:
        self._termpos = termpos

    def increase_termpos(self, delta: int = 100) -> None:
        """Leave a gap in positions so phrases do not match across fields."""
        self._termpos += delta

    def _is_stopword(self, word: str) -> bool:
        stopper = self._callbacks.get("stopper")
        if stopper is None or self._stop_strategy == StopStrategy.NONE:
            return False
        return stopper.is_stopword(word)  # type: ignore[attr-defined]

    def index_text(self, text: str, wdf_inc: int = 1, prefix: str = "", *, with_positions: bool = True) -> None:
        document = self.get_document()
        stemming = not self._stemmer.is_none()
        strategy = self._strategy if stemming else StemStrategy.NONE
        for token in self._analyzer(text):
            self._termpos += 1
            word = token.text
            stopword = self._is_stopword(word)
            if stopword and self._stop_strategy == StopStrategy.ALL:
                continue

            if strategy in (StemStrategy.NONE, StemStrategy.SOME, StemStrategy.SOME_FULL_POS):
                self._add(document, prefix + word, wdf_inc, with_positions)

            if not stemming or stopword:
                continue
            if not should_stem(word):
                if strategy in (StemStrategy.ALL, StemStrategy.ALL_Z):
                    self._add(document, prefix + word, wdf_inc, with_positions)
                continue
            stem = self._stemmer(word)
            if strategy == StemStrategy.SOME:
                self._add(document, f"Z{prefix}{stem}", wdf_inc, False)
            elif strategy == StemStrategy.SOME_FULL_POS:
                self._add(document, f"Z{prefix}{stem}", wdf_inc, with_positions)
            elif strategy == StemStrategy.ALL:
                self._add(document, prefix + stem, wdf_inc, with_positions)
            elif strategy == StemStrategy.ALL_Z:
                self._add(document, f"Z{prefix}{stem}", wdf_inc, with_positions)

    def index_text_without_positions(self, text: str, wdf_inc: int = 1, prefix: str = "") -> None:
        self.index_text(text, wdf_inc, prefix, with_positions=False)

    def _add(self, document: Document, term: str, wdf_inc: int, with_positions: bool) -> None:
        if with_positions:
            document.add_posting(term, self._termpos, wdf_inc)
        else:
            document.add_term(term, wdf_inc)
