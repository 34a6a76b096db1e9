"""Tokenization and stemming shared by the term generator and the query parser.

The tokenizer/filter split follows a Whoosh-style composable design: a
tokenizer yields positioned tokens and filters rewrite the stream. Stopword
handling is not a filter here; it is delegated to a host ``Stopper`` so that
the indexer and the parser can consult the same predicate.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Sequence
from dataclasses import dataclass
import re
from typing import Protocol

from search_bridge.exceptions import InvalidArgumentError


@dataclass
class Token:
    """Represents a token emitted by analyzers."""

    text: str
    position: int
    start_char: int
    end_char: int

    def copy_with(self, **updates: object) -> Token:
        data = {
            "text": self.text,
            "position": self.position,
            "start_char": self.start_char,
            "end_char": self.end_char,
        }
        data.update(updates)
        return Token(**data)  # type: ignore[arg-type]


class Tokenizer(Protocol):
    """Protocol implemented by tokenizers."""

    def __call__(self, text: str) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


class TokenFilter(Protocol):
    """Protocol implemented by token filters."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:  # pragma: no cover - interface definition
        ...


WORD_PATTERN = r"\w+(?:'\w+)*"


class RegexTokenizer:
    """Regex-based tokenizer that yields word tokens."""

    def __init__(self, pattern: str = WORD_PATTERN, flags: int = re.UNICODE | re.MULTILINE) -> None:
        self.pattern = re.compile(pattern, flags)

    def __call__(self, text: str) -> Iterator[Token]:
        for position, match in enumerate(self.pattern.finditer(text)):
            yield Token(
                text=match.group(0),
                position=position,
                start_char=match.start(),
                end_char=match.end(),
            )


class LowercaseFilter:
    """Filter that lowercases token text."""

    def __call__(self, tokens: Iterable[Token]) -> Iterator[Token]:
        for token in tokens:
            if token.text.islower():
                yield token
            else:
                yield token.copy_with(text=token.text.lower())


class AnalyzerPipeline:
    """Composable analyzer pipeline (tokenizer + filters)."""

    def __init__(self, tokenizer: Tokenizer, filters: Sequence[TokenFilter] | None = None) -> None:
        self.tokenizer = tokenizer
        self.filters = list(filters or [])

    def __call__(self, text: str) -> list[Token]:
        stream: Iterable[Token] = self.tokenizer(text)
        for token_filter in self.filters:
            stream = token_filter(stream)
        return list(stream)


def word_analyzer() -> AnalyzerPipeline:
    """Lowercasing word analyzer used for both indexing and query text."""
    return AnalyzerPipeline(RegexTokenizer(), [LowercaseFilter()])


DEFAULT_STOPWORDS = (
    "a",
    "an",
    "and",
    "are",
    "as",
    "at",
    "be",
    "but",
    "by",
    "for",
    "if",
    "in",
    "into",
    "is",
    "it",
    "no",
    "not",
    "of",
    "on",
    "or",
    "such",
    "that",
    "the",
    "their",
    "then",
    "there",
    "these",
    "they",
    "this",
    "to",
    "was",
    "will",
    "with",
)

_SUFFIX_RULES: tuple[tuple[str, str], ...] = (
    ("ization", "ize"),
    ("ational", "ate"),
    ("fulness", "ful"),
    ("ousness", "ous"),
    ("iveness", "ive"),
    ("tional", "tion"),
    ("biliti", "ble"),
    ("lessli", "less"),
    ("entli", "ent"),
    ("enci", "ence"),
    ("anci", "ance"),
    ("izer", "ize"),
    ("abli", "able"),
    ("alli", "al"),
    ("ator", "ate"),
    ("alism", "al"),
    ("aliti", "al"),
    ("ousli", "ous"),
    ("ation", "ate"),
    ("ness", ""),
    ("ment", ""),
    ("able", ""),
    ("ible", ""),
)

_SIMPLE_SUFFIXES: tuple[str, ...] = ("ingly", "edly", "ing", "ed", "ly", "es", "s")


def _strip_complex_suffix(lower: str) -> str | None:
    for suffix, replacement in _SUFFIX_RULES:
        if lower.endswith(suffix) and len(lower) - len(suffix) >= 2:
            candidate = lower[: -len(suffix)] + replacement
            if len(candidate) >= 2:
                return candidate
    return None


def _strip_simple_suffix(lower: str) -> str | None:
    for suffix in _SIMPLE_SUFFIXES:
        if lower.endswith(suffix) and len(lower) - len(suffix) >= 2:
            if suffix == "s" and lower.endswith("ss"):
                return None
            candidate = lower[: -len(suffix)]
            if len(candidate) >= 2:
                return candidate
    return None


def porter_stem(word: str) -> str:
    """Very small Porter-like English stemmer."""
    lower = word.lower()
    candidate = _strip_complex_suffix(lower)
    if candidate:
        return candidate
    fallback = _strip_simple_suffix(lower)
    if fallback:
        return fallback
    return lower


_STEMMERS: dict[str, Callable[[str], str] | None] = {
    "english": porter_stem,
    "en": porter_stem,
    "porter": porter_stem,
    "none": None,
    "": None,
}


class Stem:
    """A named stemming algorithm.

    ``Stem("none")`` is the identity stemmer; asking for an unknown language
    raises :class:`InvalidArgumentError`.
    """

    def __init__(self, language: str = "none") -> None:
        normalized = language.lower()
        if normalized not in _STEMMERS:
            raise InvalidArgumentError(f"Language code {language!r} unknown. Available: {self.languages()}")
        self.language = normalized
        self._stem = _STEMMERS[normalized]

    @staticmethod
    def languages() -> list[str]:
        return sorted(name for name, fn in _STEMMERS.items() if fn is not None)

    def is_none(self) -> bool:
        return self._stem is None

    def __call__(self, word: str) -> str:
        if self._stem is None:
            return word
        return self._stem(word)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, Stem) and other._stem is self._stem

    def __hash__(self) -> int:
        return hash(self._stem)

    def __repr__(self) -> str:
        return f"Stem({self.language!r})"
