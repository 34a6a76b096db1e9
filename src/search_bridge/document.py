"""Documents: stored data, indexed terms and value slots."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from search_bridge.cursors import CursorIterator, CursorSource, Liveness, TermCursor
from search_bridge.exceptions import InvalidArgumentError
from search_bridge.terms import Term
from search_bridge.values import from_value, to_value


if TYPE_CHECKING:
    from search_bridge.database import ReadableDatabase


@dataclass
class Posting:
    """Within-document frequency and positions of one term."""

    wdf: int = 0
    positions: set[int] = field(default_factory=set)

    def copy(self) -> Posting:
        return Posting(self.wdf, set(self.positions))


class Document:
    """A document as seen by the host.

    Documents read from a database are copies: modifying one has no effect
    on the database until it is passed back to ``replace_document``.
    Every modification bumps ``revision``, which invalidates term list
    cursors taken earlier.
    """

    def __init__(self, data: bytes | str = b"") -> None:
        self._data = _as_bytes(data)
        self._terms: dict[str, Posting] = {}
        self._values: dict[int, bytes] = {}
        self.docid: int | None = None
        self.revision = 0
        self._database: ReadableDatabase | None = None

    def _touch(self) -> None:
        self.revision += 1

    # Data
    @property
    def data(self) -> bytes:
        return self._data

    @data.setter
    def data(self, value: bytes | str) -> None:
        self.set_data(value)

    def set_data(self, value: bytes | str) -> None:
        self._data = _as_bytes(value)
        self._touch()

    # Terms
    def add_term(self, term: str, wdf_inc: int = 1) -> None:
        _check_term(term)
        posting = self._terms.setdefault(term, Posting())
        posting.wdf += wdf_inc
        self._touch()

    def add_boolean_term(self, term: str) -> None:
        """Add a term with zero wdf, used for filtering rather than ranking."""
        self.add_term(term, wdf_inc=0)

    def add_posting(self, term: str, position: int, wdf_inc: int = 1) -> None:
        _check_term(term)
        if position < 0:
            raise InvalidArgumentError(f"Term positions must be non-negative, got {position}")
        posting = self._terms.setdefault(term, Posting())
        posting.wdf += wdf_inc
        posting.positions.add(position)
        self._touch()

    def remove_posting(self, term: str, position: int, wdf_dec: int = 1) -> None:
        posting = self._terms.get(term)
        if posting is None or position not in posting.positions:
            raise InvalidArgumentError(f"Term {term!r} has no posting at position {position}")
        posting.positions.discard(position)
        posting.wdf = max(posting.wdf - wdf_dec, 0)
        self._touch()

    def remove_term(self, term: str) -> None:
        if term not in self._terms:
            raise InvalidArgumentError(f"Term {term!r} is not present in the document")
        del self._terms[term]
        self._touch()

    def clear_terms(self) -> None:
        self._terms.clear()
        self._touch()

    def termlist_count(self) -> int:
        return len(self._terms)

    def has_term(self, term: str) -> bool:
        return term in self._terms

    def wdf(self, term: str) -> int:
        posting = self._terms.get(term)
        return posting.wdf if posting else 0

    def length(self) -> int:
        return sum(posting.wdf for posting in self._terms.values())

    def _term_entries(self) -> list[Term]:
        database = self._database if self._database is not None and not self._database.closed else None
        entries = []
        for term in sorted(self._terms):
            posting = self._terms[term]
            termfreq = database.termfreq(term) if database is not None else 0
            entries.append(Term(term, posting.wdf, termfreq, tuple(sorted(posting.positions))))
        return entries

    def termlist_begin(self) -> TermCursor:
        return TermCursor(self._termlist_source())

    def termlist_end(self) -> TermCursor:
        source = self._termlist_source()
        return TermCursor(source, len(source))

    def _termlist_source(self) -> CursorSource[Term]:
        # one snapshot per revision so begin/end cursors compare equal
        cached = getattr(self, "_termlist_cache", None)
        if cached is not None and cached[0] == self.revision:
            return cached[1]
        source = CursorSource(self._term_entries(), Liveness(self, "document term list"))
        self._termlist_cache = (self.revision, source)
        return source

    def terms(self) -> CursorIterator[Term]:
        """Iterate the document's terms in sorted order."""
        return CursorIterator(self.termlist_begin(), self.termlist_end(), lambda cursor: cursor._entry())

    # Values
    def set_value(self, slot: int, value: Any) -> None:
        if slot < 0:
            raise InvalidArgumentError(f"Value slots must be non-negative, got {slot}")
        self._values[slot] = to_value(value)
        self._touch()

    def value(self, slot: int, kind: type = bytes) -> Any:
        """Return the value in ``slot`` decoded as ``kind``, or None if the slot is empty."""
        raw = self._values.get(slot)
        if raw is None:
            return None
        return from_value(raw, kind)

    def remove_value(self, slot: int) -> None:
        self._values.pop(slot, None)
        self._touch()

    def clear_values(self) -> None:
        self._values.clear()
        self._touch()

    def values_count(self) -> int:
        return len(self._values)

    def values(self) -> dict[int, bytes]:
        return dict(self._values)

    # Ownership
    def copy(self) -> Document:
        """Explicit deep copy; the copy shares nothing with this document."""
        clone = Document(self._data)
        clone._terms = {term: posting.copy() for term, posting in self._terms.items()}
        clone._values = dict(self._values)
        clone.docid = self.docid
        clone._database = self._database
        return clone

    def postings(self) -> dict[str, Posting]:
        return {term: posting.copy() for term, posting in self._terms.items()}

    @classmethod
    def from_postings(
        cls,
        data: bytes,
        postings: dict[str, Posting],
        values: dict[int, bytes],
        *,
        docid: int | None = None,
        database: ReadableDatabase | None = None,
    ) -> Document:
        doc = cls(data)
        doc._terms = {term: posting.copy() for term, posting in postings.items()}
        doc._values = dict(values)
        doc.docid = docid
        doc._database = database
        return doc

    def __repr__(self) -> str:
        return f"Document(docid={self.docid}, terms={len(self._terms)}, values={len(self._values)})"


def _as_bytes(data: bytes | str) -> bytes:
    if isinstance(data, str):
        return data.encode("utf-8")
    return bytes(data)


def _check_term(term: str) -> None:
    if not term:
        raise InvalidArgumentError("Empty terms are not allowed")
    if len(term.encode("utf-8")) > 245:
        raise InvalidArgumentError(f"Term too long ({len(term)} chars): {term[:32]}...")
