"""Positional cursors over engine-owned result sequences.

A cursor is a position inside a sequence that the engine produced (a match
window, an expansion set, a term list or a position list). Host code never
owns the sequence: it holds cursors, moves them, compares them and
dereferences them. The typical loop is::

    it = mset.begin()
    end = mset.end()
    while it != end:
        docid = it.dereference()
        it.increment()

Every move and dereference first checks that the object the sequence was
read from is still alive (``Liveness``). A database that was closed, or a
document/database that was modified after the sequence was produced, makes
the cursor stale instead of letting it read freed or changed state.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import TYPE_CHECKING, Any, Generic, TypeVar

from search_bridge.exceptions import CursorRangeError, DatabaseClosedError, StaleHandleError


if TYPE_CHECKING:
    from search_bridge.document import Document
    from search_bridge.terms import Expansion, Term

E = TypeVar("E")
V = TypeVar("V")


class Liveness:
    """Borrow of an engine object taken when a sequence is produced.

    ``owner`` must expose ``revision`` (bumped on every mutation) and may
    expose ``closed``.
    """

    __slots__ = ("_owner", "_revision", "_what")

    def __init__(self, owner: Any, what: str) -> None:
        self._owner = owner
        self._what = what
        self._revision = owner.revision

    @property
    def owner(self) -> Any:
        return self._owner

    def check(self) -> None:
        if getattr(self._owner, "closed", False):
            raise DatabaseClosedError(f"{self._what} used after its database was closed")
        if self._owner.revision != self._revision:
            raise StaleHandleError(
                f"{self._what} is stale: source changed from revision {self._revision} to {self._owner.revision}"
            )


class CursorSource(Generic[E]):
    """An immutable engine sequence plus the liveness borrow that guards it."""

    __slots__ = ("entries", "guard")

    def __init__(self, entries: Sequence[E], guard: Liveness | None = None) -> None:
        self.entries: tuple[E, ...] = tuple(entries)
        self.guard = guard

    def __len__(self) -> int:
        return len(self.entries)

    def check(self) -> None:
        if self.guard is not None:
            self.guard.check()

    def equivalent(self, other: CursorSource[Any]) -> bool:
        if self is other:
            return True
        same_owner = (self.guard is None and other.guard is None) or (
            self.guard is not None and other.guard is not None and self.guard.owner is other.guard.owner
        )
        return same_owner and self.entries == other.entries


class ForwardCursor(Generic[E, V]):
    """A position in an engine sequence that can only move forward."""

    kind = "cursor"

    __slots__ = ("_index", "_source")

    def __init__(self, source: CursorSource[E], index: int = 0) -> None:
        if not 0 <= index <= len(source):
            raise CursorRangeError(f"{self.kind} index {index} outside 0..{len(source)}")
        self._source = source
        self._index = index

    @property
    def index(self) -> int:
        return self._index

    def copy(self):
        """Return an independent cursor at the same position."""
        return type(self)(self._source, self._index)

    def increment(self):
        self._source.check()
        if self._index >= len(self._source):
            raise CursorRangeError(f"cannot increment {self.kind} past the end")
        self._index += 1
        return self

    def equals(self, other: object) -> bool:
        """Positional equality: same kind, same sequence, same index."""
        if type(other) is not type(self):
            return False
        return self._index == other._index and self._source.equivalent(other._source)  # type: ignore[attr-defined]

    def __eq__(self, other: object) -> bool:
        return self.equals(other)

    def __ne__(self, other: object) -> bool:
        return not self.equals(other)

    __hash__ = None  # type: ignore[assignment]

    def _entry(self) -> E:
        self._source.check()
        if self._index >= len(self._source):
            raise CursorRangeError(f"cannot dereference the end of a {self.kind}")
        return self._source.entries[self._index]

    def dereference(self) -> V:
        return self._project(self._entry())

    def _project(self, entry: E) -> V:
        return entry  # type: ignore[return-value]

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._index}/{len(self._source)}>"


class BidirectionalCursor(ForwardCursor[E, V]):
    """A cursor that can also move backwards."""

    __slots__ = ()

    def decrement(self):
        self._source.check()
        if self._index <= 0:
            raise CursorRangeError(f"cannot decrement {self.kind} before the beginning")
        self._index -= 1
        return self


class MatchCursor(BidirectionalCursor["MatchEntry", int]):
    """Cursor over a match window; dereferences to a document id."""

    kind = "match cursor"

    __slots__ = ()

    def _project(self, entry: MatchEntry) -> int:
        return entry.docid

    @property
    def weight(self) -> float:
        return self._entry().weight

    @property
    def rank(self) -> int:
        return self._entry().rank

    @property
    def percent(self) -> int:
        return self._entry().percent

    def document(self) -> Document:
        entry = self._entry()
        guard = self._source.guard
        if guard is None:
            raise StaleHandleError("match cursor has no database to load documents from")
        return guard.owner.get_document(entry.docid)


class ExpansionCursor(BidirectionalCursor["Expansion", str]):
    """Cursor over an expansion set; dereferences to a term."""

    kind = "expansion cursor"

    __slots__ = ()

    def _project(self, entry: Expansion) -> str:
        return entry.term

    @property
    def weight(self) -> float:
        return self._entry().weight


class TermCursor(ForwardCursor["Term", str]):
    """Cursor over a term list; dereferences to a term."""

    kind = "term cursor"

    __slots__ = ()

    def _project(self, entry: Term) -> str:
        return entry.term

    @property
    def wdf(self) -> int:
        return self._entry().wdf

    @property
    def termfreq(self) -> int:
        return self._entry().termfreq

    @property
    def positionlist_count(self) -> int:
        return len(self._entry().positions)

    def positionlist_begin(self) -> PositionCursor:
        return PositionCursor(CursorSource(self._entry().positions, self._source.guard))

    def positionlist_end(self) -> PositionCursor:
        positions = self._entry().positions
        return PositionCursor(CursorSource(positions, self._source.guard), len(positions))


class PositionCursor(ForwardCursor[int, int]):
    """Cursor over the positions of one term in one document."""

    kind = "position cursor"

    __slots__ = ()


class MatchEntry:
    """One row of a match window as held by the engine."""

    __slots__ = ("docid", "percent", "rank", "weight")

    def __init__(self, docid: int, weight: float, rank: int, percent: int) -> None:
        self.docid = docid
        self.weight = weight
        self.rank = rank
        self.percent = percent

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, MatchEntry):
            return NotImplemented
        return (self.docid, self.weight, self.rank) == (other.docid, other.weight, other.rank)

    def __hash__(self) -> int:
        return hash((self.docid, self.weight, self.rank))

    def __repr__(self) -> str:
        return f"MatchEntry(docid={self.docid}, weight={self.weight:.4f}, rank={self.rank})"


class CursorIterator(Generic[V]):
    """Python iterator driven by a begin/end cursor pair.

    Iterates from the front with ``next()`` and, for bidirectional cursors,
    from the back with :meth:`next_back`; the two ends meet in the middle.
    """

    def __init__(
        self,
        begin: ForwardCursor[Any, Any],
        end: ForwardCursor[Any, Any],
        project: Callable[[Any], V] | None = None,
    ) -> None:
        self._front = begin.copy()
        self._back = end.copy()
        self._project = project or (lambda cursor: cursor.dereference())

    def __iter__(self) -> CursorIterator[V]:
        return self

    def __next__(self) -> V:
        if self._front == self._back:
            raise StopIteration
        value = self._project(self._front)
        self._front.increment()
        return value

    def next_back(self) -> V:
        if not isinstance(self._back, BidirectionalCursor):
            raise TypeError(f"{self._back.kind} cannot be iterated backwards")
        if self._front == self._back:
            raise StopIteration
        self._back.decrement()
        return self._project(self._back)

    def __length_hint__(self) -> int:
        return max(self._back.index - self._front.index, 0)
