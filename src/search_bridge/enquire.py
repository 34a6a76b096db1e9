"""Query execution: match windows and expansion sets.

:class:`Enquire` runs a query against a database and returns results as
engine-owned sequences that are only read through cursors:

* :meth:`Enquire.get_mset` ranks the matching documents and returns an
  :class:`MSet`, a window of ``maxitems`` matches starting at rank ``first``.
* :meth:`Enquire.get_eset` suggests terms for query expansion from a
  relevance set and returns an :class:`ESet`.

Ranking visits candidates by descending weight, ties broken by descending
document id. Without a match decider every candidate is checked and the
match counts are exact. With one, the scan stops as soon as enough
documents have been accepted to fill the window (and ``atleast``); the
counts of the unvisited remainder are then estimated from the acceptance
rate seen so far.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from enum import IntFlag
import logging
from typing import TYPE_CHECKING

from search_bridge.analyzers import Stem
from search_bridge.callbacks import (
    CallbackRegistry,
    ExpandDecider,
    ExpandDeciderTrampoline,
    MatchDecider,
    MatchDeciderTrampoline,
    MatchSpy,
    MatchSpyTrampoline,
)
from search_bridge.config import get_settings
from search_bridge.cursors import (
    CursorIterator,
    CursorSource,
    ExpansionCursor,
    Liveness,
    MatchCursor,
    MatchEntry,
)
from search_bridge.exceptions import InvalidArgumentError, InvalidOperationError
from search_bridge.matcher import Matcher
from search_bridge.observability.context import bind_operation
from search_bridge.observability.metrics import DOCUMENTS_CHECKED, OPERATION_LATENCY, track_latency
from search_bridge.observability.tracing import create_span
from search_bridge.query import Query
from search_bridge.snippet import SnippetFlags, generate_snippet
from search_bridge.stats import BM25Weight, BoolWeight, expand_weight
from search_bridge.terms import Expansion


if TYPE_CHECKING:
    from search_bridge.database import ReadableDatabase
    from search_bridge.document import Document

logger = logging.getLogger(__name__)


class ESetFlags(IntFlag):
    NONE = 0
    INCLUDE_QUERY_TERMS = 1
    USE_EXACT_TERMFREQ = 2


class RSet:
    """A set of documents judged relevant, used for feedback and expansion."""

    def __init__(self, docids: Iterable[int | Match | MatchCursor] = ()) -> None:
        self._docids: set[int] = set()
        for item in docids:
            self.add_document(item)

    @staticmethod
    def _docid(item: int | Match | MatchCursor) -> int:
        if isinstance(item, Match):
            return item.docid
        if isinstance(item, MatchCursor):
            return item.dereference()
        docid = int(item)
        if docid <= 0:
            raise InvalidArgumentError("Document ids start at 1")
        return docid

    def add_document(self, item: int | Match | MatchCursor) -> None:
        self._docids.add(self._docid(item))

    def remove_document(self, item: int | Match | MatchCursor) -> None:
        self._docids.discard(self._docid(item))

    def contains(self, item: int | Match | MatchCursor) -> bool:
        return self._docid(item) in self._docids

    __contains__ = contains

    def docids(self) -> list[int]:
        return sorted(self._docids)

    def __len__(self) -> int:
        return len(self._docids)

    @property
    def empty(self) -> bool:
        return not self._docids

    def __repr__(self) -> str:
        return f"RSet({self.docids()})"


class Match:
    """One ranked document of an :class:`MSet`, read through its own cursor."""

    __slots__ = ("_cursor",)

    def __init__(self, cursor: MatchCursor) -> None:
        self._cursor = cursor.copy()

    @property
    def docid(self) -> int:
        return self._cursor.dereference()

    @property
    def weight(self) -> float:
        return self._cursor.weight

    @property
    def rank(self) -> int:
        return self._cursor.rank

    @property
    def percent(self) -> int:
        return self._cursor.percent

    def document(self) -> Document:
        return self._cursor.document()

    def __repr__(self) -> str:
        return f"Match(docid={self.docid}, rank={self.rank}, weight={self.weight:.4f})"


class MSet:
    """A window of ranked matches plus the counts of the whole match."""

    def __init__(
        self,
        source: CursorSource[MatchEntry],
        *,
        first: int,
        lower: int,
        estimated: int,
        upper: int,
        max_attained: float,
        max_possible: float,
        termfreqs: dict[str, int],
        query_terms: tuple[str, ...] = (),
    ) -> None:
        self._source = source
        self.first = first
        self.matches_lower_bound = lower
        self.matches_estimated = estimated
        self.matches_upper_bound = upper
        self.max_attained = max_attained
        self.max_possible = max_possible
        self._termfreqs = termfreqs
        self._query_terms = query_terms

    @property
    def size(self) -> int:
        return len(self._source)

    def __len__(self) -> int:
        return len(self._source)

    @property
    def empty(self) -> bool:
        return len(self._source) == 0

    @property
    def is_exact(self) -> bool:
        """True when every candidate was checked, so the counts are exact."""
        return self.matches_lower_bound == self.matches_upper_bound

    def begin(self) -> MatchCursor:
        return MatchCursor(self._source)

    def end(self) -> MatchCursor:
        return MatchCursor(self._source, len(self._source))

    def matches(self) -> CursorIterator[Match]:
        return CursorIterator(self.begin(), self.end(), Match)

    def __iter__(self) -> Iterator[Match]:
        return self.matches()

    def __reversed__(self) -> Iterator[Match]:
        matches = self.matches()
        while True:
            try:
                yield matches.next_back()
            except StopIteration:
                return

    def __getitem__(self, index: int) -> Match:
        """Match at ``index`` within the window (not its rank)."""
        size = len(self._source)
        if index < 0:
            index += size
        if not 0 <= index < size:
            raise IndexError(f"match window index {index} out of range 0..{size}")
        return Match(MatchCursor(self._source, index))

    def convert_to_percent(self, weight: float) -> int:
        return _percent(weight, self.max_attained)

    def termfreq(self, term: str) -> int:
        """Number of documents indexed by ``term``, as seen when the match ran."""
        return self._termfreqs.get(term, 0)

    def snippet(
        self,
        text: str,
        length: int | None = None,
        stemmer: Stem | None = None,
        flags: SnippetFlags = SnippetFlags.NONE,
        hl: tuple[str, str] = ("<b>", "</b>"),
        omit: str = "...",
    ) -> str:
        """Excerpt of ``text`` around the query terms, with the hits highlighted."""
        terms = {term for term in self._query_terms if not term.startswith("Z")}
        stems = {term[1:] for term in self._query_terms if term.startswith("Z")}
        return generate_snippet(
            text,
            terms,
            stems=stems,
            stemmer=stemmer,
            length=length or get_settings().snippet_length,
            highlight=hl,
            omit=omit,
            flags=SnippetFlags(flags),
        )

    def __repr__(self) -> str:
        return (
            f"<MSet first={self.first} size={self.size} "
            f"estimated={self.matches_estimated} exact={self.is_exact}>"
        )


class ESet:
    """Weighted expansion terms, best first."""

    def __init__(self, source: CursorSource[Expansion], *, ebound: int) -> None:
        self._source = source
        self.ebound = ebound

    @property
    def size(self) -> int:
        return len(self._source)

    def __len__(self) -> int:
        return len(self._source)

    @property
    def empty(self) -> bool:
        return len(self._source) == 0

    def begin(self) -> ExpansionCursor:
        return ExpansionCursor(self._source)

    def end(self) -> ExpansionCursor:
        return ExpansionCursor(self._source, len(self._source))

    def terms(self) -> CursorIterator[Expansion]:
        return CursorIterator(self.begin(), self.end(), lambda cursor: cursor._entry())

    def __iter__(self) -> Iterator[Expansion]:
        return self.terms()

    def __repr__(self) -> str:
        return f"<ESet size={self.size} ebound={self.ebound}>"


def _percent(weight: float, max_attained: float) -> int:
    if max_attained <= 0:
        return 100
    percent = round(weight / max_attained * 100)
    if weight > 0:
        percent = max(percent, 1)
    return min(percent, 100)


class Enquire:
    """Runs queries against one database."""

    def __init__(self, database: ReadableDatabase, query: Query | None = None, qlen: int = 0) -> None:
        self._database = database
        self._query = query if query is not None else Query()
        self._qlen = qlen
        settings = get_settings()
        self._weighting: BM25Weight | BoolWeight = BM25Weight(k1=settings.bm25_k1, b=settings.bm25_b)
        self._callbacks = CallbackRegistry("Enquire")
        self._spy_count = 0
        self._closed = False

    @property
    def database(self) -> ReadableDatabase:
        return self._database

    def set_query(self, query: Query, qlen: int = 0) -> None:
        if not isinstance(query, Query):
            raise InvalidArgumentError(f"Expected a Query, got {type(query).__name__}")
        self._query = query
        self._qlen = qlen

    @property
    def query(self) -> Query:
        """A copy of the current query."""
        return self._query.copy()

    def set_weighting_scheme(self, weighting: BM25Weight | BoolWeight) -> None:
        self._weighting = weighting

    def add_matchspy(self, spy: MatchSpy | Callable[[Document, float], None]) -> MatchSpyTrampoline:
        """Register ``spy`` to observe every document accepted by later matches."""
        self._check_open()
        self._spy_count += 1
        handle = MatchSpyTrampoline(spy)
        self._callbacks.register(f"matchspy:{self._spy_count}", handle)
        return handle

    def clear_matchspies(self) -> None:
        self._callbacks.unregister_prefix("matchspy:")

    def close(self) -> None:
        """Release every callback registered on this enquire."""
        self._callbacks.release_all()
        self._closed = True

    def _check_open(self) -> None:
        if self._closed:
            raise InvalidOperationError("Enquire has been closed")

    def _matcher(self, rset: RSet | None) -> Matcher:
        return Matcher(
            self._database._store(),
            weighting=self._weighting,
            rset=rset.docids() if rset is not None else (),
        )

    # Matching
    def get_mset(
        self,
        first: int,
        maxitems: int,
        atleast: int = 0,
        rset: RSet | None = None,
        decider: MatchDecider | Callable[[Document], bool] | None = None,
    ) -> MSet:
        """Rank the matches and return the window ``[first, first + maxitems)``."""
        self._check_open()
        if first < 0 or maxitems < 0 or atleast < 0:
            raise InvalidArgumentError("first, maxitems and atleast must be non-negative")
        attributes = {"search.first": first, "search.maxitems": maxitems, "search.atleast": atleast}
        with (
            create_span("enquire.get_mset", attributes=attributes) as span,
            track_latency(OPERATION_LATENCY, operation="get_mset"),
            bind_operation("get_mset"),
            self._callbacks.operation("get_mset") as scope,
        ):
            match_decider = None
            if decider is not None:
                match_decider = scope.bind(MatchDeciderTrampoline(decider))
            mset = self._run_match(first, maxitems, atleast, rset, match_decider)  # type: ignore[arg-type]
            span.set_attribute("search.matches_estimated", mset.matches_estimated)
            span.set_attribute("search.is_exact", mset.is_exact)
            return mset

    mset = get_mset

    def _run_match(
        self,
        first: int,
        maxitems: int,
        atleast: int,
        rset: RSet | None,
        decider: MatchDeciderTrampoline | None,
    ) -> MSet:
        database = self._database
        matcher = self._matcher(rset)
        scores = matcher.evaluate(self._query)
        candidates = sorted(scores.items(), key=lambda item: (-item[1], -item[0]))
        spies = [handle for handle in self._callbacks.handles("matchspy:") if isinstance(handle, MatchSpyTrampoline)]
        needed = max(first + maxitems, atleast, get_settings().default_check_at_least)

        accepted: list[tuple[int, float]] = []
        visited = 0
        for docid, weight in candidates:
            if decider is not None and len(accepted) >= needed:
                break
            visited += 1
            if decider is not None or spies:
                document = database.get_document(docid)
                if decider is not None and not decider.is_match(document):
                    continue
                for spy in spies:
                    spy.observe(document, weight)
            accepted.append((docid, weight))
        DOCUMENTS_CHECKED.labels(operation="get_mset").inc(visited)

        remaining = len(candidates) - visited
        lower = len(accepted)
        upper = lower + remaining
        estimated = lower
        if remaining:
            ratio = len(accepted) / visited if visited else 1.0
            estimated = min(max(lower + round(remaining * ratio), lower), upper)

        max_attained = max((weight for _, weight in accepted), default=0.0)
        window = accepted[first : first + maxitems]
        entries = [
            MatchEntry(docid, weight, first + offset, _percent(weight, max_attained))
            for offset, (docid, weight) in enumerate(window)
        ]
        source = CursorSource(entries, Liveness(database, "match set"))
        query_terms = tuple(self._query.unique_terms())
        store = matcher.store
        logger.debug(
            "Matched %d of %d candidates (window %d+%d, exact=%s)",
            lower,
            len(candidates),
            first,
            len(entries),
            remaining == 0,
        )
        return MSet(
            source,
            first=first,
            lower=lower,
            estimated=estimated,
            upper=upper,
            max_attained=max_attained,
            max_possible=matcher.max_weight(self._query),
            termfreqs={term: store.termfreq(term) for term in query_terms},
            query_terms=query_terms,
        )

    def matching_terms(self, item: int | Match | MatchCursor) -> list[str]:
        """Query terms that index the given document, in query order."""
        docid = RSet._docid(item)
        document = self._database.get_document(docid)
        seen: list[str] = []
        for term in self._query.terms():
            if term not in seen and document.has_term(term):
                seen.append(term)
        return seen

    # Expansion
    def get_eset(
        self,
        maxitems: int,
        rset: RSet,
        flags: ESetFlags = ESetFlags.NONE,
        decider: ExpandDecider | Callable[[str], bool] | None = None,
        min_weight: float = 0.0,
    ) -> ESet:
        """Suggest up to ``maxitems`` terms from the documents in ``rset``."""
        self._check_open()
        if maxitems < 0:
            raise InvalidArgumentError("maxitems must be non-negative")
        with (
            create_span("enquire.get_eset", attributes={"search.maxitems": maxitems, "search.rset_size": len(rset)}),
            track_latency(OPERATION_LATENCY, operation="get_eset"),
            bind_operation("get_eset"),
            self._callbacks.operation("get_eset") as scope,
        ):
            expand_decider = None
            if decider is not None:
                expand_decider = scope.bind(ExpandDeciderTrampoline(decider))
            return self._run_expand(maxitems, rset, ESetFlags(flags), expand_decider, min_weight)  # type: ignore[arg-type]

    eset = get_eset

    def _run_expand(
        self,
        maxitems: int,
        rset: RSet,
        flags: ESetFlags,
        decider: ExpandDeciderTrampoline | None,
        min_weight: float,
    ) -> ESet:
        store = self._database._store()
        relevant = [docid for docid in rset.docids() if docid in store.documents]
        rel_freqs: dict[str, int] = {}
        for docid in relevant:
            for term in store.documents[docid].postings:
                rel_freqs[term] = rel_freqs.get(term, 0) + 1

        excluded = set() if flags & ESetFlags.INCLUDE_QUERY_TERMS else set(self._query.terms())
        doc_count = store.doc_count
        expansions: list[Expansion] = []
        for term in sorted(rel_freqs):
            if term in excluded:
                continue
            if decider is not None and not decider.should_keep(term):
                continue
            weight = expand_weight(rel_freqs[term], len(relevant), store.termfreq(term), doc_count)
            if weight < min_weight:
                continue
            expansions.append(Expansion(term, weight))

        expansions.sort(key=lambda entry: (-entry.weight, entry.term))
        logger.debug("Expansion kept %d of %d candidate terms", len(expansions), len(rel_freqs))
        source = CursorSource(expansions[:maxitems], Liveness(self._database, "expansion set"))
        return ESet(source, ebound=len(expansions))

    def __repr__(self) -> str:
        return f"<Enquire query={self._query}>"

