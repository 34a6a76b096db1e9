"""Query tree evaluation.

Evaluates a :class:`~search_bridge.query.Query` against an
:class:`~search_bridge.storage.IndexStore` into a mapping of matching
document ids to weights. Term weights are BM25 with the collection's
average document length; when a relevance set is given the IDF part uses
the relevance-feedback weight instead.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
import logging

from search_bridge.exceptions import InvalidArgumentError, WildcardError
from search_bridge.query import Operator, Query, WildcardCombiner, WildcardLimitBehavior
from search_bridge.stats import BM25Weight, BoolWeight, bm25, max_bm25, relevance_idf
from search_bridge.storage import IndexStore


logger = logging.getLogger(__name__)

Scores = dict[int, float]

DEFAULT_ELITE_SET_SIZE = 10


class Matcher:
    """Evaluates queries over one store snapshot."""

    def __init__(
        self,
        store: IndexStore,
        *,
        weighting: BM25Weight | BoolWeight | None = None,
        rset: Iterable[int] = (),
    ) -> None:
        self.store = store
        self.weighting = weighting or BM25Weight()
        self.rset = frozenset(docid for docid in rset if docid in store.documents)
        stats = store.stats()
        self._doc_count = stats.doc_count
        self._avg_length = stats.average_length

    # Weights
    def _idf(self, termfreq: int, rel_freq: int) -> float:
        return relevance_idf(termfreq, self._doc_count, rel_freq, len(self.rset))

    def _weigh(self, wdf: int, docid: int, idf: float) -> float:
        if isinstance(self.weighting, BoolWeight):
            return 0.0
        tf = bm25(wdf, self.store.doc_length(docid), self._avg_length, k1=self.weighting.k1, b=self.weighting.b)
        return idf * tf

    def term_idf(self, term: str) -> float:
        docs = self.store.postings.get(term, {})
        return self._idf(len(docs), sum(1 for docid in self.rset if docid in docs))

    def _term(self, term: str, factor: float) -> Scores:
        docs = self.store.postings.get(term)
        if not docs:
            return {}
        idf = self.term_idf(term)
        return {docid: self._weigh(wdf, docid, idf) * factor for docid, wdf in docs.items()}

    def _synonym(self, terms: Sequence[str], factor: float) -> Scores:
        """Weigh several terms as if they were one: summed wdf, union termfreq."""
        combined: dict[int, int] = {}
        for term in terms:
            for docid, wdf in self.store.postings.get(term, {}).items():
                combined[docid] = combined.get(docid, 0) + wdf
        if not combined:
            return {}
        idf = self._idf(len(combined), sum(1 for docid in self.rset if docid in combined))
        return {docid: self._weigh(wdf, docid, idf) * factor for docid, wdf in combined.items()}

    # Evaluation
    def evaluate(self, query: Query) -> Scores:
        return self._eval(query, 1.0)

    def _eval(self, query: Query, factor: float) -> Scores:
        op = query.operator
        if op == Operator.LEAF_TERM:
            return self._term(query.term_name or "", factor)
        if op == Operator.LEAF_MATCH_ALL:
            return dict.fromkeys(self.store.documents, 0.0)
        if op in (Operator.LEAF_MATCH_NOTHING, Operator.INVALID):
            return {}
        if op == Operator.LEAF_POSTING_SOURCE:
            raise InvalidArgumentError("Posting sources are not supported")
        if op == Operator.SCALE_WEIGHT:
            return self._eval(next(query.subqueries()), factor * query.factor)
        if op in (Operator.VALUE_RANGE, Operator.VALUE_GE, Operator.VALUE_LE):
            return self._value_range(query)
        if op == Operator.WILDCARD:
            return self._wildcard(query, factor)

        subqueries = list(query.subqueries())
        if op == Operator.SYNONYM:
            return self._synonym_of(subqueries, factor)
        if op in (Operator.NEAR, Operator.PHRASE):
            return self._positional(query, subqueries, factor)
        if op == Operator.ELITE_SET:
            subqueries = self._elite(subqueries, query.parameter or DEFAULT_ELITE_SET_SIZE)
            op = Operator.OR

        results = [self._eval(sub, factor) for sub in subqueries]
        if op == Operator.AND:
            return _intersect(results)
        if op == Operator.FILTER:
            first = results[0]
            keep = set(first).intersection(*results[1:])
            return {docid: first[docid] for docid in keep}
        if op == Operator.OR:
            return _union(results, sum)
        if op == Operator.MAX:
            return _union(results, max)
        if op == Operator.XOR:
            counts: dict[int, int] = {}
            for scores in results:
                for docid in scores:
                    counts[docid] = counts.get(docid, 0) + 1
            merged = _union(results, sum)
            return {docid: weight for docid, weight in merged.items() if counts[docid] % 2 == 1}
        if op == Operator.AND_NOT:
            first = results[0]
            excluded = set().union(*results[1:])
            return {docid: weight for docid, weight in first.items() if docid not in excluded}
        if op == Operator.AND_MAYBE:
            first = dict(results[0])
            for scores in results[1:]:
                for docid, weight in scores.items():
                    if docid in first:
                        first[docid] += weight
            return first
        raise InvalidArgumentError(f"Unsupported query operator {op.name}")

    def _synonym_of(self, subqueries: list[Query], factor: float) -> Scores:
        terms = [sub.term_name for sub in subqueries if sub.operator == Operator.LEAF_TERM]
        scores = self._synonym(terms, factor) if terms else {}  # type: ignore[arg-type]
        others = [sub for sub in subqueries if sub.operator != Operator.LEAF_TERM]
        if not others:
            return scores
        # non-term subqueries are matched, their weight folded in as for OR
        return _union([scores, *(self._eval(sub, factor) for sub in others)], sum)

    def _elite(self, subqueries: list[Query], size: int) -> list[Query]:
        if len(subqueries) <= size:
            return subqueries
        ranked = sorted(
            enumerate(subqueries),
            key=lambda item: (-self.max_weight(item[1]), item[0]),
        )
        return [sub for _, sub in sorted(ranked[:size])]

    def _positional(self, query: Query, subqueries: list[Query], factor: float) -> Scores:
        terms = [sub.term_name or "" for sub in subqueries]
        window = query.parameter or len(terms)
        candidates = _intersect([self._term(term, factor) for term in terms])
        ordered = query.operator == Operator.PHRASE
        matched: Scores = {}
        for docid, weight in candidates.items():
            position_lists = [self.store.positions(docid, term) for term in terms]
            if _within_window(position_lists, window, ordered=ordered):
                matched[docid] = weight
        return matched

    def _value_range(self, query: Query) -> Scores:
        begin, end = query.range
        slot = query.slot
        matched: Scores = {}
        for docid, document in self.store.documents.items():
            value = document.values.get(slot)
            if value is None:
                continue
            if begin is not None and value < begin:
                continue
            if end is not None and value > end:
                continue
            matched[docid] = 0.0
        return matched

    def expand_wildcard(self, query: Query) -> list[str]:
        pattern = query.term_name or ""
        terms = self.store.terms(pattern)
        limit = query.max_expansion
        if limit and len(terms) > limit:
            behavior = query.limit_behavior
            if behavior == WildcardLimitBehavior.ERROR:
                raise WildcardError(f"Wildcard {pattern}* expands to more than {limit} terms")
            if behavior == WildcardLimitBehavior.MOST_FREQUENT:
                terms = sorted(sorted(terms, key=lambda term: -self.store.termfreq(term))[:limit])
            else:
                terms = terms[:limit]
        logger.debug("Wildcard %s* expanded to %d terms", pattern, len(terms))
        return terms

    def _wildcard(self, query: Query, factor: float) -> Scores:
        terms = self.expand_wildcard(query)
        if query.combiner == WildcardCombiner.SYNONYM:
            return self._synonym(terms, factor)
        results = [self._term(term, factor) for term in terms]
        return _union(results, max if query.combiner == WildcardCombiner.MAX else sum)

    # Bounds
    def max_weight(self, query: Query) -> float:
        """Upper bound on the weight any document can get for ``query``."""
        if isinstance(self.weighting, BoolWeight):
            return 0.0
        op = query.operator
        k1 = self.weighting.k1
        if op == Operator.LEAF_TERM:
            return max_bm25(self.term_idf(query.term_name or ""), k1=k1) if query.term_name in self.store.postings else 0.0
        if op == Operator.SCALE_WEIGHT:
            return query.factor * self.max_weight(next(query.subqueries()))
        if op == Operator.WILDCARD:
            terms = self.expand_wildcard(query)
            return max((max_bm25(self.term_idf(term), k1=k1) for term in terms), default=0.0) * (
                1 if query.combiner != WildcardCombiner.OR else max(len(terms), 1)
            )
        if op == Operator.SYNONYM:
            return max_bm25(self._doc_count and self._idf(1, 0), k1=k1)
        subs = list(query.subqueries())
        if not subs:
            return 0.0
        if op in (Operator.AND_NOT, Operator.FILTER):
            return self.max_weight(subs[0])
        if op == Operator.MAX:
            return max(self.max_weight(sub) for sub in subs)
        return sum(self.max_weight(sub) for sub in subs)


def _intersect(results: list[Scores]) -> Scores:
    if not results:
        return {}
    common = set(results[0]).intersection(*results[1:])
    return {docid: sum(scores[docid] for scores in results) for docid in common}


def _union(results: Iterable[Scores], combine) -> Scores:
    collected: dict[int, list[float]] = {}
    for scores in results:
        for docid, weight in scores.items():
            collected.setdefault(docid, []).append(weight)
    return {docid: combine(weights) for docid, weights in collected.items()}


def _within_window(position_lists: list[tuple[int, ...]], window: int, *, ordered: bool) -> bool:
    """True if one position per list fits in ``window`` consecutive positions.

    With ``ordered`` the chosen positions must also increase list by list.
    """
    if any(not positions for positions in position_lists):
        return False
    if ordered:
        for start in position_lists[0]:
            last = start
            for positions in position_lists[1:]:
                following = next((pos for pos in positions if pos > last), None)
                if following is None:
                    break
                last = following
            else:
                if last - start < window:
                    return True
        return False

    for start in sorted({pos for positions in position_lists for pos in positions}):
        used: set[int] = set()
        for positions in position_lists:
            choice = next((pos for pos in positions if start <= pos < start + window and pos not in used), None)
            if choice is None:
                break
            used.add(choice)
        else:
            return True
    return False
