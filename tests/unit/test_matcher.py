"""Unit tests for query evaluation and weighting."""

import pytest

from search_bridge.database import WritableDatabase
from search_bridge.document import Document
from search_bridge.exceptions import InvalidArgumentError, WildcardError
from search_bridge.matcher import Matcher, _within_window
from search_bridge.query import Operator, Query, WildcardCombiner, WildcardLimitBehavior
from search_bridge.stats import BoolWeight, calculate_idf, expand_weight, relevance_idf


TEXTS = [
    "the quick brown fox",
    "the lazy brown dog",
    "quick quick fox jumps",
    "brown fox brown fox",
]


@pytest.fixture
def matcher():
    db = WritableDatabase.inmemory()
    for text in TEXTS:
        document = Document(text)
        for position, word in enumerate(text.split(), start=1):
            document.add_posting(word, position)
        document.set_value(0, float(len(text)))
        db.add_document(document)
    yield Matcher(db._store())
    db.close()


@pytest.mark.unit
class TestBooleanOperators:
    def test_term(self, matcher):
        assert set(matcher.evaluate(Query("fox"))) == {1, 3, 4}

    def test_and_or(self, matcher):
        assert set(matcher.evaluate(Query("fox") & "brown")) == {1, 4}
        assert set(matcher.evaluate(Query("dog") | "jumps")) == {2, 3}

    def test_and_not(self, matcher):
        query = Query.combine(Operator.AND_NOT, "brown", "dog")

        assert set(matcher.evaluate(query)) == {1, 4}

    def test_xor(self, matcher):
        assert set(matcher.evaluate(Query("quick") ^ "brown")) == {2, 3, 4}

    def test_and_maybe_keeps_left_matches(self, matcher):
        plain = matcher.evaluate(Query("fox"))
        boosted = matcher.evaluate(Query.combine(Operator.AND_MAYBE, "fox", "quick"))

        assert set(boosted) == set(plain)
        assert boosted[1] > plain[1]
        assert boosted[4] == plain[4]

    def test_filter_keeps_left_weights(self, matcher):
        plain = matcher.evaluate(Query("fox"))
        filtered = matcher.evaluate(Query.combine(Operator.FILTER, "fox", "brown"))

        assert filtered == {docid: plain[docid] for docid in (1, 4)}

    def test_max_takes_best_subquery(self, matcher):
        fox = matcher.evaluate(Query("fox"))
        brown = matcher.evaluate(Query("brown"))
        best = matcher.evaluate(Query.combine(Operator.MAX, "fox", "brown"))

        assert best[4] == max(fox[4], brown[4])

    def test_match_all_and_nothing(self, matcher):
        assert matcher.evaluate(Query.match_all()) == {1: 0.0, 2: 0.0, 3: 0.0, 4: 0.0}
        assert matcher.evaluate(Query()) == {}
        assert matcher.evaluate(Query.invalid()) == {}

    def test_scale_weight(self, matcher):
        plain = matcher.evaluate(Query("fox"))
        scaled = matcher.evaluate(Query.scale(2, "fox"))
        zero = matcher.evaluate(Query.scale(0, "fox"))

        assert scaled[1] == pytest.approx(plain[1] * 2)
        assert set(zero) == set(plain)
        assert all(weight == 0 for weight in zero.values())


@pytest.mark.unit
class TestPositional:
    def test_phrase_is_ordered(self, matcher):
        assert set(matcher.evaluate(Query.combine(Operator.PHRASE, ["brown", "fox"]))) == {1, 4}
        assert matcher.evaluate(Query.combine(Operator.PHRASE, ["fox", "quick"])) == {}

    def test_near_is_unordered(self, matcher):
        assert set(matcher.evaluate(Query.combine(Operator.NEAR, ["fox", "quick"]))) == {3}
        assert set(matcher.evaluate(Query.combine(Operator.NEAR, ["fox", "quick"], parameter=3))) == {1, 3}

    def test_window_helper(self):
        assert _within_window([(1,), (3,)], 3, ordered=True)
        assert not _within_window([(3,), (1,)], 3, ordered=True)
        assert _within_window([(3,), (1,)], 3, ordered=False)
        assert not _within_window([(1,), ()], 5, ordered=False)
        assert not _within_window([(2,), (2,)], 2, ordered=False)


@pytest.mark.unit
class TestWildcardsAndSynonyms:
    def test_wildcard_expansion(self, matcher):
        assert matcher.expand_wildcard(Query.wildcard("b")) == ["brown"]
        assert set(matcher.evaluate(Query.wildcard("qu"))) == {1, 3}

    def test_wildcard_limit_error(self, matcher):
        query = Query.wildcard("", 2, WildcardLimitBehavior.ERROR)

        with pytest.raises(WildcardError):
            matcher.evaluate(query)

    def test_wildcard_limit_first(self, matcher):
        query = Query.wildcard("", 2, WildcardLimitBehavior.FIRST)

        assert matcher.expand_wildcard(query) == ["brown", "dog"]

    def test_wildcard_limit_most_frequent(self, matcher):
        query = Query.wildcard("", 2, WildcardLimitBehavior.MOST_FREQUENT)

        assert matcher.expand_wildcard(query) == ["brown", "fox"]

    def test_wildcard_combiners(self, matcher):
        synonym = matcher.evaluate(Query.wildcard("f"))
        ored = matcher.evaluate(Query.wildcard("f", combiner=WildcardCombiner.OR))

        assert set(synonym) == set(ored) == {1, 3, 4}

    def test_synonym_weighs_as_one_term(self, matcher):
        query = Query.combine(Operator.SYNONYM, "dog", "fox")

        scores = matcher.evaluate(query)

        assert set(scores) == {1, 2, 3, 4}
        assert scores[1] == scores[2]

    def test_value_ranges(self, matcher):
        # text lengths: 19, 18, 21, 19
        assert set(matcher.evaluate(Query.value_le(0, 18.0))) == {2}
        assert set(matcher.evaluate(Query.value_ge(0, 20.0))) == {3}
        assert set(matcher.evaluate(Query.value_range(0, 18.5, 19.0))) == {1, 4}

    def test_posting_source_rejected(self, matcher):
        with pytest.raises(InvalidArgumentError):
            matcher.evaluate(Query._node(Operator.LEAF_POSTING_SOURCE))


@pytest.mark.unit
class TestWeighting:
    def test_higher_wdf_ranks_higher(self, matcher):
        scores = matcher.evaluate(Query("quick"))

        assert scores[3] > scores[1]

    def test_boolean_weighting(self, matcher):
        boolean = Matcher(matcher.store, weighting=BoolWeight())

        assert boolean.evaluate(Query("fox")) == {1: 0.0, 3: 0.0, 4: 0.0}
        assert boolean.max_weight(Query("fox")) == 0.0

    def test_max_weight_bounds_scores(self, matcher):
        query = Query("fox") | "quick"

        assert max(matcher.evaluate(query).values()) <= matcher.max_weight(query)

    def test_elite_set_keeps_best_terms(self, matcher):
        query = Query.combine(Operator.ELITE_SET, ["the", "dog", "brown"], parameter=1)

        assert set(matcher.evaluate(query)) == {2}

    def test_relevance_set_changes_idf(self, matcher):
        feedback = Matcher(matcher.store, rset=[2])

        assert feedback.term_idf("dog") > matcher.term_idf("dog")


@pytest.mark.unit
class TestStatistics:
    def test_idf_decreases_with_frequency(self):
        assert calculate_idf(1, 100) > calculate_idf(50, 100) > 0

    def test_relevance_idf_without_rset_matches_idf(self):
        assert relevance_idf(5, 100, 0, 0) == calculate_idf(5, 100)

    def test_expand_weight(self):
        assert expand_weight(0, 3, 5, 100) == 0.0
        assert expand_weight(3, 3, 5, 100) > expand_weight(1, 3, 5, 100)
