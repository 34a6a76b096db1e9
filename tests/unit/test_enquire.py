"""Unit tests for match windows, expansion sets and relevance sets."""

from opentelemetry import trace as trace_api
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import SimpleSpanProcessor
from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter
from opentelemetry.trace import StatusCode
import pytest

from search_bridge.callbacks import MatchDecider, MatchSpy
from search_bridge.deciders import ExpandDeciderFilterPrefix, ValueCountMatchSpy
from search_bridge.document import Document
from search_bridge.enquire import Enquire, ESetFlags, RSet
from search_bridge.exceptions import (
    CallbackError,
    CallbackLifetimeError,
    DatabaseClosedError,
    InvalidArgumentError,
    InvalidOperationError,
    StaleHandleError,
)
from search_bridge.observability import init_tracing
from search_bridge.query import Operator, Query
from search_bridge.stats import BoolWeight


class RejectEven(MatchDecider):
    def __init__(self):
        self.calls = 0

    def is_match(self, document):
        self.calls += 1
        return document.docid % 2 == 1


class RecordingSpy(MatchSpy):
    def __init__(self):
        self.seen = []

    def observe(self, document, weight):
        self.seen.append((document.docid, weight))


def _docids(mset):
    return [match.docid for match in mset]


@pytest.mark.unit
class TestMatchWindow:
    def test_window_is_ranked_and_exact(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 10, 10)

        ranked = [(match.weight, match.docid) for match in mset]
        assert mset.size == 10
        assert ranked == sorted(ranked, key=lambda item: (-item[0], -item[1]))
        assert mset.is_exact
        assert mset.matches_estimated == mset.matches_lower_bound == mset.matches_upper_bound == 30

    def test_ties_broken_by_descending_docid(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 10)

        assert _docids(mset) == [27, 23, 19, 15, 11, 7, 3, 30, 26, 22]

    def test_offset_window_matches_slice(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))
        full = enquire.get_mset(0, 10)
        page = enquire.get_mset(5, 5)

        assert _docids(page) == _docids(full)[5:10]
        assert [match.rank for match in page] == [5, 6, 7, 8, 9]
        assert page.first == 5

    def test_zero_maxitems_still_counts(self, numbered_db):
        mset = Enquire(numbered_db, Query("odd")).get_mset(0, 0)

        assert mset.empty
        assert mset.begin() == mset.end()
        assert mset.matches_estimated == 15

    def test_offset_past_end_is_empty(self, numbered_db):
        mset = Enquire(numbered_db, Query("word3")).get_mset(5, 10)

        assert mset.size == 0
        assert mset.matches_estimated == 1

    def test_no_matches(self, numbered_db):
        mset = Enquire(numbered_db, Query("missing")).get_mset(0, 10)

        assert mset.empty
        assert mset.is_exact
        assert mset.matches_upper_bound == 0

    def test_negative_arguments_rejected(self, numbered_db):
        with pytest.raises(InvalidArgumentError):
            Enquire(numbered_db, Query("common")).get_mset(-1, 10)

    def test_reverse_iteration(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 4)

        assert [match.docid for match in reversed(mset)] == list(reversed(_docids(mset)))

    def test_getitem_indexes_window(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(2, 3)

        assert mset[0].rank == 2
        assert mset[-1].docid == _docids(mset)[-1]
        with pytest.raises(IndexError):
            mset[3]

    def test_percentages(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 30)

        assert mset[0].percent == 100
        assert all(1 <= match.percent <= 100 for match in mset)
        assert mset.convert_to_percent(mset.max_attained / 2) == 50

    def test_boolean_weighting_orders_by_docid(self, numbered_db):
        enquire = Enquire(numbered_db, Query("even"))
        enquire.set_weighting_scheme(BoolWeight())

        mset = enquire.get_mset(0, 3)

        assert _docids(mset) == [30, 28, 26]
        assert mset.max_possible == 0.0

    def test_termfreq_and_matching_terms(self, numbered_db):
        query = Query.combine(Operator.OR, "word4", "even")
        enquire = Enquire(numbered_db, query)
        mset = enquire.get_mset(0, 5)

        assert mset.termfreq("even") == 15
        assert mset.termfreq("word4") == 1
        assert enquire.matching_terms(4) == ["word4", "even"]

    def test_query_returns_copy(self, numbered_db):
        query = Query("common")
        enquire = Enquire(numbered_db, query)

        assert enquire.query == query
        assert enquire.query is not query

    def test_view_of_writable_database(self, numbered_db):
        view = numbered_db.as_read_only()
        mset = Enquire(view, Query("word7")).get_mset(0, 1)

        assert _docids(mset) == [7]

    def test_closed_database_rejected(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))
        numbered_db.close()

        with pytest.raises(DatabaseClosedError):
            enquire.get_mset(0, 10)

    def test_closed_enquire_rejected(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))
        enquire.close()

        with pytest.raises(InvalidOperationError):
            enquire.get_mset(0, 10)

    def test_snippet_highlights_query_terms(self, numbered_db):
        mset = Enquire(numbered_db, Query("apple")).get_mset(0, 1)

        snippet = mset.snippet("An apple a day keeps the doctor away.", length=100)

        assert "<b>apple</b>" in snippet


@pytest.mark.unit
class TestMatchDecider:
    def test_rejecting_even_ids_reduces_count(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))

        unfiltered = enquire.get_mset(0, 50)
        filtered = enquire.get_mset(0, 50, decider=RejectEven())

        assert unfiltered.matches_estimated == 30
        assert filtered.matches_estimated == 15
        assert filtered.is_exact
        assert all(docid % 2 == 1 for docid in _docids(filtered))

    def test_plain_callable_decider(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 50, decider=lambda doc: doc.docid <= 3)

        assert sorted(_docids(mset)) == [1, 2, 3]

    def test_early_stop_gives_bounded_estimate(self, numbered_db):
        decider = RejectEven()
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 5, decider=decider)

        assert mset.size == 5
        assert not mset.is_exact
        assert mset.matches_lower_bound <= mset.matches_estimated <= mset.matches_upper_bound
        assert mset.matches_upper_bound <= 30
        assert decider.calls < 30

    def test_atleast_extends_the_scan(self, numbered_db):
        decider = RejectEven()
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 5, atleast=30, decider=decider)

        assert decider.calls == 30
        assert mset.is_exact
        assert mset.matches_estimated == 15

    def test_decider_error_fails_the_match(self, numbered_db):
        def explode(document):
            raise ValueError("bad document")

        with pytest.raises(CallbackError) as excinfo:
            Enquire(numbered_db, Query("common")).get_mset(0, 10, decider=explode)

        assert excinfo.value.role == "match_decider"
        assert isinstance(excinfo.value.__cause__, ValueError)

    def test_non_bool_result_fails_the_match(self, numbered_db):
        with pytest.raises(CallbackError):
            Enquire(numbered_db, Query("common")).get_mset(0, 10, decider=lambda doc: 1)


@pytest.mark.unit
class TestMatchSpies:
    def test_spy_sees_every_accepted_document(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))
        spy = RecordingSpy()
        enquire.add_matchspy(spy)

        mset = enquire.get_mset(0, 5, decider=RejectEven())

        assert len(spy.seen) == mset.matches_lower_bound
        assert all(docid % 2 == 1 for docid, _ in spy.seen)

    def test_value_count_spy(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))
        spy = ValueCountMatchSpy(1)
        enquire.add_matchspy(spy)

        enquire.get_mset(0, 10)

        assert spy.total == 30
        assert spy.top_values(2) == [(b"even", 15), (b"odd", 15)]

    def test_clear_matchspies_releases_handles(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))
        handle = enquire.add_matchspy(RecordingSpy())

        enquire.clear_matchspies()

        assert not handle.alive
        with pytest.raises(CallbackLifetimeError):
            handle.observe(None, 0.0)

    def test_spy_error_fails_the_match(self, numbered_db):
        enquire = Enquire(numbered_db, Query("common"))

        def broken(document, weight):
            raise RuntimeError("spy failed")

        enquire.add_matchspy(broken)
        with pytest.raises(CallbackError) as excinfo:
            enquire.get_mset(0, 10)
        assert excinfo.value.role == "match_spy"


@pytest.mark.unit
class TestRelevanceSet:
    def test_membership(self):
        rset = RSet([3, 5])
        rset.add_document(7)
        rset.remove_document(3)

        assert 5 in rset
        assert not rset.contains(3)
        assert len(rset) == 2
        assert rset.docids() == [5, 7]

    def test_accepts_matches(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 2)
        rset = RSet(mset)

        assert rset.docids() == sorted(_docids(mset))

    def test_rejects_invalid_ids(self):
        with pytest.raises(InvalidArgumentError):
            RSet([0])

    def test_relevance_feedback_changes_weights(self, numbered_db):
        enquire = Enquire(numbered_db, Query.combine(Operator.OR, "even", "odd"))

        plain = enquire.get_mset(0, 1)
        feedback = enquire.get_mset(0, 1, rset=RSet([2, 4, 6]))

        assert feedback[0].docid % 2 == 0
        assert feedback[0].weight != plain[0].weight


@pytest.mark.unit
class TestExpansion:
    def test_eset_ordered_by_weight(self, fruit_db):
        enquire = Enquire(fruit_db, Query("Sapple"))
        eset = enquire.get_eset(10, RSet([1, 3]))

        weights = [(entry.weight, entry.term) for entry in eset]
        assert weights == sorted(weights, key=lambda item: (-item[0], item[1]))
        assert "Sapple" not in [entry.term for entry in eset]
        assert eset.size <= 10

    def test_include_query_terms(self, fruit_db):
        enquire = Enquire(fruit_db, Query("Sapple"))
        eset = enquire.get_eset(100, RSet([1, 3]), ESetFlags.INCLUDE_QUERY_TERMS)

        assert "Sapple" in [entry.term for entry in eset]

    def test_decider_called_once_per_candidate(self, fruit_db):
        calls = []

        def decider(term):
            calls.append(term)
            return term.startswith("S")

        enquire = Enquire(fruit_db, Query("Sapple"))
        eset = enquire.get_eset(100, RSet([1, 3]), decider=decider)

        candidates = set()
        for docid in (1, 3):
            candidates |= {entry.term for entry in fruit_db.get_document(docid).terms()}
        candidates.discard("Sapple")
        assert sorted(calls) == sorted(candidates)
        assert all(entry.term.startswith("S") for entry in eset)

    def test_builtin_prefix_decider(self, fruit_db):
        eset = Enquire(fruit_db, Query("Sapple")).get_eset(100, RSet([1, 3]), decider=ExpandDeciderFilterPrefix("S"))

        assert eset.size > 0
        assert all(entry.term.startswith("S") for entry in eset)

    def test_min_weight_filters(self, fruit_db):
        enquire = Enquire(fruit_db, Query("Sapple"))
        everything = enquire.get_eset(100, RSet([1, 3]))
        threshold = everything.begin().weight

        strict = enquire.get_eset(100, RSet([1, 3]), min_weight=threshold)

        assert 0 < strict.size <= everything.size
        assert all(entry.weight >= threshold for entry in strict)

    def test_empty_rset_gives_empty_eset(self, fruit_db):
        eset = Enquire(fruit_db, Query("Sapple")).get_eset(10, RSet())

        assert eset.empty

    def test_expand_decider_error_fails_expansion(self, fruit_db):
        def broken(term):
            raise KeyError(term)

        with pytest.raises(CallbackError) as excinfo:
            Enquire(fruit_db, Query("Sapple")).get_eset(10, RSet([1]), decider=broken)
        assert excinfo.value.role == "expand_decider"


def _extra_document():
    document = Document("late arrival")
    document.add_term("common")
    return document


@pytest.mark.unit
class TestResultPageLifetime:
    def test_match_window_stale_after_delete(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 10)
        cursor = mset.begin()
        numbered_db.delete_document(cursor.dereference())

        with pytest.raises(StaleHandleError):
            cursor.dereference()
        with pytest.raises(StaleHandleError):
            cursor.increment()
        with pytest.raises(StaleHandleError):
            list(mset)

    def test_match_window_stale_after_add(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 10)
        cursor = mset.begin()
        numbered_db.add_document(_extra_document())

        with pytest.raises(StaleHandleError):
            cursor.dereference()
        with pytest.raises(StaleHandleError):
            list(mset)

    def test_match_window_stale_after_replace(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 10)
        numbered_db.replace_document(5, _extra_document())

        with pytest.raises(StaleHandleError):
            mset.begin().dereference()

    def test_match_window_stale_after_cancelled_transaction(self, numbered_db):
        numbered_db.begin_transaction()
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 10)
        numbered_db.cancel_transaction()

        with pytest.raises(StaleHandleError):
            list(mset)

    def test_match_window_survives_commit(self, numbered_db):
        mset = Enquire(numbered_db, Query("common")).get_mset(0, 10)
        expected = [match.docid for match in mset]
        numbered_db.commit()

        assert [match.docid for match in mset] == expected

    def test_view_match_window_stale_after_writer_change(self, numbered_db):
        view = numbered_db.as_read_only()
        mset = Enquire(view, Query("common")).get_mset(0, 10)
        cursor = mset.begin()
        numbered_db.delete_document(30)

        with pytest.raises(StaleHandleError):
            cursor.dereference()
        with pytest.raises(StaleHandleError):
            list(mset)

    def test_expansion_set_stale_after_delete(self, fruit_db):
        eset = Enquire(fruit_db, Query("Sapple")).get_eset(5, RSet([1, 3]))
        cursor = eset.begin()
        assert not eset.empty
        fruit_db.delete_document(1)

        with pytest.raises(StaleHandleError):
            cursor.dereference()
        with pytest.raises(StaleHandleError):
            cursor.increment()
        with pytest.raises(StaleHandleError):
            list(eset)

    def test_expansion_set_stale_after_metadata_change(self, fruit_db):
        eset = Enquire(fruit_db, Query("Sapple")).get_eset(5, RSet([1, 3]))
        fruit_db.set_metadata("owner", "kitchen")

        with pytest.raises(StaleHandleError):
            list(eset)


@pytest.mark.unit
class TestEnquireTracing:
    @staticmethod
    def _setup_exporter() -> InMemorySpanExporter:
        exporter = InMemorySpanExporter()
        provider = trace_api.get_tracer_provider()
        if not isinstance(provider, TracerProvider):
            provider = init_tracing("test-service")
        provider.add_span_processor(SimpleSpanProcessor(exporter))
        return exporter

    def test_get_mset_creates_span(self, numbered_db):
        exporter = self._setup_exporter()

        Enquire(numbered_db, Query("common")).get_mset(0, 10)

        spans = [span for span in exporter.get_finished_spans() if span.name == "enquire.get_mset"]
        assert len(spans) == 1
        assert spans[0].attributes["search.maxitems"] == 10
        assert spans[0].attributes["search.is_exact"] is True

    def test_callback_error_marks_span(self, numbered_db):
        exporter = self._setup_exporter()

        with pytest.raises(CallbackError):
            Enquire(numbered_db, Query("common")).get_mset(0, 10, decider=lambda doc: 1 / 0)

        spans = [span for span in exporter.get_finished_spans() if span.name == "enquire.get_mset"]
        assert spans[-1].status.status_code == StatusCode.ERROR
