"""Unit tests for range processors."""

from datetime import date, datetime

import pytest

from search_bridge.exceptions import CallbackError, InvalidArgumentError
from search_bridge.query import Query
from search_bridge.ranges import (
    DateRangeProcessor,
    DateTimeRangeProcessor,
    NumberRangeProcessor,
    RangeProcessor,
    RangeProcessorFlags,
    RangeProcessorTrampoline,
    StringRangeProcessor,
)


@pytest.mark.unit
class TestBuiltinProcessors:
    def test_numbers(self):
        assert NumberRangeProcessor().process_range("1.5", "10") == (1.5, 10.0)
        assert NumberRangeProcessor().process_range("", "x") == (None, None)

    def test_strings(self):
        assert StringRangeProcessor().process_range("a", "") == ("a", None)

    def test_date_formats(self):
        processor = DateRangeProcessor()

        assert processor.parse_date("2020-01-31") == date(2020, 1, 31)
        assert processor.parse_date("20200131") == date(2020, 1, 31)
        assert processor.parse_date("31/01/2020") == date(2020, 1, 31)
        assert processor.parse_date("2020-02-30") is None
        assert processor.parse_date("soon") is None

    def test_ambiguous_dates(self):
        assert DateRangeProcessor().parse_date("02/03/2020") == date(2020, 3, 2)
        mdy = DateRangeProcessor(RangeProcessorFlags.DATE_PREFER_MDY)
        assert mdy.parse_date("02/03/2020") == date(2020, 2, 3)

    def test_unambiguous_dates_ignore_preference(self):
        mdy = DateRangeProcessor(RangeProcessorFlags.DATE_PREFER_MDY)

        assert mdy.parse_date("31/01/2020") == date(2020, 1, 31)

    def test_datetimes(self):
        start, end = DateTimeRangeProcessor().process_range("2020-01-01T10:00:00", "later")

        assert start == datetime(2020, 1, 1, 10)
        assert end is None


@pytest.mark.unit
class TestRangeEvaluation:
    """A registered processor turns ``start..end`` into a value query."""

    def test_closed_range(self):
        handle = RangeProcessorTrampoline(NumberRangeProcessor(), 0)

        assert handle.evaluate_range("5", "10") == Query.value_range(0, 5.0, 10.0)

    def test_open_ended(self):
        handle = RangeProcessorTrampoline(NumberRangeProcessor(), 2)

        assert handle.evaluate_range("", "10") == Query.value_le(2, 10.0)
        assert handle.evaluate_range("5", "") == Query.value_ge(2, 5.0)

    def test_declined(self):
        handle = RangeProcessorTrampoline(NumberRangeProcessor(), 0)

        assert handle.evaluate_range("a", "b").is_invalid

    def test_prefix_marker(self):
        handle = RangeProcessorTrampoline(NumberRangeProcessor(), 1, "$")

        assert handle.evaluate_range("$5", "10") == Query.value_range(1, 5.0, 10.0)
        assert handle.evaluate_range("5", "10").is_invalid

    def test_repeated_prefix_marker(self):
        handle = RangeProcessorTrampoline(NumberRangeProcessor(), 1, "$", RangeProcessorFlags.REPEATED)

        assert handle.evaluate_range("$5", "$10") == Query.value_range(1, 5.0, 10.0)
        assert handle.evaluate_range("", "$10") == Query.value_le(1, 10.0)

    def test_suffix_marker(self):
        handle = RangeProcessorTrampoline(NumberRangeProcessor(), 1, "kg", RangeProcessorFlags.SUFFIX)

        assert handle.evaluate_range("5", "10kg") == Query.value_range(1, 5.0, 10.0)
        assert handle.evaluate_range("5kg", "10").is_invalid

    def test_callable_processor(self):
        handle = RangeProcessorTrampoline(lambda start, end: (start.upper(), end.upper()), 3)

        assert handle.evaluate_range("a", "m") == Query.value_range(3, "A", "M")

    def test_subclass_processor(self):
        class Sizes(RangeProcessor):
            def process_range(self, start, end):
                sizes = {"small": 1, "large": 3}
                return sizes.get(start), sizes.get(end)

        handle = RangeProcessorTrampoline(Sizes(), 0)

        assert handle.evaluate_range("small", "large") == Query.value_range(0, 1, 3)
        assert handle.upcast() is handle
        assert isinstance(handle.upcast(), RangeProcessor)


@pytest.mark.unit
class TestRangeErrors:
    def test_wrong_shape(self):
        handle = RangeProcessorTrampoline(lambda start, end: "nope", 0)

        with pytest.raises(CallbackError, match="expected"):
            handle.evaluate_range("1", "2")

    def test_unserialisable_bound(self):
        handle = RangeProcessorTrampoline(lambda start, end: ([1], None), 0)

        with pytest.raises(CallbackError) as excinfo:
            handle.evaluate_range("1", "2")

        assert excinfo.value.role == "range_processor"
        assert isinstance(excinfo.value.cause, InvalidArgumentError)

    def test_host_exception(self):
        def broken(start, end):
            raise ZeroDivisionError

        with pytest.raises(CallbackError) as excinfo:
            RangeProcessorTrampoline(broken, 0).evaluate_range("1", "2")

        assert isinstance(excinfo.value.__cause__, ZeroDivisionError)

    def test_negative_slot(self):
        with pytest.raises(InvalidArgumentError):
            RangeProcessorTrampoline(NumberRangeProcessor(), -1)
