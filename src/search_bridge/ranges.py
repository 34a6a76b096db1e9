"""Range processors: turn ``start..end`` in query text into value-slot queries."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import date, datetime
from enum import IntFlag
import logging
import re
from typing import Any

from search_bridge.callbacks import CallbackHandle, _resolve
from search_bridge.exceptions import CallbackError, InvalidArgumentError, SearchBridgeError
from search_bridge.query import Query
from search_bridge.values import to_value


logger = logging.getLogger(__name__)

RangeBounds = tuple[bytes | None, bytes | None]


class RangeProcessorFlags(IntFlag):
    """Flags given when a range processor is registered."""

    NONE = 0
    SUFFIX = 1
    """Treat the marker as a suffix instead of a prefix."""
    REPEATED = 2
    """Allow the marker on both ends of the range."""
    DATE_PREFER_MDY = 4
    """Interpret ambiguous dates as month/day/year instead of day/month/year."""


class RangeProcessor(ABC):
    """Converts the two ends of a range into serialised slot values.

    Either bound may be None for an open-ended range; returning
    ``(None, None)`` declines the range so the next processor can try.
    Bounds may be any value :func:`~search_bridge.values.to_value` accepts.
    """

    @abstractmethod
    def process_range(self, start: str, end: str) -> tuple[Any, Any]: ...

    def __call__(self, start: str, end: str) -> tuple[Any, Any]:
        return self.process_range(start, end)


class NumberRangeProcessor(RangeProcessor):
    """Handle a numeric range."""

    def process_range(self, start: str, end: str) -> tuple[float | None, float | None]:
        return _parse_number(start), _parse_number(end)


class StringRangeProcessor(RangeProcessor):
    """Handle a string range (relies on lexical ordering of the stored values)."""

    def process_range(self, start: str, end: str) -> tuple[str | None, str | None]:
        return (start or None), (end or None)


_ISO_DATE = re.compile(r"^(\d{4})-(\d{1,2})-(\d{1,2})$")
_COMPACT_DATE = re.compile(r"^(\d{4})(\d{2})(\d{2})$")
_SEPARATED_DATE = re.compile(r"^(\d{1,2})[/.](\d{1,2})[/.](\d{4})$")


class DateRangeProcessor(RangeProcessor):
    """Handle a range of dates (``2020-01-31``, ``20200131`` or ``31/01/2020``)."""

    def __init__(self, flags: RangeProcessorFlags = RangeProcessorFlags.NONE) -> None:
        self.prefer_mdy = bool(flags & RangeProcessorFlags.DATE_PREFER_MDY)

    def process_range(self, start: str, end: str) -> tuple[date | None, date | None]:
        return self.parse_date(start), self.parse_date(end)

    def parse_date(self, text: str) -> date | None:
        text = text.strip()
        try:
            if match := _ISO_DATE.match(text) or _COMPACT_DATE.match(text):
                year, month, day = (int(part) for part in match.groups())
                return date(year, month, day)
            if match := _SEPARATED_DATE.match(text):
                first, second, year = (int(part) for part in match.groups())
                if self.prefer_mdy:
                    first, second = second, first
                if second > 12 >= first:
                    first, second = second, first
                return date(year, second, first)
        except ValueError:
            return None
        return None


class DateTimeRangeProcessor(RangeProcessor):
    """Handle a range of ISO-8601 timestamps."""

    def process_range(self, start: str, end: str) -> tuple[datetime | None, datetime | None]:
        return _parse_datetime(start), _parse_datetime(end)


def _parse_number(text: str) -> float | None:
    try:
        return float(text)
    except ValueError:
        return None


def _parse_datetime(text: str) -> datetime | None:
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


class RangeProcessorTrampoline(CallbackHandle, RangeProcessor):
    """A host range processor registered for one value slot."""

    role = "range_processor"

    def __init__(
        self,
        target: RangeProcessor | Callable[[str, str], tuple[Any, Any]],
        slot: int,
        marker: str = "",
        flags: RangeProcessorFlags = RangeProcessorFlags.NONE,
    ) -> None:
        super().__init__(target)
        if slot < 0:
            raise InvalidArgumentError(f"Value slots must be non-negative, got {slot}")
        self._fn = _resolve(target, "process_range", self.role)
        self.slot = slot
        self.marker = marker
        self.flags = RangeProcessorFlags(flags)

    def process_range(self, start: str, end: str) -> RangeBounds:
        result = self._invoke(self._fn, start, end)
        if not isinstance(result, tuple) or len(result) != 2:
            raise CallbackError(self.role, message=f"returned {type(result).__name__}, expected (start, end)")
        try:
            return tuple(None if bound is None else to_value(bound) for bound in result)  # type: ignore[return-value]
        except SearchBridgeError as exc:
            raise CallbackError(self.role, exc) from exc

    def upcast(self) -> RangeProcessor:
        """This handle viewed as a plain range processor (same instance)."""
        return self

    def _strip_marker(self, start: str, end: str) -> tuple[str, str] | None:
        marker = self.marker
        if not marker:
            return start, end
        repeated = bool(self.flags & RangeProcessorFlags.REPEATED)
        if self.flags & RangeProcessorFlags.SUFFIX:
            if end.endswith(marker):
                end = end[: -len(marker)]
                if repeated and start.endswith(marker):
                    start = start[: -len(marker)]
                return start, end
            if repeated and start.endswith(marker) and not end:
                return start[: -len(marker)], end
            return None
        if start.startswith(marker):
            start = start[len(marker) :]
            if repeated and end.startswith(marker):
                end = end[len(marker) :]
            return start, end
        if repeated and end.startswith(marker) and not start:
            return start, end[len(marker) :]
        return None

    def evaluate_range(self, start: str, end: str) -> Query:
        """Build the value query for ``start..end``; an invalid query means "declined"."""
        stripped = self._strip_marker(start, end)
        if stripped is None:
            return Query.invalid()
        lower, upper = self.process_range(*stripped)
        if lower is None and upper is None:
            return Query.invalid()
        if lower is None:
            return Query.value_le(self.slot, upper)
        if upper is None:
            return Query.value_ge(self.slot, lower)
        return Query.value_range(self.slot, lower, upper)
