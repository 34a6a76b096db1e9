"""Immutable query trees.

Queries are values: every constructor and combinator returns a new tree and
nothing ever mutates an existing one, so a query can be shared freely
between the host and the engine. ``copy()`` exists for call sites that want
an explicitly independent tree.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from enum import IntEnum
from typing import Union

from search_bridge.exceptions import InvalidArgumentError
from search_bridge.values import to_value


class Operator(IntEnum):
    """How a query combines its subqueries (or what kind of leaf it is)."""

    AND = 0
    OR = 1
    AND_NOT = 2
    XOR = 3
    AND_MAYBE = 4
    FILTER = 5
    NEAR = 6
    PHRASE = 7
    VALUE_RANGE = 8
    SCALE_WEIGHT = 9
    ELITE_SET = 10
    VALUE_GE = 11
    VALUE_LE = 12
    SYNONYM = 13
    MAX = 14
    WILDCARD = 15
    INVALID = 99
    LEAF_TERM = 100
    LEAF_POSTING_SOURCE = 101
    LEAF_MATCH_ALL = 102
    LEAF_MATCH_NOTHING = 103


class WildcardLimitBehavior(IntEnum):
    """What a wildcard does when it matches more terms than ``max_expansion``."""

    ERROR = 0
    FIRST = 1
    MOST_FREQUENT = 2


class WildcardCombiner(IntEnum):
    """Operator used to combine the terms a wildcard expands to."""

    SYNONYM = Operator.SYNONYM
    OR = Operator.OR
    MAX = Operator.MAX


_FLATTENED = frozenset({Operator.AND, Operator.OR, Operator.XOR, Operator.SYNONYM, Operator.MAX, Operator.FILTER})
_DROP_EMPTY = frozenset({Operator.OR, Operator.XOR, Operator.SYNONYM, Operator.MAX, Operator.ELITE_SET})
_EMPTY_IF_ANY_EMPTY = frozenset({Operator.AND, Operator.FILTER, Operator.NEAR, Operator.PHRASE})
_COMPOUND = _DROP_EMPTY | _EMPTY_IF_ANY_EMPTY | {Operator.AND_NOT, Operator.AND_MAYBE}
_WINDOWED = frozenset({Operator.NEAR, Operator.PHRASE, Operator.ELITE_SET})

QueryLike = Union["Query", str]


class Query:
    """A node in a query tree."""

    __slots__ = (
        "_begin",
        "_combiner",
        "_end",
        "_factor",
        "_limit_behavior",
        "_max_expansion",
        "_op",
        "_parameter",
        "_pos",
        "_slot",
        "_subqueries",
        "_term",
        "_wqf",
    )

    def __init__(self, term: str | None = None, wqf: int = 1, pos: int = 0) -> None:
        """``Query()`` is the empty query; ``Query("word")`` is a term query."""
        self._op = Operator.LEAF_MATCH_NOTHING
        self._term: str | None = None
        self._wqf = 1
        self._pos = 0
        self._subqueries: tuple[Query, ...] = ()
        self._parameter = 0
        self._factor = 1.0
        self._slot = 0
        self._begin: bytes | None = None
        self._end: bytes | None = None
        self._max_expansion = 0
        self._limit_behavior = WildcardLimitBehavior.ERROR
        self._combiner = WildcardCombiner.SYNONYM
        if term is not None:
            if term == "":
                self._op = Operator.LEAF_MATCH_ALL
            else:
                self._op = Operator.LEAF_TERM
                self._term = term
            if wqf < 0 or pos < 0:
                raise InvalidArgumentError("wqf and pos must be non-negative")
            self._wqf = wqf
            self._pos = pos

    @classmethod
    def _node(cls, op: Operator, **attrs: object) -> Query:
        query = cls()
        query._op = op
        for name, value in attrs.items():
            setattr(query, f"_{name}", value)
        return query

    # Constructors
    @classmethod
    def term(cls, term: str, wqf: int | None = None, pos: int | None = None) -> Query:
        return cls(term, 1 if wqf is None else wqf, 0 if pos is None else pos)

    @classmethod
    def match_all(cls) -> Query:
        return cls("")

    @classmethod
    def match_nothing(cls) -> Query:
        return cls()

    @classmethod
    def invalid(cls) -> Query:
        """A query that can never match, produced when a field processor declines its input."""
        return cls._node(Operator.INVALID)

    @classmethod
    def combine(cls, op: Operator, *subqueries: QueryLike | Iterable[QueryLike], parameter: int = 0) -> Query:
        """Combine subqueries (``Query`` objects or term strings) with ``op``.

        ``parameter`` is the window size for NEAR and PHRASE (0 means the
        number of subqueries) and the set size for ELITE_SET.
        """
        op = Operator(op)
        if op not in _COMPOUND:
            raise InvalidArgumentError(f"{op.name} is not a compound operator")
        items: list[Query] = []
        for sub in subqueries:
            if isinstance(sub, (Query, str)):
                items.append(_coerce(sub))
            else:
                items.extend(_coerce(item) for item in sub)

        if op in (Operator.NEAR, Operator.PHRASE):
            for item in items:
                if item._op not in (Operator.LEAF_TERM, Operator.LEAF_MATCH_NOTHING):
                    raise InvalidArgumentError(f"{op.name} only supports term subqueries")
        if op in (Operator.AND_NOT, Operator.AND_MAYBE):
            if not items or items[0].is_empty:
                return cls()
            items = [items[0]] + [item for item in items[1:] if not item.is_empty]
        elif op in _EMPTY_IF_ANY_EMPTY:
            if any(item.is_empty for item in items):
                return cls()
        else:
            items = [item for item in items if not item.is_empty]

        flat: list[Query] = []
        for item in items:
            if op in _FLATTENED and item._op == op:
                flat.extend(item._subqueries)
            else:
                flat.append(item)
        if not flat:
            return cls()
        if len(flat) == 1 and op not in _WINDOWED:
            return flat[0]
        return cls._node(op, subqueries=tuple(flat), parameter=max(parameter, 0))

    @classmethod
    def scale(cls, factor: float, subquery: QueryLike) -> Query:
        if factor < 0:
            raise InvalidArgumentError("Weight scale factor must be non-negative")
        subquery = _coerce(subquery)
        if subquery.is_empty:
            return cls()
        return cls._node(Operator.SCALE_WEIGHT, subqueries=(subquery,), factor=float(factor))

    @classmethod
    def value_range(cls, slot: int, lower: object, upper: object) -> Query:
        begin, end = to_value(lower), to_value(upper)
        if begin > end:
            return cls()
        return cls._node(Operator.VALUE_RANGE, slot=slot, begin=begin, end=end)

    @classmethod
    def value_ge(cls, slot: int, lower: object) -> Query:
        return cls._node(Operator.VALUE_GE, slot=slot, begin=to_value(lower))

    @classmethod
    def value_le(cls, slot: int, upper: object) -> Query:
        return cls._node(Operator.VALUE_LE, slot=slot, end=to_value(upper))

    @classmethod
    def wildcard(
        cls,
        pattern: str,
        max_expansion: int | None = None,
        limit_behavior: WildcardLimitBehavior | None = None,
        combiner: WildcardCombiner | None = None,
    ) -> Query:
        """Match every term starting with ``pattern``."""
        return cls._node(
            Operator.WILDCARD,
            term=pattern,
            max_expansion=max_expansion or 0,
            limit_behavior=WildcardLimitBehavior(limit_behavior or WildcardLimitBehavior.ERROR),
            combiner=WildcardCombiner(combiner or WildcardCombiner.SYNONYM),
        )

    # Accessors
    @property
    def operator(self) -> Operator:
        return self._op

    @property
    def is_empty(self) -> bool:
        return self._op == Operator.LEAF_MATCH_NOTHING

    @property
    def is_invalid(self) -> bool:
        return self._op == Operator.INVALID

    @property
    def term_name(self) -> str | None:
        return self._term

    @property
    def wqf(self) -> int:
        return self._wqf

    @property
    def pos(self) -> int:
        return self._pos

    @property
    def parameter(self) -> int:
        return self._parameter

    @property
    def factor(self) -> float:
        return self._factor

    @property
    def slot(self) -> int:
        return self._slot

    @property
    def range(self) -> tuple[bytes | None, bytes | None]:
        return self._begin, self._end

    @property
    def max_expansion(self) -> int:
        return self._max_expansion

    @property
    def limit_behavior(self) -> WildcardLimitBehavior:
        return self._limit_behavior

    @property
    def combiner(self) -> WildcardCombiner:
        return self._combiner

    def subqueries(self) -> Iterator[Query]:
        return iter(self._subqueries)

    def _leaves(self) -> Iterator[Query]:
        if self._op == Operator.LEAF_TERM:
            yield self
        for sub in self._subqueries:
            yield from sub._leaves()

    def terms(self) -> Iterator[str]:
        """Leaf terms in query position order (duplicates kept)."""
        leaves = list(self._leaves())
        ordered = sorted(enumerate(leaves), key=lambda item: (item[1]._pos, item[0]))
        return (leaf._term for _, leaf in ordered)  # type: ignore[misc]

    def unique_terms(self) -> Iterator[str]:
        """Distinct leaf terms in sorted order."""
        return iter(sorted({leaf._term for leaf in self._leaves()}))  # type: ignore[type-var]

    def copy(self) -> Query:
        """Explicit structural copy."""
        clone = Query._node(self._op)
        for name in self.__slots__:
            setattr(clone, name, getattr(self, name))
        clone._subqueries = tuple(sub.copy() for sub in self._subqueries)
        return clone

    # Operators
    def __and__(self, other: QueryLike) -> Query:
        return Query.combine(Operator.AND, self, other)

    def __or__(self, other: QueryLike) -> Query:
        return Query.combine(Operator.OR, self, other)

    def __xor__(self, other: QueryLike) -> Query:
        return Query.combine(Operator.XOR, self, other)

    def __mul__(self, factor: float) -> Query:
        return Query.scale(factor, self)

    __rmul__ = __mul__

    def _key(self) -> tuple:
        return (
            self._op,
            self._term,
            self._wqf,
            self._pos,
            tuple(sub._key() for sub in self._subqueries),
            self._parameter,
            self._factor,
            self._slot,
            self._begin,
            self._end,
            self._max_expansion,
            self._limit_behavior,
            self._combiner,
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Query):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def _describe(self) -> str:
        op = self._op
        if op == Operator.LEAF_TERM:
            text = self._term or ""
            if self._wqf != 1:
                text += f"#{self._wqf}"
            if self._pos:
                text += f"@{self._pos}"
            return text
        if op == Operator.LEAF_MATCH_ALL:
            return "<alldocuments>"
        if op == Operator.LEAF_MATCH_NOTHING:
            return ""
        if op == Operator.INVALID:
            return "<invalid>"
        if op == Operator.SCALE_WEIGHT:
            return f"{self._factor:g} * {self._subqueries[0]._describe()}"
        if op == Operator.VALUE_RANGE:
            return f"VALUE_RANGE {self._slot} {_show(self._begin)} {_show(self._end)}"
        if op == Operator.VALUE_GE:
            return f"VALUE_GE {self._slot} {_show(self._begin)}"
        if op == Operator.VALUE_LE:
            return f"VALUE_LE {self._slot} {_show(self._end)}"
        if op == Operator.WILDCARD:
            return f"WILDCARD {self._combiner.name} {self._term}"
        joiner = f" {op.name} "
        if op in _WINDOWED:
            window = self._parameter or len(self._subqueries)
            joiner = f" {op.name} {window} "
        return "(" + joiner.join(sub._describe() for sub in self._subqueries) + ")"

    def __str__(self) -> str:
        return f"Query({self._describe()})"

    def __repr__(self) -> str:
        return str(self)


def _coerce(value: QueryLike) -> Query:
    if isinstance(value, Query):
        return value
    if isinstance(value, str):
        return Query(value)
    raise InvalidArgumentError(f"Expected Query or str, got {type(value).__name__}")


def _show(value: bytes | None) -> str:
    if value is None:
        return ""
    try:
        text = value.decode("utf-8")
    except UnicodeDecodeError:
        return value.hex()
    return text if text.isprintable() else value.hex()
