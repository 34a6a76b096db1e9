"""Free-text query parsing.

:class:`QueryParser` turns what a user types into a :class:`Query`. The
syntax is the familiar search-box one::

    apple banana            default operator (OR unless changed)
    apple AND banana        boolean operators: AND, OR, XOR, NOT, AND NOT
    +apple -banana          required and excluded terms
    "green apple"           phrase
    title:apple             free-text field prefix
    type:fruit              boolean filter prefix
    app*                    wildcard
    5..10  $5..10  ..10     value ranges handled by registered range processors
    (apple OR pear) tart    grouping

Host code takes part through stoppers, custom field processors and range
processors; an exception raised by any of them fails the whole parse.
"""

from __future__ import annotations

from collections.abc import Callable, Collection
from dataclasses import dataclass
from enum import IntFlag
import logging
import re
from typing import TYPE_CHECKING, Any

from search_bridge.analyzers import Stem, Token, word_analyzer
from search_bridge.callbacks import (
    CallbackRegistry,
    FieldProcessor,
    FieldProcessorTrampoline,
    Stopper,
    StopperTrampoline,
)
from search_bridge.config import get_settings
from search_bridge.exceptions import InvalidArgumentError, InvalidOperationError, QueryParserError
from search_bridge.observability.context import bind_operation
from search_bridge.observability.metrics import OPERATION_LATENCY, track_latency
from search_bridge.observability.tracing import create_span
from search_bridge.query import Operator, Query, WildcardLimitBehavior
from search_bridge.ranges import RangeProcessor, RangeProcessorFlags, RangeProcessorTrampoline
from search_bridge.terms import StemStrategy, should_stem


if TYPE_CHECKING:
    from search_bridge.database import ReadableDatabase

logger = logging.getLogger(__name__)


class FeatureFlag(IntFlag):
    """Syntax features enabled for one parse."""

    NONE = 0
    BOOLEAN = 1
    PHRASE = 2
    LOVEHATE = 4
    BOOLEAN_ANY_CASE = 8
    WILDCARD = 16
    PURE_NOT = 32
    SPELLING_CORRECTION = 128
    AUTO_SYNONYMS = 512
    DEFAULT = BOOLEAN | PHRASE | LOVEHATE


_DEFAULT_OPS = frozenset(
    {Operator.AND, Operator.OR, Operator.NEAR, Operator.PHRASE, Operator.ELITE_SET, Operator.SYNONYM, Operator.MAX}
)
_BOOLEAN_WORDS = frozenset({"AND", "OR", "XOR", "NOT"})
_FIELD_PATTERN = re.compile(r"([A-Za-z_][A-Za-z0-9_]*):")


@dataclass
class _Token:
    kind: str
    text: str = ""
    field: str | None = None
    end: str = ""
    wildcard: bool = False


@dataclass
class _BooleanField:
    prefixes: list[str]
    grouping: str


@dataclass
class _CustomField:
    handle: FieldProcessorTrampoline
    boolean: bool
    grouping: str


class QueryParser:
    """Parses query strings into :class:`Query` trees."""

    def __init__(self) -> None:
        settings = get_settings()
        self._stemmer = Stem("none")
        self._strategy = StemStrategy.SOME
        self._default_op = Operator.OR
        self._database: ReadableDatabase | None = None
        self._prefixes: dict[str, list[str]] = {}
        self._boolean_prefixes: dict[str, _BooleanField] = {}
        self._custom_fields: dict[str, _CustomField] = {}
        self._ranges: list[tuple[RangeProcessorTrampoline, str]] = []
        self._max_expansion = settings.wildcard_max_expansion
        self._limit_behavior = WildcardLimitBehavior[settings.wildcard_limit_behavior.upper()]
        self._callbacks = CallbackRegistry("QueryParser")
        self._stoplist: list[str] = []
        self._unstem: dict[str, list[str]] = {}
        self._corrected = ""

    # Configuration
    def set_stemmer(self, stemmer: Stem | str) -> None:
        self._stemmer = stemmer if isinstance(stemmer, Stem) else Stem(stemmer)

    def set_stemming_strategy(self, strategy: StemStrategy) -> None:
        self._strategy = StemStrategy(strategy)

    def set_stopper(self, stopper: Stopper | Callable[[str], bool] | Collection[str] | None) -> None:
        if stopper is None:
            self._callbacks.unregister("stopper")
            return
        self._callbacks.register("stopper", StopperTrampoline(stopper))

    def set_default_op(self, op: Operator) -> None:
        op = Operator(op)
        if op not in _DEFAULT_OPS:
            raise InvalidArgumentError(f"{op.name} cannot be the default operator")
        self._default_op = op

    @property
    def default_op(self) -> Operator:
        return self._default_op

    def set_database(self, database: ReadableDatabase | None) -> None:
        """Database consulted for synonyms and spelling correction."""
        self._database = database

    def set_max_expansion(
        self,
        max_expansion: int,
        limit_behavior: WildcardLimitBehavior = WildcardLimitBehavior.ERROR,
    ) -> None:
        if max_expansion < 0:
            raise InvalidArgumentError("max_expansion must be non-negative")
        self._max_expansion = max_expansion
        self._limit_behavior = WildcardLimitBehavior(limit_behavior)

    def _check_field(self, field: str, boolean: bool) -> None:
        if not _FIELD_PATTERN.fullmatch(f"{field}:"):
            raise InvalidArgumentError(f"Invalid field name {field!r}")
        is_boolean = field in self._boolean_prefixes or (
            field in self._custom_fields and self._custom_fields[field].boolean
        )
        is_free = field in self._prefixes or (field in self._custom_fields and not self._custom_fields[field].boolean)
        if (boolean and is_free) or (not boolean and is_boolean):
            raise InvalidOperationError(f"Field {field!r} cannot be both a boolean and a free-text field")

    def add_prefix(self, field: str, prefix: str) -> None:
        """Map ``field:`` to the term prefix ``prefix``; repeated calls add more prefixes."""
        self._check_field(field, boolean=False)
        if field in self._custom_fields:
            raise InvalidOperationError(f"Field {field!r} already has a field processor")
        self._prefixes.setdefault(field, []).append(prefix)

    def add_boolean_prefix(self, field: str, prefix: str, grouping: str | None = None) -> None:
        """Map ``field:value`` to a filter on the term ``prefix + value``.

        Filters in the same group are ORed together and groups are ANDed;
        by default each field is its own group.
        """
        self._check_field(field, boolean=True)
        if field in self._custom_fields:
            raise InvalidOperationError(f"Field {field!r} already has a field processor")
        entry = self._boolean_prefixes.setdefault(field, _BooleanField([], grouping or field))
        entry.prefixes.append(prefix)

    def add_custom_prefix(self, field: str, processor: FieldProcessor | Callable[[str], Query | None]) -> None:
        self._add_custom(field, processor, boolean=False, grouping=None)

    def add_custom_boolean_prefix(
        self,
        field: str,
        processor: FieldProcessor | Callable[[str], Query | None],
        grouping: str | None = None,
    ) -> None:
        self._add_custom(field, processor, boolean=True, grouping=grouping)

    def _add_custom(self, field: str, processor: Any, *, boolean: bool, grouping: str | None) -> None:
        self._check_field(field, boolean=boolean)
        if field in self._prefixes or field in self._boolean_prefixes:
            raise InvalidOperationError(f"Field {field!r} already has term prefixes")
        handle = FieldProcessorTrampoline(processor)
        self._callbacks.register(f"field:{field}", handle)
        self._custom_fields[field] = _CustomField(handle, boolean, grouping or field)

    def add_rangeprocessor(
        self,
        processor: RangeProcessor | RangeProcessorTrampoline | Callable[[str, str], tuple[Any, Any]],
        slot: int = 0,
        marker: str = "",
        flags: RangeProcessorFlags = RangeProcessorFlags.NONE,
        grouping: str | None = None,
    ) -> RangeProcessorTrampoline:
        """Register a range processor; processors are tried in registration order."""
        if isinstance(processor, RangeProcessorTrampoline):
            handle = processor
        else:
            handle = RangeProcessorTrampoline(processor, slot, marker, flags)
        self._callbacks.register(f"range:{len(self._ranges)}", handle)
        self._ranges.append((handle, grouping or f"range:{handle.slot}"))
        return handle

    def close(self) -> None:
        """Release every host callback registered on this parser."""
        self._callbacks.release_all()
        self._custom_fields.clear()
        self._ranges.clear()

    # Results of the last parse
    def stoplist(self) -> list[str]:
        """Words dropped as stopwords by the last parse."""
        return list(self._stoplist)

    def unstem(self, term: str) -> list[str]:
        """Words of the last parsed query that produced ``term``."""
        return list(self._unstem.get(term, ()))

    def get_corrected_query_string(self) -> str:
        """Spelling-corrected query text, or "" if nothing was corrected."""
        return self._corrected

    # Parsing
    def parse_query(self, text: str, flags: FeatureFlag = FeatureFlag.DEFAULT, default_prefix: str = "") -> Query:
        """Parse ``text``; raises :class:`QueryParserError` on a syntax error."""
        self._stoplist = []
        self._unstem = {}
        self._corrected = ""
        flags = FeatureFlag(flags)
        with (
            create_span("query_parser.parse", attributes={"search.query_length": len(text)}),
            track_latency(OPERATION_LATENCY, operation="parse_query"),
            bind_operation("parse_query"),
        ):
            tokens = self._tokenize(text, flags)
            parse = _Parse(self, tokens, flags, default_prefix)
            query = parse.run()
            if flags & FeatureFlag.SPELLING_CORRECTION:
                self._corrected = self._correct(text, parse.words)
            logger.debug("Parsed %r into %s", text, query)
            return query

    def _tokenize(self, text: str, flags: FeatureFlag) -> list[_Token]:
        tokens: list[_Token] = []
        fields = set(self._prefixes) | set(self._boolean_prefixes) | set(self._custom_fields)
        i, n = 0, len(text)
        while i < n:
            ch = text[i]
            if ch.isspace():
                i += 1
                continue
            if ch in "()":
                tokens.append(_Token(ch))
                i += 1
                continue
            if ch in "+-" and flags & FeatureFlag.LOVEHATE and i + 1 < n and not text[i + 1].isspace():
                if text[i + 1] not in "+-()":
                    tokens.append(_Token(ch))
                    i += 1
                    continue
            if ch == '"' and flags & FeatureFlag.PHRASE:
                i = self._quoted(text, i, None, tokens)
                continue

            j = i
            while j < n and not text[j].isspace() and text[j] not in "()":
                j += 1
            chunk = text[i:j]
            field_match = _FIELD_PATTERN.match(chunk)
            if field_match and field_match.group(1) in fields and len(chunk) > field_match.end():
                field = field_match.group(1)
                value_start = i + field_match.end()
                if text[value_start] == '"' and flags & FeatureFlag.PHRASE:
                    i = self._quoted(text, value_start, field, tokens)
                    continue
                tokens.append(self._field_token(field, text[value_start:j], flags))
                i = j
                continue
            i = j

            if flags & FeatureFlag.BOOLEAN:
                word = chunk.upper() if flags & FeatureFlag.BOOLEAN_ANY_CASE else chunk
                if word in _BOOLEAN_WORDS:
                    tokens.append(_Token("op", word))
                    continue
            if ".." in chunk and self._ranges:
                start, _, end = chunk.partition("..")
                tokens.append(_Token("range", start, end=end))
                continue
            tokens.append(self._word_token(chunk, None, flags))
        return tokens

    def _quoted(self, text: str, start: int, field: str | None, tokens: list[_Token]) -> int:
        close = text.find('"', start + 1)
        if close == -1:
            close = len(text)
        content = text[start + 1 : close]
        if field is not None and field in self._boolean_prefixes:
            tokens.append(_Token("boolean", content, field=field))
        elif field is not None and field in self._custom_fields:
            tokens.append(_Token("custom", content, field=field))
        else:
            tokens.append(_Token("phrase", content, field=field))
        return close + 1

    def _field_token(self, field: str, value: str, flags: FeatureFlag) -> _Token:
        if field in self._boolean_prefixes:
            return _Token("boolean", value, field=field)
        if field in self._custom_fields:
            return _Token("custom", value, field=field)
        return self._word_token(value, field, flags)

    @staticmethod
    def _word_token(chunk: str, field: str | None, flags: FeatureFlag) -> _Token:
        if flags & FeatureFlag.WILDCARD and len(chunk) > 1 and chunk.endswith("*"):
            return _Token("word", chunk[:-1], field=field, wildcard=True)
        return _Token("word", chunk, field=field)

    def _correct(self, text: str, words: list[str]) -> str:
        if self._database is None:
            return ""
        corrected = text
        changed = False
        for word in words:
            if self._database.spelling_frequency(word) or self._database.term_exists(word):
                continue
            suggestion = self._database.spelling_suggestion(word)
            if suggestion:
                corrected = re.sub(rf"\b{re.escape(word)}\b", suggestion, corrected, count=1, flags=re.IGNORECASE)
                changed = True
        return corrected if changed else ""


class _Parse:
    """State of one recursive-descent parse over a token list."""

    def __init__(self, parser: QueryParser, tokens: list[_Token], flags: FeatureFlag, default_prefix: str) -> None:
        self.parser = parser
        self.tokens = tokens
        self.index = 0
        self.flags = flags
        self.default_prefix = default_prefix
        self.termpos = 0
        self.words: list[str] = []
        self.analyzer = word_analyzer()

    # Token stream
    def peek(self) -> _Token | None:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def take(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def peek_op(self, *names: str) -> bool:
        token = self.peek()
        return token is not None and token.kind == "op" and token.text in names

    # Grammar
    def run(self) -> Query:
        parts: list[Query] = []
        while self.peek() is not None:
            query = self.xor_expr()
            if query is not None:
                parts.append(query)
            token = self.peek()
            if token is not None and token.kind == ")":
                self.take()
            elif token is not None and query is None:
                raise QueryParserError(f"Syntax: unexpected {token.text or token.kind!r}")
        if not parts:
            return Query()
        return self.combine_default(parts)

    def xor_expr(self) -> Query | None:
        left = self.or_expr()
        while self.peek_op("XOR"):
            self.take()
            left = self.binary(Operator.XOR, "XOR", left, self.or_expr())
        return left

    def or_expr(self) -> Query | None:
        left = self.and_expr()
        while self.peek_op("OR"):
            self.take()
            left = self.binary(Operator.OR, "OR", left, self.and_expr())
        return left

    def and_expr(self) -> Query | None:
        if self.peek_op("NOT") and self.flags & FeatureFlag.PURE_NOT:
            self.take()
            right = self.prob()
            if right is None:
                raise QueryParserError("Syntax: NOT <expression>")
            left: Query | None = Query.combine(Operator.AND_NOT, Query.match_all(), right)
        else:
            left = self.prob()
        while self.peek_op("AND", "NOT"):
            name = self.take().text
            if name == "AND" and self.peek_op("NOT"):
                self.take()
                name = "AND NOT"
            op = Operator.AND if name == "AND" else Operator.AND_NOT
            left = self.binary(op, name, left, self.prob())
        return left

    @staticmethod
    def binary(op: Operator, name: str, left: Query | None, right: Query | None) -> Query:
        if left is None or right is None:
            raise QueryParserError(f"Syntax: <expression> {name} <expression>")
        return Query.combine(op, left, right)

    def prob(self) -> Query | None:
        """A run of terms joined by the default operator, with +/- and filters."""
        love: list[Query] = []
        normal: list[Query] = []
        hate: list[Query] = []
        filters: dict[str, list[Query]] = {}
        consumed = False
        while True:
            token = self.peek()
            if token is None or token.kind in ("op", ")"):
                break
            self.take()
            consumed = True
            modifier = None
            if token.kind in ("+", "-"):
                modifier = token.kind
                following = self.peek()
                if following is None or following.kind in ("op", ")"):
                    break
                token = self.take()
            query = self.primary(token, modifier == "+", filters)
            if query is None:
                continue
            if modifier == "+":
                love.append(query)
            elif modifier == "-":
                hate.append(query)
            else:
                normal.append(query)

        if not consumed:
            return None
        body: Query | None = None
        if love:
            required = Query.combine(Operator.AND, love)
            if normal and self.parser.default_op == Operator.AND:
                body = Query.combine(Operator.AND, required, *normal)
            elif normal:
                body = Query.combine(Operator.AND_MAYBE, required, self.combine_default(normal))
            else:
                body = required
        elif normal:
            body = self.combine_default(normal)
        if hate:
            body = Query.combine(Operator.AND_NOT, body if body is not None else Query.match_all(), *hate)
        if filters:
            groups = [Query.combine(Operator.OR, group) for group in filters.values()]
            combined = Query.combine(Operator.AND, groups)
            body = Query.combine(Operator.FILTER, body, combined) if body is not None else Query.scale(0, combined)
        return body if body is not None else Query()

    def combine_default(self, queries: list[Query]) -> Query:
        if len(queries) == 1:
            return queries[0]
        op = self.parser.default_op
        if op in (Operator.NEAR, Operator.PHRASE):
            if all(query.operator == Operator.LEAF_TERM for query in queries):
                return Query.combine(op, queries)
            op = Operator.AND
        return Query.combine(op, queries)

    def primary(self, token: _Token, love: bool, filters: dict[str, list[Query]]) -> Query | None:
        if token.kind == "(":
            query = self.xor_expr()
            if self.peek() is not None and self.peek().kind == ")":  # type: ignore[union-attr]
                self.take()
            return query
        if token.kind == "word":
            return self.word(token.text, token.field, token.wildcard, love)
        if token.kind == "phrase":
            return self.phrase(token.text, token.field)
        if token.kind == "boolean":
            field = self.parser._boolean_prefixes[token.field]  # type: ignore[index]
            query = Query.combine(Operator.OR, [Query.term(prefix + token.text) for prefix in field.prefixes])
            filters.setdefault(field.grouping, []).append(query)
            return None
        if token.kind == "custom":
            custom = self.parser._custom_fields[token.field]  # type: ignore[index]
            query = custom.handle.process(token.text)
            if custom.boolean:
                filters.setdefault(custom.grouping, []).append(query)
                return None
            return query
        if token.kind == "range":
            query, grouping = self.value_range(token.text, token.end)
            filters.setdefault(grouping, []).append(query)
            return None
        raise QueryParserError(f"Syntax: unexpected {token.kind!r}")

    def value_range(self, start: str, end: str) -> tuple[Query, str]:
        for handle, grouping in self.parser._ranges:
            query = handle.evaluate_range(start, end)
            if not query.is_invalid:
                return query, grouping
        raise QueryParserError(f"Unknown range operation {start}..{end}")

    def prefixes(self, field: str | None) -> list[str]:
        if field is None:
            return [self.default_prefix]
        return self.parser._prefixes[field]

    def tokens_of(self, text: str) -> list[Token]:
        return list(self.analyzer(text))

    def word(self, chunk: str, field: str | None, wildcard: bool, love: bool) -> Query | None:
        words = self.tokens_of(chunk)
        if not words:
            return None
        if len(words) > 1:
            # punctuation-joined words such as "e-mail" search as a phrase
            return self.phrase_of(words, field)
        token = words[0]
        word = token.text
        self.termpos += 1
        prefixes = self.prefixes(field)
        if wildcard:
            return Query.combine(
                Operator.OR,
                [
                    Query.wildcard(prefix + word, self.parser._max_expansion, self.parser._limit_behavior)
                    for prefix in prefixes
                ],
            )
        stopper = self.parser._callbacks.get("stopper")
        if not love and stopper is not None and stopper.is_stopword(word):  # type: ignore[attr-defined]
            self.parser._stoplist.append(word)
            return None
        self.words.append(word)
        original = chunk[token.start_char : token.end_char]
        return Query.combine(Operator.OR, [self.term(prefix, word, original) for prefix in prefixes])

    def term(self, prefix: str, word: str, original: str) -> Query:
        parser = self.parser
        strategy = parser._strategy if not parser._stemmer.is_none() else StemStrategy.NONE
        stem = strategy != StemStrategy.NONE and should_stem(word)
        if strategy in (StemStrategy.SOME, StemStrategy.SOME_FULL_POS) and original[:1].isupper():
            stem = False
        if stem:
            stemmed = parser._stemmer(word)
            z = "Z" if strategy in (StemStrategy.SOME, StemStrategy.SOME_FULL_POS, StemStrategy.ALL_Z) else ""
            name = f"{z}{prefix}{stemmed}"
        else:
            name = prefix + word
        parser._unstem.setdefault(name, []).append(word)
        query = Query.term(name, 1, self.termpos)
        if self.flags & FeatureFlag.AUTO_SYNONYMS and parser._database is not None:
            synonyms = parser._database.synonyms(name)
            if synonyms:
                query = Query.combine(
                    Operator.SYNONYM, query, *[Query.term(synonym, 1, self.termpos) for synonym in synonyms]
                )
        return query

    def phrase(self, text: str, field: str | None) -> Query | None:
        words = self.tokens_of(text)
        if not words:
            return None
        return self.phrase_of(words, field)

    def phrase_of(self, words: list[Token], field: str | None) -> Query:
        terms: list[tuple[str, int]] = []
        for token in words:
            self.termpos += 1
            self.words.append(token.text)
            terms.append((token.text, self.termpos))
        alternatives = []
        for prefix in self.prefixes(field):
            leaves = [Query.term(prefix + word, 1, pos) for word, pos in terms]
            for word, _ in terms:
                self.parser._unstem.setdefault(prefix + word, []).append(word)
            if len(leaves) == 1:
                alternatives.append(leaves[0])
            else:
                alternatives.append(Query.combine(Operator.PHRASE, leaves, parameter=len(leaves)))
        return Query.combine(Operator.OR, alternatives)
