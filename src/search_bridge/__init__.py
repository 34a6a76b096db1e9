"""search-bridge: a full-text search engine with host callbacks and cursor-based results."""

from search_bridge.analyzers import Stem
from search_bridge.callbacks import (
    CallbackHandle,
    CallbackRegistry,
    ExpandDecider,
    ExpandDeciderTrampoline,
    FieldProcessor,
    FieldProcessorTrampoline,
    MatchDecider,
    MatchDeciderTrampoline,
    MatchSpy,
    MatchSpyTrampoline,
    Stopper,
    StopperTrampoline,
)
from search_bridge.cursors import (
    BidirectionalCursor,
    CursorIterator,
    ExpansionCursor,
    ForwardCursor,
    MatchCursor,
    PositionCursor,
    TermCursor,
)
from search_bridge.database import (
    Database,
    DbAction,
    DbBackend,
    DbFlags,
    ReadOnlyDatabaseView,
    WritableDatabase,
)
from search_bridge.deciders import (
    ExpandDeciderAnd,
    ExpandDeciderFilterPrefix,
    ExpandDeciderFilterTerms,
    SimpleStopper,
    ValueCountMatchSpy,
)
from search_bridge.document import Document
from search_bridge.enquire import Enquire, ESet, ESetFlags, Match, MSet, RSet
from search_bridge.exceptions import (
    CallbackError,
    CallbackLifetimeError,
    CursorRangeError,
    DatabaseClosedError,
    DatabaseError,
    DatabaseLockError,
    DatabaseOpeningError,
    DocNotFoundError,
    EngineError,
    InvalidArgumentError,
    InvalidOperationError,
    InvalidStateError,
    QueryParserError,
    SearchBridgeError,
    StaleHandleError,
    WildcardError,
)
from search_bridge.parser import FeatureFlag, QueryParser
from search_bridge.query import Operator, Query, WildcardCombiner, WildcardLimitBehavior
from search_bridge.ranges import (
    DateRangeProcessor,
    DateTimeRangeProcessor,
    NumberRangeProcessor,
    RangeProcessor,
    RangeProcessorFlags,
    RangeProcessorTrampoline,
    StringRangeProcessor,
)
from search_bridge.snippet import SnippetFlags
from search_bridge.stats import BM25Weight, BoolWeight
from search_bridge.terms import Expansion, StemStrategy, StopStrategy, Term, TermGenerator
from search_bridge.values import from_value, sortable_serialise, sortable_unserialise, to_value


__version__ = "0.1.0"

__all__ = [
    "BM25Weight",
    "BidirectionalCursor",
    "BoolWeight",
    "CallbackError",
    "CallbackHandle",
    "CallbackLifetimeError",
    "CallbackRegistry",
    "CursorIterator",
    "CursorRangeError",
    "Database",
    "DatabaseClosedError",
    "DatabaseError",
    "DatabaseLockError",
    "DatabaseOpeningError",
    "DateRangeProcessor",
    "DateTimeRangeProcessor",
    "DbAction",
    "DbBackend",
    "DbFlags",
    "DocNotFoundError",
    "Document",
    "ESet",
    "ESetFlags",
    "EngineError",
    "Enquire",
    "ExpandDecider",
    "ExpandDeciderAnd",
    "ExpandDeciderFilterPrefix",
    "ExpandDeciderFilterTerms",
    "ExpandDeciderTrampoline",
    "Expansion",
    "ExpansionCursor",
    "FeatureFlag",
    "FieldProcessor",
    "FieldProcessorTrampoline",
    "ForwardCursor",
    "InvalidArgumentError",
    "InvalidOperationError",
    "InvalidStateError",
    "MSet",
    "Match",
    "MatchCursor",
    "MatchDecider",
    "MatchDeciderTrampoline",
    "MatchSpy",
    "MatchSpyTrampoline",
    "NumberRangeProcessor",
    "Operator",
    "PositionCursor",
    "Query",
    "QueryParser",
    "QueryParserError",
    "RSet",
    "RangeProcessor",
    "RangeProcessorFlags",
    "RangeProcessorTrampoline",
    "ReadOnlyDatabaseView",
    "SearchBridgeError",
    "SimpleStopper",
    "SnippetFlags",
    "StaleHandleError",
    "Stem",
    "StemStrategy",
    "StopStrategy",
    "Stopper",
    "StopperTrampoline",
    "StringRangeProcessor",
    "Term",
    "TermCursor",
    "TermGenerator",
    "ValueCountMatchSpy",
    "WildcardCombiner",
    "WildcardError",
    "WildcardLimitBehavior",
    "WritableDatabase",
    "from_value",
    "sortable_serialise",
    "sortable_unserialise",
    "to_value",
]
