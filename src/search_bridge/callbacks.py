"""Host extension points invoked by the engine.

Six roles let host code take part in engine decisions:

* :class:`ExpandDecider` - keep or drop a candidate expansion term
* :class:`FieldProcessor` - turn the text after a field prefix into a query
* :class:`MatchDecider` - accept or reject a candidate document
* :class:`MatchSpy` - observe every accepted document with its weight
* :class:`~search_bridge.ranges.RangeProcessor` - turn ``a..b`` into value bounds
* :class:`Stopper` - say whether a word is a stopword

The engine never calls host objects directly. Registering a host object
wraps it in a trampoline (a :class:`CallbackHandle`) that translates values
at the boundary, counts calls, and turns any exception raised by host code
into a :class:`CallbackError` that aborts the engine operation. Handles are
owned by a :class:`CallbackRegistry`; once released, invoking a handle
raises :class:`CallbackLifetimeError` instead of reaching a host object that
may no longer be valid.

Plain callables are accepted wherever a role object is, so
``enquire.get_mset(0, 10, decider=lambda doc: doc.docid % 2 == 1)`` works.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Callable, Collection, Generator, Iterator
from contextlib import contextmanager
import logging
from typing import TYPE_CHECKING, Any

from search_bridge.exceptions import (
    CallbackError,
    CallbackLifetimeError,
    InvalidArgumentError,
    SearchBridgeError,
)
from search_bridge.observability.metrics import CALLBACK_CALLS, CALLBACK_ERRORS
from search_bridge.query import Query


if TYPE_CHECKING:
    from search_bridge.document import Document

logger = logging.getLogger(__name__)


class ExpandDecider(ABC):
    """Decides whether a term may appear in an expansion set."""

    @abstractmethod
    def should_keep(self, term: str) -> bool: ...

    def __call__(self, term: str) -> bool:
        return self.should_keep(term)


class FieldProcessor(ABC):
    """Builds the query for the text following a custom field prefix.

    Returning None means the text cannot match anything.
    """

    @abstractmethod
    def process(self, text: str) -> Query | None: ...

    def __call__(self, text: str) -> Query | None:
        return self.process(text)


class MatchDecider(ABC):
    """Accepts or rejects candidate documents during matching."""

    @abstractmethod
    def is_match(self, document: Document) -> bool: ...

    def __call__(self, document: Document) -> bool:
        return self.is_match(document)


class MatchSpy(ABC):
    """Observes every document accepted into a match, with its weight."""

    @abstractmethod
    def observe(self, document: Document, weight: float) -> None: ...

    def name(self) -> str:
        return type(self).__name__

    def __call__(self, document: Document, weight: float) -> None:
        self.observe(document, weight)


class Stopper(ABC):
    """Stopword predicate shared by indexing and query parsing."""

    @abstractmethod
    def is_stopword(self, word: str) -> bool: ...

    def __call__(self, word: str) -> bool:
        return self.is_stopword(word)


class CallbackHandle:
    """Engine-side handle for one registered host object."""

    role = "callback"

    def __init__(self, target: Any) -> None:
        self._target = target
        self._released = False

    @property
    def target(self) -> Any:
        return self._target

    @property
    def alive(self) -> bool:
        return not self._released

    def release(self) -> None:
        self._released = True

    def _invoke(self, fn: Callable[..., Any], *args: Any) -> Any:
        if self._released:
            raise CallbackLifetimeError(f"{self.role} handle invoked after release")
        CALLBACK_CALLS.labels(role=self.role).inc()
        try:
            return fn(*args)
        except SearchBridgeError:
            CALLBACK_ERRORS.labels(role=self.role).inc()
            raise
        except Exception as exc:
            CALLBACK_ERRORS.labels(role=self.role).inc()
            logger.debug("%s callback raised %s: %s", self.role, type(exc).__name__, exc)
            raise CallbackError(self.role, exc) from exc

    def _predicate(self, fn: Callable[..., Any], *args: Any) -> bool:
        result = self._invoke(fn, *args)
        if not isinstance(result, bool):
            raise CallbackError(self.role, message=f"returned {type(result).__name__}, expected bool")
        return result

    def __repr__(self) -> str:
        state = "alive" if self.alive else "released"
        return f"<{type(self).__name__} {self.role} {state}>"


def _resolve(target: Any, method: str, role: str) -> Callable[..., Any]:
    bound = getattr(target, method, None)
    if callable(bound):
        return bound
    if callable(target):
        return target
    raise InvalidArgumentError(f"{role} must define {method}() or be callable, got {type(target).__name__}")


class ExpandDeciderTrampoline(CallbackHandle, ExpandDecider):
    role = "expand_decider"

    def __init__(self, target: ExpandDecider | Callable[[str], bool]) -> None:
        super().__init__(target)
        self._fn = _resolve(target, "should_keep", self.role)

    def should_keep(self, term: str) -> bool:
        return self._predicate(self._fn, term)


class FieldProcessorTrampoline(CallbackHandle, FieldProcessor):
    role = "field_processor"

    def __init__(self, target: FieldProcessor | Callable[[str], Query | None]) -> None:
        super().__init__(target)
        self._fn = _resolve(target, "process", self.role)

    def process(self, text: str) -> Query:
        result = self._invoke(self._fn, text)
        if result is None:
            return Query.invalid()
        if not isinstance(result, Query):
            raise CallbackError(self.role, message=f"returned {type(result).__name__}, expected Query or None")
        return result

    def upcast(self) -> FieldProcessor:
        """This handle viewed as a plain field processor (same instance)."""
        return self


class MatchDeciderTrampoline(CallbackHandle, MatchDecider):
    role = "match_decider"

    def __init__(self, target: MatchDecider | Callable[[Document], bool]) -> None:
        super().__init__(target)
        self._fn = _resolve(target, "is_match", self.role)

    def is_match(self, document: Document) -> bool:
        return self._predicate(self._fn, document)


class MatchSpyTrampoline(CallbackHandle, MatchSpy):
    role = "match_spy"

    def __init__(self, target: MatchSpy | Callable[[Document, float], None]) -> None:
        super().__init__(target)
        self._fn = _resolve(target, "observe", self.role)

    def observe(self, document: Document, weight: float) -> None:
        self._invoke(self._fn, document, float(weight))

    def name(self) -> str:
        if isinstance(self._target, MatchSpy):
            return str(self._invoke(self._target.name))
        return getattr(self._target, "__name__", "MatchSpy")

    def upcast(self) -> MatchSpy:
        """This handle viewed as a plain match spy (same instance)."""
        return self


class StopperTrampoline(CallbackHandle, Stopper):
    role = "stopper"

    def __init__(self, target: Stopper | Callable[[str], bool] | Collection[str]) -> None:
        super().__init__(target)
        if isinstance(target, Collection) and not isinstance(target, (str, Stopper)) and not callable(target):
            words = frozenset(target)
            self._fn: Callable[[str], bool] = words.__contains__
        else:
            self._fn = _resolve(target, "is_stopword", self.role)

    def is_stopword(self, word: str) -> bool:
        return self._predicate(self._fn, word)


class OperationScope:
    """Handles bound to a single engine operation; released when it returns."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._handles: list[CallbackHandle] = []

    def bind(self, handle: CallbackHandle) -> CallbackHandle:
        self._handles.append(handle)
        return handle

    def release(self) -> None:
        for handle in self._handles:
            handle.release()
        self._handles.clear()


class CallbackRegistry:
    """Owns the callback handles registered on one engine object."""

    def __init__(self, owner: str) -> None:
        self.owner = owner
        self._handles: dict[str, CallbackHandle] = {}

    def register(self, key: str, handle: CallbackHandle) -> CallbackHandle:
        """Register ``handle`` under ``key``, releasing any handle it replaces."""
        previous = self._handles.pop(key, None)
        if previous is not None and previous is not handle:
            previous.release()
        self._handles[key] = handle
        logger.debug("%s registered %s as %s", self.owner, handle.role, key)
        return handle

    def unregister(self, key: str) -> None:
        handle = self._handles.pop(key, None)
        if handle is not None:
            handle.release()

    def unregister_prefix(self, prefix: str) -> int:
        """Release every handle whose key starts with ``prefix``; returns how many."""
        keys = [key for key in self._handles if key.startswith(prefix)]
        for key in keys:
            self.unregister(key)
        return len(keys)

    def get(self, key: str) -> CallbackHandle | None:
        return self._handles.get(key)

    def handles(self, prefix: str = "") -> Iterator[CallbackHandle]:
        return (handle for key, handle in self._handles.items() if key.startswith(prefix))

    def release_all(self) -> None:
        for handle in self._handles.values():
            handle.release()
        self._handles.clear()

    @contextmanager
    def operation(self, name: str) -> Generator[OperationScope, None, None]:
        """Scope for handles that must only live while one operation runs."""
        scope = OperationScope(f"{self.owner}.{name}")
        try:
            yield scope
        finally:
            scope.release()

    def __len__(self) -> int:
        return len(self._handles)
