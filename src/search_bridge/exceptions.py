"""Error hierarchy shared by the engine and the host-facing bridge."""

from __future__ import annotations


class SearchBridgeError(Exception):
    """Base class for every error raised by search_bridge."""


class InvalidStateError(SearchBridgeError):
    """Raised when a handle is used outside its valid state."""


class CursorRangeError(InvalidStateError, IndexError):
    """Raised when a cursor is dereferenced at the end or moved out of range."""


class StaleHandleError(InvalidStateError):
    """Raised when a cursor or view outlives the engine object it reads from."""


class DatabaseClosedError(StaleHandleError):
    """Raised when a database (or a view onto it) is used after close()."""


class CallbackLifetimeError(InvalidStateError):
    """Raised when the engine invokes a callback handle that was already released."""


class CallbackError(SearchBridgeError):
    """Raised when host code invoked from the engine fails.

    The original exception is kept as ``cause`` and chained via ``__cause__``.
    """

    def __init__(self, role: str, cause: BaseException | None = None, message: str | None = None) -> None:
        self.role = role
        self.cause = cause
        detail = message or (f"{type(cause).__name__}: {cause}" if cause is not None else "callback failed")
        super().__init__(f"{role} callback failed: {detail}")


class EngineError(SearchBridgeError):
    """Raised for failures reported by the retrieval engine itself."""


class InvalidArgumentError(EngineError, ValueError):
    """Raised when an engine operation receives an argument it cannot accept."""


class InvalidOperationError(EngineError):
    """Raised when an operation is not valid for the object's current mode."""


class QueryParserError(EngineError):
    """Raised when query text cannot be parsed."""


class WildcardError(EngineError):
    """Raised when a wildcard expands past its limit under the ERROR behaviour."""


class DatabaseError(EngineError):
    """Raised for database level failures."""


class DatabaseOpeningError(DatabaseError):
    """Raised when a database cannot be created or opened."""


class DatabaseLockError(DatabaseOpeningError):
    """Raised when a second writer tries to open a locked database."""


class DocNotFoundError(DatabaseError, KeyError):
    """Raised when a document id or unique term has no document."""
