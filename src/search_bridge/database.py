"""Databases: read-only, writable, and read-only views onto writable ones.

Ownership is always explicit here. ``WritableDatabase.as_read_only()``
returns a view that shares the writer's state without copying it, and
``copy()`` returns an independent snapshot. Copying via the ``copy`` module
is refused so that neither can happen by accident.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from enum import IntEnum, IntFlag
import logging
from pathlib import Path
import threading
from typing import Any

from search_bridge.config import get_settings
from search_bridge.cursors import CursorIterator, CursorSource, Liveness, PositionCursor, TermCursor
from search_bridge.document import Document
from search_bridge.exceptions import (
    DatabaseClosedError,
    DatabaseLockError,
    DatabaseOpeningError,
    DocNotFoundError,
    InvalidArgumentError,
    InvalidOperationError,
)
from search_bridge.fuzzy import suggest_spelling
from search_bridge.storage import IndexStore, SQLiteIndexStorage, StoredDocument
from search_bridge.terms import Term


logger = logging.getLogger(__name__)


class DbAction(IntEnum):
    """What to do when opening a writable database that does or does not exist."""

    CREATE_OR_OPEN = 0x00
    CREATE_OR_OVERWRITE = 0x01
    CREATE = 0x02
    OPEN = 0x03


class DbBackend(IntEnum):
    AUTO = 0x000
    GLASS = 0x100
    CHERT = 0x200
    STUB = 0x300
    INMEMORY = 0x400


class DbFlags(IntFlag):
    NONE = 0
    NO_SYNC = 0x04
    FULL_SYNC = 0x08
    DANGEROUS = 0x10
    NO_TERMLIST = 0x20
    RETRY_LOCK = 0x40


_write_locks: set[Path] = set()
_write_locks_guard = threading.Lock()


def _acquire_write_lock(path: Path) -> None:
    with _write_locks_guard:
        if path in _write_locks:
            raise DatabaseLockError(f"Unable to get write lock on {path}: already locked")
        _write_locks.add(path)


def _release_write_lock(path: Path) -> None:
    with _write_locks_guard:
        _write_locks.discard(path)


class ReadableDatabase(ABC):
    """Read operations shared by every kind of database handle.

    Subclasses provide ``_state()`` (the engine state to read),
    ``closed``, ``close()`` and ``revision``.
    """

    revision: int

    @property
    @abstractmethod
    def closed(self) -> bool: ...

    @abstractmethod
    def _state(self) -> IndexStore: ...

    def _store(self) -> IndexStore:
        if self.closed:
            raise DatabaseClosedError(f"{type(self).__name__} has been closed")
        return self._state()

    # Statistics
    def doc_count(self) -> int:
        return self._store().doc_count

    def last_docid(self) -> int:
        return self._store().last_docid

    def average_length(self) -> float:
        return self._store().stats().average_length

    def total_length(self) -> int:
        return self._store().total_length

    def doc_length(self, docid: int) -> int:
        store = self._store()
        if docid not in store.documents:
            raise DocNotFoundError(f"Document {docid} not found")
        return store.doc_length(docid)

    def term_exists(self, term: str | bytes) -> bool:
        if isinstance(term, bytes):
            term = term.decode("utf-8")
        return term in self._store().postings

    def termfreq(self, term: str) -> int:
        return self._store().termfreq(term)

    def collection_freq(self, term: str) -> int:
        return self._store().collection_freq(term)

    def has_positions(self) -> bool:
        return any(
            posting.positions
            for document in self._store().documents.values()
            for posting in document.postings.values()
        )

    # Documents
    def get_document(self, docid: int) -> Document:
        """Return a copy of the stored document."""
        if docid <= 0:
            raise InvalidArgumentError("Document ids start at 1")
        stored = self._store().documents.get(docid)
        if stored is None:
            raise DocNotFoundError(f"Document {docid} not found")
        return Document.from_postings(stored.data, stored.postings, stored.values, docid=docid, database=self)

    def docids(self) -> list[int]:
        return sorted(self._store().documents)

    # Term lists
    def _term_source(self, prefix: str) -> CursorSource[Term]:
        store = self._store()
        entries = [Term(term, store.collection_freq(term), store.termfreq(term)) for term in store.terms(prefix)]
        return CursorSource(entries, Liveness(self, "database term list"))

    def allterms_begin(self, prefix: str = "") -> TermCursor:
        return TermCursor(self._allterms_cached(prefix))

    def allterms_end(self, prefix: str = "") -> TermCursor:
        source = self._allterms_cached(prefix)
        return TermCursor(source, len(source))

    def _allterms_cached(self, prefix: str) -> CursorSource[Term]:
        cache: dict[str, tuple[int, CursorSource[Term]]] = self.__dict__.setdefault("_allterms_cache", {})
        cached = cache.get(prefix)
        if cached is not None and cached[0] == self.revision:
            return cached[1]
        source = self._term_source(prefix)
        cache[prefix] = (self.revision, source)
        return source

    def allterms(self, prefix: str = "") -> CursorIterator[str]:
        return CursorIterator(self.allterms_begin(prefix), self.allterms_end(prefix))

    def termlist_begin(self, docid: int) -> TermCursor:
        return self.get_document(docid).termlist_begin()

    def positionlist_begin(self, docid: int, term: str) -> PositionCursor:
        return PositionCursor(self._position_source(docid, term))

    def positionlist_end(self, docid: int, term: str) -> PositionCursor:
        source = self._position_source(docid, term)
        return PositionCursor(source, len(source))

    def _position_source(self, docid: int, term: str) -> CursorSource[int]:
        cache: dict[tuple[int, str], tuple[int, CursorSource[int]]] = self.__dict__.setdefault("_positions_cache", {})
        cached = cache.get((docid, term))
        if cached is not None and cached[0] == self.revision:
            return cached[1]
        source = CursorSource(self._store().positions(docid, term), Liveness(self, "position list"))
        cache[(docid, term)] = (self.revision, source)
        return source

    def positions(self, docid: int, term: str) -> CursorIterator[int]:
        return CursorIterator(self.positionlist_begin(docid, term), self.positionlist_end(docid, term))

    # Metadata, synonyms, spelling
    def get_metadata(self, key: str) -> bytes:
        if not key:
            raise InvalidArgumentError("Empty metadata keys are invalid")
        return self._store().metadata.get(key, b"")

    metadata = get_metadata

    def metadata_keys(self, prefix: str = "") -> list[str]:
        return sorted(key for key in self._store().metadata if key.startswith(prefix))

    def synonyms(self, term: str) -> list[str]:
        return sorted(self._store().synonyms.get(term, ()))

    def synonym_keys(self, prefix: str = "") -> list[str]:
        return sorted(term for term, words in self._store().synonyms.items() if words and term.startswith(prefix))

    def spelling_frequency(self, word: str) -> int:
        return self._store().spellings.get(word, 0)

    def spelling_suggestion(self, word: str, max_edit_distance: int = 2) -> str:
        return suggest_spelling(word, self._store().spellings, max_edit_distance)

    # Ownership
    def copy(self) -> Database:
        """Explicit deep copy into an independent in-memory read-only database."""
        return Database(self._store().copy())

    def __copy__(self) -> Any:
        raise TypeError(f"{type(self).__name__} is not implicitly copyable; use copy() or as_read_only()")

    def __deepcopy__(self, memo: dict) -> Any:
        raise TypeError(f"{type(self).__name__} is not implicitly copyable; use copy()")

    def __enter__(self):
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @abstractmethod
    def close(self) -> None: ...


class Database(ReadableDatabase):
    """A read-only database."""

    def __init__(self, store: IndexStore | None = None, *, storage: SQLiteIndexStorage | None = None) -> None:
        self._index = store if store is not None else IndexStore()
        self._storage = storage
        self._closed = False
        self.revision = 0

    @classmethod
    def open(cls, path: str | Path, backend: DbBackend = DbBackend.AUTO) -> Database:
        """Open the committed state of the database at ``path``."""
        if DbBackend(backend) in (DbBackend.STUB, DbBackend.INMEMORY):
            raise InvalidArgumentError(f"Cannot open a {DbBackend(backend).name} backend from a path")
        storage = SQLiteIndexStorage(Path(path), busy_timeout_ms=get_settings().sqlite_busy_timeout_ms)
        store = storage.load()
        logger.info("Opened database %s (%d documents)", path, store.doc_count)
        return cls(store, storage=storage)

    @property
    def closed(self) -> bool:
        return self._closed

    def _state(self) -> IndexStore:
        return self._index

    def reopen(self) -> bool:
        """Reload the latest committed state; returns True if anything was reloaded."""
        self._store()
        if self._storage is None:
            return False
        self._index = self._storage.load()
        self.revision += 1
        return True

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self.revision += 1
            logger.debug("Closed database")

    def __repr__(self) -> str:
        state = "closed" if self._closed else f"{self._index.doc_count} docs"
        return f"<Database {state}>"


class ReadOnlyDatabaseView(ReadableDatabase):
    """A read-only view sharing a writable database's state.

    Nothing is copied: the view sees every change made through the writer
    and fails with ``DatabaseClosedError`` once the writer is closed.
    """

    def __init__(self, owner: WritableDatabase) -> None:
        self._owner = owner
        self._detached = False

    @property
    def closed(self) -> bool:
        return self._detached or self._owner.closed

    @property
    def revision(self) -> int:  # type: ignore[override]
        return self._owner.revision

    def _state(self) -> IndexStore:
        return self._owner._state()

    def close(self) -> None:
        """Detach this view; the underlying writable database stays open."""
        self._detached = True

    def __repr__(self) -> str:
        return f"<ReadOnlyDatabaseView of {self._owner!r}>"


class WritableDatabase(ReadableDatabase):
    """A database that can be modified."""

    def __init__(
        self,
        store: IndexStore | None = None,
        *,
        storage: SQLiteIndexStorage | None = None,
        flags: DbFlags = DbFlags.NONE,
    ) -> None:
        self._index = store if store is not None else IndexStore()
        self._storage = storage
        self.flags = DbFlags(flags)
        self._closed = False
        self._transaction: tuple[IndexStore, bool] | None = None
        self.revision = 0

    @classmethod
    def open(
        cls,
        path: str | Path,
        action: DbAction = DbAction.CREATE_OR_OPEN,
        backend: DbBackend = DbBackend.AUTO,
        flags: DbFlags = DbFlags.NONE,
    ) -> WritableDatabase:
        """Open (or create) the database at ``path`` for writing."""
        backend = DbBackend(backend)
        if backend == DbBackend.INMEMORY:
            return cls.inmemory()
        if backend == DbBackend.STUB:
            raise InvalidArgumentError("Stub database files are not supported")
        action = DbAction(action)
        flags = DbFlags(flags)
        directory = Path(path).resolve()
        synchronous = "FULL" if flags & DbFlags.FULL_SYNC else "NORMAL"
        if flags & (DbFlags.NO_SYNC | DbFlags.DANGEROUS):
            synchronous = "OFF"
        storage = SQLiteIndexStorage(
            directory, busy_timeout_ms=get_settings().sqlite_busy_timeout_ms, synchronous=synchronous
        )

        exists = storage.exists()
        if action == DbAction.OPEN and not exists:
            raise DatabaseOpeningError(f"No database at {directory}")
        if action == DbAction.CREATE and exists:
            raise DatabaseOpeningError(f"Database already exists at {directory}")

        _acquire_write_lock(directory)
        try:
            if action == DbAction.CREATE_OR_OVERWRITE or not exists:
                storage.create(overwrite=action == DbAction.CREATE_OR_OVERWRITE)
            store = storage.load()
        except Exception:
            _release_write_lock(directory)
            raise
        logger.info("Opened writable database %s (%s, %d documents)", directory, action.name, store.doc_count)
        return cls(store, storage=storage, flags=flags)

    @classmethod
    def inmemory(cls) -> WritableDatabase:
        return cls()

    @property
    def closed(self) -> bool:
        return self._closed

    def _state(self) -> IndexStore:
        return self._index

    def _writable(self) -> IndexStore:
        store = self._store()
        self.revision += 1
        return store

    # Documents
    def add_document(self, document: Document) -> int:
        store = self._writable()
        docid = store.last_docid + 1
        store.put(docid, _stored(document))
        logger.debug("Added document %d", docid)
        return docid

    def replace_document(self, docid: int, document: Document) -> None:
        """Replace document ``docid``, adding it under that id if it does not exist."""
        if docid <= 0:
            raise InvalidArgumentError("Document ids start at 1")
        self._writable().put(docid, _stored(document))

    def replace_document_by_term(self, term: str, document: Document) -> int:
        """Replace the documents indexed by ``term`` with ``document``; returns its id.

        The lowest matching id is reused and the other matches are deleted;
        without any match the document is added.
        """
        store = self._writable()
        matching = sorted(store.postings.get(term, {}))
        if not matching:
            docid = store.last_docid + 1
        else:
            docid = matching[0]
            for other in matching[1:]:
                store.delete(other)
        store.put(docid, _stored(document))
        return docid

    def delete_document(self, docid: int) -> None:
        if docid <= 0:
            raise InvalidArgumentError("Document ids start at 1")
        if not self._writable().delete(docid):
            raise DocNotFoundError(f"Document {docid} not found")

    def delete_document_by_term(self, term: str) -> int:
        """Delete every document indexed by ``term``; returns how many were deleted."""
        store = self._writable()
        matching = sorted(store.postings.get(term, {}))
        for docid in matching:
            store.delete(docid)
        return len(matching)

    # Metadata, synonyms, spelling
    def set_metadata(self, key: str, value: bytes | str) -> None:
        if not key:
            raise InvalidArgumentError("Empty metadata keys are invalid")
        store = self._writable()
        data = value.encode("utf-8") if isinstance(value, str) else bytes(value)
        if data:
            store.metadata[key] = data
        else:
            store.metadata.pop(key, None)
        store.dirty_aux = True

    def add_synonym(self, term: str, synonym: str) -> None:
        store = self._writable()
        store.synonyms.setdefault(term, set()).add(synonym)
        store.dirty_aux = True

    def remove_synonym(self, term: str, synonym: str) -> None:
        store = self._writable()
        words = store.synonyms.get(term)
        if words is not None:
            words.discard(synonym)
            if not words:
                del store.synonyms[term]
        store.dirty_aux = True

    def clear_synonyms(self, term: str) -> None:
        store = self._writable()
        store.synonyms.pop(term, None)
        store.dirty_aux = True

    def add_spelling(self, word: str, increment: int = 1) -> None:
        store = self._writable()
        store.spellings[word] = store.spellings.get(word, 0) + increment
        store.dirty_aux = True

    def remove_spelling(self, word: str, decrement: int = 1) -> int:
        """Lower the frequency of ``word``; returns the part of ``decrement`` not applied."""
        store = self._writable()
        current = store.spellings.get(word, 0)
        remaining = max(decrement - current, 0)
        if current <= decrement:
            store.spellings.pop(word, None)
        else:
            store.spellings[word] = current - decrement
        store.dirty_aux = True
        return remaining

    # Durability
    def commit(self) -> None:
        """Make pending changes durable (a no-op for in-memory databases)."""
        store = self._store()
        if self._transaction is not None:
            raise InvalidOperationError("Cannot commit inside a transaction; use commit_transaction()")
        if self._storage is not None:
            self._storage.save(store)
        else:
            store.mark_clean()

    def begin_transaction(self, flushed: bool = True) -> None:
        store = self._store()
        if self._transaction is not None:
            raise InvalidOperationError("Cannot begin a transaction: already in a transaction")
        if flushed and self._storage is not None:
            self._storage.save(store)
        self._transaction = (store.copy(), flushed)
        logger.debug("Began %s transaction", "flushed" if flushed else "unflushed")

    def commit_transaction(self) -> None:
        store = self._store()
        if self._transaction is None:
            raise InvalidOperationError("Cannot commit transaction: not in a transaction")
        _, flushed = self._transaction
        self._transaction = None
        if flushed:
            self.commit()
        logger.debug("Committed transaction")

    def cancel_transaction(self) -> None:
        self._store()
        if self._transaction is None:
            raise InvalidOperationError("Cannot cancel transaction: not in a transaction")
        snapshot, _ = self._transaction
        self._transaction = None
        changed = self._index
        snapshot.dirty_docs = set(changed.dirty_docs) | set(changed.deleted_docs)
        snapshot.deleted_docs = {docid for docid in snapshot.dirty_docs if docid not in snapshot.documents}
        snapshot.dirty_docs -= snapshot.deleted_docs
        snapshot.dirty_aux = changed.dirty_aux
        self._index = snapshot
        self.revision += 1
        logger.debug("Cancelled transaction")

    @property
    def in_transaction(self) -> bool:
        return self._transaction is not None

    @contextmanager
    def transaction(self, flushed: bool = True) -> Generator[WritableDatabase, None, None]:
        """Run the block in a transaction; cancelled if the block raises."""
        self.begin_transaction(flushed)
        try:
            yield self
        except BaseException:
            if not self._closed:
                self.cancel_transaction()
            raise
        self.commit_transaction()

    # Ownership
    def as_read_only(self) -> ReadOnlyDatabaseView:
        """Zero-copy read-only view of this database."""
        self._store()
        return ReadOnlyDatabaseView(self)

    read_only = as_read_only

    def close(self) -> None:
        """Commit pending changes (unless in a transaction) and release the write lock."""
        if self._closed:
            return
        try:
            if self._transaction is not None:
                self.cancel_transaction()
            elif self._storage is not None:
                self._storage.save(self._index)
        finally:
            self._closed = True
            self.revision += 1
            if self._storage is not None:
                _release_write_lock(self._storage.directory)
            logger.debug("Closed writable database")

    def __repr__(self) -> str:
        where = self._storage.directory if self._storage is not None else "inmemory"
        state = "closed" if self._closed else f"{self._index.doc_count} docs"
        return f"<WritableDatabase {where} {state}>"


def _stored(document: Document) -> StoredDocument:
    return StoredDocument(document.data, document.postings(), document.values())
