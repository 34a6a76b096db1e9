"""Engine state and its SQLite persistence.

``IndexStore`` is the in-memory state a database reads from: documents,
an inverted index of term -> {docid: wdf}, document lengths, metadata,
synonyms and the spelling dictionary. It records which documents changed
so that ``SQLiteIndexStorage.save`` only rewrites those on commit.

On disk the layout follows the usual SQLite tuning: WAL journal, NORMAL
synchronous, WITHOUT ROWID tables keyed the way they are read, and term
positions packed into ``array("I")`` blobs.
"""

from __future__ import annotations

from array import array
from dataclasses import dataclass, field
import logging
from pathlib import Path
import sqlite3

import orjson

from search_bridge.document import Posting
from search_bridge.exceptions import DatabaseError, DatabaseOpeningError
from search_bridge.stats import CollectionStats


logger = logging.getLogger(__name__)

DB_FILENAME = "search_bridge.sqlite3"
FORMAT_VERSION = "1"


@dataclass(slots=True)
class StoredDocument:
    """A document as held by the engine."""

    data: bytes
    postings: dict[str, Posting]
    values: dict[int, bytes] = field(default_factory=dict)

    @property
    def length(self) -> int:
        return sum(posting.wdf for posting in self.postings.values())

    def copy(self) -> StoredDocument:
        return StoredDocument(
            self.data,
            {term: posting.copy() for term, posting in self.postings.items()},
            dict(self.values),
        )


class IndexStore:
    """In-memory state of one database."""

    def __init__(self) -> None:
        self.documents: dict[int, StoredDocument] = {}
        self.postings: dict[str, dict[int, int]] = {}
        self.total_length = 0
        self.last_docid = 0
        self.metadata: dict[str, bytes] = {}
        self.synonyms: dict[str, set[str]] = {}
        self.spellings: dict[str, int] = {}
        self.dirty_docs: set[int] = set()
        self.deleted_docs: set[int] = set()
        self.dirty_aux = False

    # Documents
    def put(self, docid: int, document: StoredDocument) -> None:
        if docid in self.documents:
            self._unindex(docid)
        self.documents[docid] = document
        for term, posting in document.postings.items():
            self.postings.setdefault(term, {})[docid] = posting.wdf
        self.total_length += document.length
        self.last_docid = max(self.last_docid, docid)
        self.dirty_docs.add(docid)
        self.deleted_docs.discard(docid)

    def delete(self, docid: int) -> bool:
        if docid not in self.documents:
            return False
        self._unindex(docid)
        del self.documents[docid]
        self.dirty_docs.discard(docid)
        self.deleted_docs.add(docid)
        return True

    def _unindex(self, docid: int) -> None:
        document = self.documents[docid]
        for term in document.postings:
            docs = self.postings.get(term)
            if docs is None:
                continue
            docs.pop(docid, None)
            if not docs:
                del self.postings[term]
        self.total_length -= document.length

    # Statistics
    @property
    def doc_count(self) -> int:
        return len(self.documents)

    def stats(self) -> CollectionStats:
        return CollectionStats(doc_count=len(self.documents), total_length=self.total_length)

    def termfreq(self, term: str) -> int:
        return len(self.postings.get(term, ()))

    def collection_freq(self, term: str) -> int:
        return sum(self.postings.get(term, {}).values())

    def doc_length(self, docid: int) -> int:
        document = self.documents.get(docid)
        return document.length if document is not None else 0

    def terms(self, prefix: str = "") -> list[str]:
        return sorted(term for term in self.postings if term.startswith(prefix))

    def positions(self, docid: int, term: str) -> tuple[int, ...]:
        document = self.documents.get(docid)
        if document is None:
            return ()
        posting = document.postings.get(term)
        return tuple(sorted(posting.positions)) if posting else ()

    # Ownership
    def copy(self) -> IndexStore:
        """Deep copy with a clean change log."""
        clone = IndexStore()
        clone.documents = {docid: document.copy() for docid, document in self.documents.items()}
        clone.postings = {term: dict(docs) for term, docs in self.postings.items()}
        clone.total_length = self.total_length
        clone.last_docid = self.last_docid
        clone.metadata = dict(self.metadata)
        clone.synonyms = {term: set(words) for term, words in self.synonyms.items()}
        clone.spellings = dict(self.spellings)
        return clone

    def has_changes(self) -> bool:
        return bool(self.dirty_docs or self.deleted_docs or self.dirty_aux)

    def mark_clean(self) -> None:
        self.dirty_docs.clear()
        self.deleted_docs.clear()
        self.dirty_aux = False


def apply_read_pragmas(conn: sqlite3.Connection, *, busy_timeout_ms: int | None = 5000) -> None:
    """Apply read-optimized PRAGMAs."""
    if busy_timeout_ms is not None:
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    conn.execute("PRAGMA cache_size = -16384")
    conn.execute("PRAGMA temp_store = MEMORY")
    conn.execute("PRAGMA query_only = 1")


def apply_write_pragmas(
    conn: sqlite3.Connection,
    *,
    busy_timeout_ms: int | None = 5000,
    synchronous: str = "NORMAL",
) -> None:
    """Apply write-optimized PRAGMAs."""
    if busy_timeout_ms is not None:
        conn.execute(f"PRAGMA busy_timeout = {busy_timeout_ms}")
    conn.execute("PRAGMA journal_mode = WAL")
    conn.execute(f"PRAGMA synchronous = {synchronous}")
    conn.execute("PRAGMA cache_size = -16384")
    conn.execute("PRAGMA temp_store = MEMORY")


_SCHEMA = """
    CREATE TABLE IF NOT EXISTS engine_state (
        key TEXT PRIMARY KEY,
        value TEXT NOT NULL
    ) WITHOUT ROWID;

    CREATE TABLE IF NOT EXISTS documents (
        docid INTEGER PRIMARY KEY,
        data BLOB NOT NULL
    );

    CREATE TABLE IF NOT EXISTS terms (
        docid INTEGER NOT NULL,
        term TEXT NOT NULL,
        wdf INTEGER NOT NULL,
        positions_blob BLOB,
        PRIMARY KEY (docid, term)
    ) WITHOUT ROWID;

    CREATE TABLE IF NOT EXISTS doc_values (
        docid INTEGER NOT NULL,
        slot INTEGER NOT NULL,
        value BLOB NOT NULL,
        PRIMARY KEY (docid, slot)
    ) WITHOUT ROWID;

    CREATE TABLE IF NOT EXISTS metadata (
        key TEXT PRIMARY KEY,
        value BLOB NOT NULL
    ) WITHOUT ROWID;

    CREATE TABLE IF NOT EXISTS synonyms (
        term TEXT PRIMARY KEY,
        synonyms BLOB NOT NULL
    ) WITHOUT ROWID;

    CREATE TABLE IF NOT EXISTS spellings (
        word TEXT PRIMARY KEY,
        freq INTEGER NOT NULL
    ) WITHOUT ROWID;
"""


def _pack_positions(positions: set[int]) -> bytes | None:
    if not positions:
        return None
    return array("I", sorted(positions)).tobytes()


def _unpack_positions(blob: bytes | None) -> set[int]:
    if not blob:
        return set()
    positions = array("I")
    positions.frombytes(blob)
    return set(positions)


class SQLiteIndexStorage:
    """Reads and writes an ``IndexStore`` in a SQLite file inside a database directory."""

    def __init__(self, directory: Path, *, busy_timeout_ms: int = 5000, synchronous: str = "NORMAL") -> None:
        self.directory = Path(directory)
        self.db_path = self.directory / DB_FILENAME
        self.busy_timeout_ms = busy_timeout_ms
        self.synchronous = synchronous

    def exists(self) -> bool:
        return self.db_path.is_file()

    def _connect(self, *, readonly: bool) -> sqlite3.Connection:
        try:
            conn = sqlite3.connect(self.db_path)
            if readonly:
                apply_read_pragmas(conn, busy_timeout_ms=self.busy_timeout_ms)
            else:
                apply_write_pragmas(conn, busy_timeout_ms=self.busy_timeout_ms, synchronous=self.synchronous)
        except sqlite3.Error as exc:
            raise DatabaseOpeningError(f"Cannot open {self.db_path}: {exc}") from exc
        return conn

    def create(self, *, overwrite: bool = False) -> None:
        """Create an empty database, discarding existing contents when ``overwrite``."""
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise DatabaseOpeningError(f"Cannot create database directory {self.directory}: {exc}") from exc
        if overwrite and self.db_path.exists():
            for suffix in ("", "-wal", "-shm"):
                Path(f"{self.db_path}{suffix}").unlink(missing_ok=True)
        conn = self._connect(readonly=False)
        try:
            with conn:
                conn.executescript(_SCHEMA)
                conn.execute(
                    "INSERT OR IGNORE INTO engine_state (key, value) VALUES ('format_version', ?)", (FORMAT_VERSION,)
                )
                conn.execute("INSERT OR IGNORE INTO engine_state (key, value) VALUES ('last_docid', '0')")
        finally:
            conn.close()
        logger.info("Created database at %s", self.directory)

    def load(self) -> IndexStore:
        if not self.exists():
            raise DatabaseOpeningError(f"No database at {self.directory}")
        conn = self._connect(readonly=True)
        try:
            return self._load(conn)
        except sqlite3.Error as exc:
            raise DatabaseOpeningError(f"Cannot read {self.db_path}: {exc}") from exc
        finally:
            conn.close()

    def _load(self, conn: sqlite3.Connection) -> IndexStore:
        state = dict(conn.execute("SELECT key, value FROM engine_state"))
        version = state.get("format_version")
        if version != FORMAT_VERSION:
            raise DatabaseOpeningError(f"Unsupported database format {version!r} at {self.directory}")

        data_by_doc = dict(conn.execute("SELECT docid, data FROM documents"))
        postings: dict[int, dict[str, Posting]] = {docid: {} for docid in data_by_doc}
        for docid, term, wdf, blob in conn.execute("SELECT docid, term, wdf, positions_blob FROM terms"):
            postings.setdefault(docid, {})[term] = Posting(wdf, _unpack_positions(blob))
        values: dict[int, dict[int, bytes]] = {}
        for docid, slot, value in conn.execute("SELECT docid, slot, value FROM doc_values"):
            values.setdefault(docid, {})[slot] = bytes(value)

        store = IndexStore()
        for docid in sorted(data_by_doc):
            store.put(docid, StoredDocument(bytes(data_by_doc[docid]), postings.get(docid, {}), values.get(docid, {})))
        store.last_docid = max(int(state.get("last_docid", "0")), store.last_docid)
        store.metadata = {key: bytes(value) for key, value in conn.execute("SELECT key, value FROM metadata")}
        store.synonyms = {
            term: set(orjson.loads(blob)) for term, blob in conn.execute("SELECT term, synonyms FROM synonyms")
        }
        store.spellings = dict(conn.execute("SELECT word, freq FROM spellings"))
        store.mark_clean()
        logger.debug("Loaded %d documents from %s", store.doc_count, self.db_path)
        return store

    def save(self, store: IndexStore) -> None:
        """Write the changes recorded in ``store`` in one transaction."""
        if not store.has_changes():
            return
        conn = self._connect(readonly=False)
        try:
            with conn:
                self._write_documents(conn, store)
                if store.dirty_aux:
                    self._write_aux(conn, store)
                conn.execute(
                    "INSERT OR REPLACE INTO engine_state (key, value) VALUES ('last_docid', ?)",
                    (str(store.last_docid),),
                )
        except sqlite3.Error as exc:
            raise DatabaseError(f"Commit to {self.db_path} failed: {exc}") from exc
        finally:
            conn.close()
        logger.debug(
            "Committed %d changed and %d deleted documents to %s",
            len(store.dirty_docs),
            len(store.deleted_docs),
            self.db_path,
        )
        store.mark_clean()

    def _write_documents(self, conn: sqlite3.Connection, store: IndexStore) -> None:
        touched = [(docid,) for docid in sorted(store.dirty_docs | store.deleted_docs)]
        for table in ("documents", "terms", "doc_values"):
            conn.executemany(f"DELETE FROM {table} WHERE docid = ?", touched)

        documents = []
        terms = []
        values = []
        for docid in sorted(store.dirty_docs):
            document = store.documents[docid]
            documents.append((docid, document.data))
            terms.extend(
                (docid, term, posting.wdf, _pack_positions(posting.positions))
                for term, posting in document.postings.items()
            )
            values.extend((docid, slot, value) for slot, value in document.values.items())
        conn.executemany("INSERT INTO documents (docid, data) VALUES (?, ?)", documents)
        conn.executemany("INSERT INTO terms (docid, term, wdf, positions_blob) VALUES (?, ?, ?, ?)", terms)
        conn.executemany("INSERT INTO doc_values (docid, slot, value) VALUES (?, ?, ?)", values)

    def _write_aux(self, conn: sqlite3.Connection, store: IndexStore) -> None:
        conn.execute("DELETE FROM metadata")
        conn.executemany("INSERT INTO metadata (key, value) VALUES (?, ?)", list(store.metadata.items()))
        conn.execute("DELETE FROM synonyms")
        conn.executemany(
            "INSERT INTO synonyms (term, synonyms) VALUES (?, ?)",
            [(term, orjson.dumps(sorted(words))) for term, words in store.synonyms.items() if words],
        )
        conn.execute("DELETE FROM spellings")
        conn.executemany("INSERT INTO spellings (word, freq) VALUES (?, ?)", list(store.spellings.items()))
