"""Shared test fixtures and configuration."""

import pytest

from search_bridge.config import reset_settings
from search_bridge.database import WritableDatabase
from search_bridge.document import Document
from search_bridge.terms import TermGenerator


# Test environment overriding every setting the engine reads
TEST_ENV = {
    "SEARCH_BRIDGE_LOG_LEVEL": "info",
    "SEARCH_BRIDGE_LOG_JSON": "true",
    "SEARCH_BRIDGE_BM25_K1": "1.2",
    "SEARCH_BRIDGE_BM25_B": "0.75",
    "SEARCH_BRIDGE_DEFAULT_CHECK_AT_LEAST": "0",
    "SEARCH_BRIDGE_WILDCARD_MAX_EXPANSION": "0",
    "SEARCH_BRIDGE_WILDCARD_LIMIT_BEHAVIOR": "error",
    "SEARCH_BRIDGE_STEM_LANGUAGE": "english",
    "SEARCH_BRIDGE_SNIPPET_LENGTH": "200",
    "SEARCH_BRIDGE_SQLITE_BUSY_TIMEOUT_MS": "5000",
    "SEARCH_BRIDGE_TRACING_ENABLED": "true",
    "SEARCH_BRIDGE_METRICS_ENABLED": "true",
}

FRUIT_DOCUMENTS = [
    ("Apple pie", "A classic apple pie with cinnamon. Bake the apples until soft."),
    ("Banana bread", "Ripe bananas make the best banana bread."),
    ("Apple and pear crumble", "Pears and apples under a crumble topping."),
    ("Cherry tart", "Sour cherries in a sweet pastry case."),
    ("Fruit salad", "Apple, banana, cherry and pear chopped together."),
    ("Pear sorbet", "A light pear sorbet for summer."),
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Pin every setting to a known value and drop the cached settings around each test."""
    for key, value in TEST_ENV.items():
        monkeypatch.setenv(key, value)
    reset_settings()
    yield
    reset_settings()


def numbered_document(docid: int) -> Document:
    """Document ``docid`` of the numbered corpus.

    Every document contains ``common`` (1 to 4 times, cycling with the id),
    a unique ``word<id>`` and ``even`` or ``odd``. Documents whose ids are
    equal modulo 4 get identical weights for ``common``.
    """
    parity = "even" if docid % 2 == 0 else "odd"
    document = Document(f"doc {docid}")
    generator = TermGenerator()
    generator.set_document(document)
    generator.index_text(" ".join(["common"] * (1 + docid % 4) + [f"word{docid}", parity]))
    document.set_value(0, docid)
    document.set_value(1, parity)
    return document


@pytest.fixture
def numbered_db():
    """In-memory database holding documents 1..30 of the numbered corpus."""
    db = WritableDatabase.inmemory()
    for docid in range(1, 31):
        db.add_document(numbered_document(docid))
    yield db
    db.close()


@pytest.fixture
def fruit_db():
    """In-memory database of short recipes indexed with English stemming."""
    db = WritableDatabase.inmemory()
    generator = TermGenerator()
    generator.set_stemmer("english")
    for title, text in FRUIT_DOCUMENTS:
        document = Document(f"{title}\n{text}")
        generator.set_document(document)
        generator.index_text(title, 1, "S")
        generator.index_text(title)
        generator.increase_termpos()
        generator.index_text(text)
        db.add_document(document)
    yield db
    db.close()
