"""Unit tests for the command line interface."""

import json
import logging

import orjson
import pytest

from search_bridge.cli import build_argument_parser, index_file, main, run_query
from search_bridge.config import reset_settings
from search_bridge.database import Database


RECORDS = [
    {"id": 1, "title": "Apple pie", "text": "Bake the apples until soft."},
    {"id": 2, "title": "Banana bread", "text": "Ripe bananas make good bread."},
    {"id": 3, "title": "Pear tart", "text": "A pear and apple tart."},
]


@pytest.fixture
def source(tmp_path):
    path = tmp_path / "docs.jsonl"
    path.write_bytes(b"\n".join(orjson.dumps(record) for record in RECORDS) + b"\n\n")
    return path


@pytest.fixture
def quiet_cli(monkeypatch):
    """Keep the CLI's log lines out of captured stdout and restore the root logger afterwards."""
    monkeypatch.setenv("SEARCH_BRIDGE_LOG_LEVEL", "error")
    reset_settings()
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.mark.unit
class TestArguments:
    def test_query_arguments(self):
        args = build_argument_parser().parse_args(["query", "db", "red", "apple", "--limit", "3"])

        assert args.command == "query"
        assert args.terms == ["red", "apple"]
        assert args.limit == 3
        assert args.offset == 0

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_argument_parser().parse_args([])


@pytest.mark.unit
class TestIndexAndQuery:
    """Indexing JSON lines and querying the result."""

    def test_index_counts_records(self, tmp_path, source):
        assert index_file(tmp_path / "db", source) == 3

        with Database.open(tmp_path / "db") as db:
            assert db.doc_count() == 3

    def test_reindex_replaces_by_id(self, tmp_path, source):
        index_file(tmp_path / "db", source)
        index_file(tmp_path / "db", source)

        with Database.open(tmp_path / "db") as db:
            assert db.doc_count() == 3

    def test_stemmed_query(self, tmp_path, source):
        index_file(tmp_path / "db", source)

        results = run_query(tmp_path / "db", "apple")

        assert [result["title"] for result in results] == ["Apple pie", "Pear tart"]
        assert [result["rank"] for result in results] == [1, 2]
        assert results[0]["percent"] == 100

    def test_title_prefix(self, tmp_path, source):
        index_file(tmp_path / "db", source)

        results = run_query(tmp_path / "db", "title:banana")

        assert [result["title"] for result in results] == ["Banana bread"]

    def test_window(self, tmp_path, source):
        index_file(tmp_path / "db", source)

        results = run_query(tmp_path / "db", "apple", offset=1, limit=5)

        assert [result["rank"] for result in results] == [2]

    def test_invalid_json_line(self, tmp_path):
        bad = tmp_path / "bad.jsonl"
        bad.write_text('{"title": "ok"}\nnot json\n')

        with pytest.raises(ValueError, match="bad.jsonl:2"):
            index_file(tmp_path / "db", bad)


@pytest.mark.unit
class TestMain:
    def test_index_then_query(self, tmp_path, source, capsys, quiet_cli):
        database = str(tmp_path / "db")

        assert main(["index", database, str(source)]) == 0
        assert main(["query", database, "banana"]) == 0

        lines = [json.loads(line) for line in capsys.readouterr().out.splitlines() if line.strip()]
        assert [line["title"] for line in lines] == ["Banana bread"]

    def test_missing_source(self, tmp_path, quiet_cli):
        assert main(["index", str(tmp_path / "db"), str(tmp_path / "missing.jsonl")]) == 1

    def test_missing_database(self, tmp_path, quiet_cli):
        assert main(["query", str(tmp_path / "nowhere"), "apple"]) == 1
