"""Command line interface for indexing JSON lines and running queries."""

from __future__ import annotations

import argparse
from collections.abc import Iterator, Sequence
import logging
from pathlib import Path
import sys

import orjson

from search_bridge.config import get_settings
from search_bridge.database import Database, DbAction, WritableDatabase
from search_bridge.document import Document
from search_bridge.enquire import Enquire
from search_bridge.exceptions import SearchBridgeError
from search_bridge.observability.logging import configure_logging
from search_bridge.parser import QueryParser
from search_bridge.terms import TermGenerator


logger = logging.getLogger(__name__)

TITLE_PREFIX = "S"
ID_PREFIX = "Q"


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="search-bridge",
        description="Index JSON lines documents and search them",
    )
    subcommands = parser.add_subparsers(dest="command", required=True)

    index = subcommands.add_parser("index", help="Index a JSON lines file into a database")
    index.add_argument("database", type=Path, help="Database directory (created if missing)")
    index.add_argument("source", type=Path, help="JSON lines file with id, title and text fields")
    index.add_argument(
        "--overwrite",
        action="store_true",
        help="Replace the database instead of adding to it",
    )

    query = subcommands.add_parser("query", help="Search a database")
    query.add_argument("database", type=Path, help="Database directory")
    query.add_argument("terms", nargs="+", help="Query text")
    query.add_argument("--offset", type=int, default=0, help="Rank of the first match shown")
    query.add_argument("--limit", type=int, default=10, help="Maximum number of matches shown")
    query.add_argument("--prefix", default="", help="Term prefix applied to unprefixed words")
    return parser


def _read_records(path: Path) -> Iterator[dict]:
    with path.open("rb") as handle:
        for line_number, line in enumerate(handle, start=1):
            if not line.strip():
                continue
            try:
                record = orjson.loads(line)
            except orjson.JSONDecodeError as exc:
                raise ValueError(f"{path}:{line_number}: invalid JSON ({exc})") from exc
            if not isinstance(record, dict):
                raise ValueError(f"{path}:{line_number}: expected an object")
            yield record


def index_file(database_path: Path, source: Path, *, overwrite: bool = False) -> int:
    """Index every record of ``source``; returns the number of documents written."""
    action = DbAction.CREATE_OR_OVERWRITE if overwrite else DbAction.CREATE_OR_OPEN
    generator = TermGenerator()
    generator.set_stemmer(get_settings().stem_language)
    count = 0
    with WritableDatabase.open(database_path, action) as db:
        for record in _read_records(source):
            document = Document()
            generator.set_document(document)
            title = str(record.get("title", ""))
            text = str(record.get("text", ""))
            generator.index_text(title, 1, TITLE_PREFIX)
            generator.index_text(title)
            generator.increase_termpos()
            generator.index_text(text)
            document.set_data(orjson.dumps(record))
            if "id" in record:
                unique = f"{ID_PREFIX}{record['id']}"
                document.add_boolean_term(unique)
                db.replace_document_by_term(unique, document)
            else:
                db.add_document(document)
            count += 1
        db.commit()
    logger.info("Indexed %d documents into %s", count, database_path)
    return count


def run_query(database_path: Path, text: str, *, offset: int = 0, limit: int = 10, prefix: str = "") -> list[dict]:
    """Run ``text`` against the database and return the ranked records."""
    with Database.open(database_path) as db:
        parser = QueryParser()
        parser.set_stemmer(get_settings().stem_language)
        parser.set_database(db)
        parser.add_prefix("title", TITLE_PREFIX)
        query = parser.parse_query(text, default_prefix=prefix)
        enquire = Enquire(db, query)
        mset = enquire.get_mset(offset, limit)
        results = []
        for match in mset:
            record = orjson.loads(match.document().data or b"{}")
            results.append(
                {
                    "rank": match.rank + 1,
                    "docid": match.docid,
                    "percent": match.percent,
                    "weight": round(match.weight, 4),
                    "title": record.get("title", ""),
                }
            )
        logger.info(
            "Query %r matched about %d documents (exact=%s)",
            text,
            mset.matches_estimated,
            mset.is_exact,
        )
        return results


def main(argv: Sequence[str] | None = None) -> int:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    parser = build_argument_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "index":
            index_file(args.database, args.source, overwrite=args.overwrite)
            return 0
        results = run_query(args.database, " ".join(args.terms), offset=args.offset, limit=args.limit, prefix=args.prefix)
    except FileNotFoundError as exc:
        logger.error("File not found: %s", exc)
        return 1
    except (SearchBridgeError, ValueError) as exc:
        logger.error("%s", exc)
        return 1

    for result in results:
        sys.stdout.write(orjson.dumps(result).decode() + "\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
