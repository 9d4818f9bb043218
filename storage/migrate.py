"""Schema creation for the key-value store and the block cache."""
from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Iterable

from .sqlite_manager import _connect, get_db_path

LOGGER = logging.getLogger(__name__)

SCHEMA_VERSION = 1

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS kv_state (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at INTEGER
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS blocks (
        number INTEGER PRIMARY KEY,
        hash TEXT NOT NULL,
        timestamp INTEGER,
        payload_json TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_blocks_timestamp ON blocks (timestamp)",
    """
    CREATE TABLE IF NOT EXISTS error_blocks (
        block_number INTEGER PRIMARY KEY,
        error_type TEXT,
        error_message TEXT,
        recorded_at INTEGER,
        retry_count INTEGER DEFAULT 0
    )
    """,
)


def schema_version(db_path: str | None = None) -> int:
    with _connect(db_path) as conn:
        return int(conn.execute("PRAGMA user_version").fetchone()[0])


def initialize_database(db_path: str | None = None) -> None:
    """Create the tables if needed and stamp the schema version."""
    path = Path(db_path or get_db_path())
    with _connect(str(path)) as conn:
        for statement in SCHEMA:
            conn.execute(statement)
        conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        conn.commit()
    LOGGER.info("Database ready at %s (schema v%s)", path, SCHEMA_VERSION)


def _parse_args(args: Iterable[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="chainsentry database setup")
    parser.add_argument("--init", action="store_true", help="create tables in the database")
    parser.add_argument("--db-path", default=None, help="database file; defaults to $CHAINSENTRY_DB_PATH")
    return parser.parse_args(args)


def main(argv: Iterable[str] | None = None) -> None:
    args = _parse_args(argv)
    if not args.init:
        LOGGER.info("Nothing to do. Use --init to create tables.")
        return
    initialize_database(args.db_path)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    main()
