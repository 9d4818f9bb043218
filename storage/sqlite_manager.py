"""SQLite database management utilities for key-value state and the block cache."""
from __future__ import annotations

import json
import os
import sqlite3
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Iterable, List, Optional

_DB_PATH_ENV = "CHAINSENTRY_DB_PATH"
_DEFAULT_DB_FILENAME = "chainsentry.db"

_connection_lock = Lock()


def get_db_path() -> str:
    """Return the configured SQLite database path."""
    env_path = os.environ.get(_DB_PATH_ENV)
    if env_path:
        return env_path
    storage_dir = Path(__file__).resolve().parent
    return str(storage_dir / _DEFAULT_DB_FILENAME)


def _connect(db_path: Optional[str] = None) -> sqlite3.Connection:
    path = Path(db_path or get_db_path())
    path.parent.mkdir(parents=True, exist_ok=True)
    # Implicit transactions (the default isolation level) keep batch writes atomic.
    conn = sqlite3.connect(str(path), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    return conn


def _execute(query: str, params: Iterable[Any] | Dict[str, Any] | None = None) -> None:
    with _connection_lock:
        with _connect() as conn:
            conn.execute(query, params or [])
            conn.commit()


def _query(
    query: str,
    params: Iterable[Any] | Dict[str, Any] | None = None,
) -> List[Dict[str, Any]]:
    with _connection_lock:
        with _connect() as conn:
            cursor = conn.execute(query, params or [])
            rows = cursor.fetchall()
    return [dict(row) for row in rows]


def set_kv(key: str, value: str, updated_at: int) -> None:
    sql = (
        "INSERT INTO kv_state (key, value, updated_at) VALUES (?, ?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=excluded.updated_at"
    )
    _execute(sql, (key, value, updated_at))


def get_kv(key: str) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT key, value, updated_at FROM kv_state WHERE key = ?", (key,))
    return rows[0] if rows else None


def delete_kv(key: str) -> None:
    _execute("DELETE FROM kv_state WHERE key = ?", (key,))


def _block_row(block: Dict[str, Any]) -> tuple:
    timestamp = block.get("timestamp")
    return (
        int(block["number"]),
        str(block["hash"]),
        int(timestamp) if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool) else None,
        json.dumps(block, default=str),
    )


def upsert_blocks(blocks: List[Dict[str, Any]]) -> int:
    """Insert or replace blocks in a single transaction; return the row count.

    Any failure rolls back the whole batch. Successfully cached blocks are
    removed from the error table.
    """
    if not blocks:
        return 0
    rows = [_block_row(block) for block in blocks]
    with _connection_lock:
        conn = _connect()
        try:
            with conn:
                conn.executemany(
                    "INSERT INTO blocks (number, hash, timestamp, payload_json) VALUES (?, ?, ?, ?) "
                    "ON CONFLICT(number) DO UPDATE SET hash=excluded.hash, "
                    "timestamp=excluded.timestamp, payload_json=excluded.payload_json",
                    rows,
                )
                conn.executemany(
                    "DELETE FROM error_blocks WHERE block_number = ?",
                    [(row[0],) for row in rows],
                )
        finally:
            conn.close()
    return len(rows)


def _decode_blocks(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [json.loads(row["payload_json"]) for row in rows]


def fetch_block(number: int) -> Optional[Dict[str, Any]]:
    rows = _query("SELECT payload_json FROM blocks WHERE number = ?", (number,))
    return _decode_blocks(rows)[0] if rows else None


def fetch_blocks(
    start: Optional[int] = None,
    end: Optional[int] = None,
    limit: Optional[int] = None,
) -> List[Dict[str, Any]]:
    """Fetch cached blocks ordered by number ascending, bounds inclusive."""
    query = "SELECT payload_json FROM blocks WHERE 1=1"
    params: List[Any] = []
    if start is not None:
        query += " AND number >= ?"
        params.append(start)
    if end is not None:
        query += " AND number <= ?"
        params.append(end)
    query += " ORDER BY number ASC"
    if limit is not None:
        query += " LIMIT ?"
        params.append(limit)
    return _decode_blocks(_query(query, params))


def fetch_block_numbers(start: int, end: int) -> List[int]:
    rows = _query(
        "SELECT number FROM blocks WHERE number >= ? AND number <= ? ORDER BY number ASC",
        (start, end),
    )
    return [int(row["number"]) for row in rows]


def block_bounds() -> Dict[str, Any]:
    rows = _query(
        "SELECT COUNT(*) AS total, MIN(number) AS lowest, MAX(number) AS highest, "
        "MIN(timestamp) AS oldest, MAX(timestamp) AS newest FROM blocks"
    )
    return rows[0]


def delete_blocks(older_than: Optional[int] = None) -> None:
    if older_than is None:
        _execute("DELETE FROM blocks")
    else:
        _execute("DELETE FROM blocks WHERE timestamp IS NOT NULL AND timestamp < ?", (older_than,))


def upsert_error_block(block_number: int, error_type: str, error_message: str, recorded_at: int) -> None:
    sql = (
        "INSERT INTO error_blocks (block_number, error_type, error_message, recorded_at, retry_count) "
        "VALUES (?, ?, ?, ?, 0) "
        "ON CONFLICT(block_number) DO UPDATE SET error_type=excluded.error_type, "
        "error_message=excluded.error_message, recorded_at=excluded.recorded_at, "
        "retry_count=error_blocks.retry_count + 1"
    )
    _execute(sql, (block_number, error_type, error_message, recorded_at))


def delete_error_block(block_number: int) -> None:
    _execute("DELETE FROM error_blocks WHERE block_number = ?", (block_number,))


def list_error_blocks(start: Optional[int] = None, end: Optional[int] = None) -> List[Dict[str, Any]]:
    query = "SELECT * FROM error_blocks WHERE 1=1"
    params: List[Any] = []
    if start is not None:
        query += " AND block_number >= ?"
        params.append(start)
    if end is not None:
        query += " AND block_number <= ?"
        params.append(end)
    query += " ORDER BY block_number ASC"
    return _query(query, params)


def clear_error_blocks() -> None:
    _execute("DELETE FROM error_blocks")


__all__ = [
    "get_db_path",
    "set_kv",
    "get_kv",
    "delete_kv",
    "upsert_blocks",
    "fetch_block",
    "fetch_blocks",
    "fetch_block_numbers",
    "block_bounds",
    "delete_blocks",
    "upsert_error_block",
    "delete_error_block",
    "list_error_blocks",
    "clear_error_blocks",
]
