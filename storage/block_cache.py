"""Block cache on top of SQLite with bulk import/export.

Imports are all-or-nothing: the payload must be a flat list of block records,
each carrying a non-negative integer ``number`` and a non-empty ``hash``.
A single bad record rejects the whole import and leaves the cache untouched.
Archives use the ``{"version", "timestamp", "blocks"}`` envelope and may be
plain JSON or a zip file containing one JSON member.
"""

from __future__ import annotations

import json
import logging
import math
import time
import zipfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from core.errors import InvalidCacheFormat
from storage import sqlite_manager

LOGGER = logging.getLogger(__name__)

CACHE_VERSION = 1
ARCHIVE_MEMBER = "chainsentry-cache.json"
SQLITE_MAX_INTEGER = 2**63 - 1


def _is_block_number(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool) and 0 <= value <= SQLITE_MAX_INTEGER


def _invalid_record_reason(record: Any) -> Optional[str]:
    if not isinstance(record, dict):
        return "record is not an object"
    if not _is_block_number(record.get("number")):
        return "missing or invalid 'number'"
    timestamp = record.get("timestamp")
    if isinstance(timestamp, float) and not math.isfinite(timestamp):
        return "timestamp out of range"
    if isinstance(timestamp, (int, float)) and not isinstance(timestamp, bool) and abs(timestamp) > SQLITE_MAX_INTEGER:
        return "timestamp out of range"
    block_hash = record.get("hash")
    if not isinstance(block_hash, str) or not block_hash:
        return "missing or invalid 'hash'"
    return None


def validate_blocks(payload: Any) -> List[Dict[str, Any]]:
    """Return the records of ``payload`` or raise ``InvalidCacheFormat``."""

    if not isinstance(payload, list):
        raise InvalidCacheFormat(
            f"Cache payload must be a list of block records, got {type(payload).__name__}"
        )
    for index, record in enumerate(payload):
        reason = _invalid_record_reason(record)
        if reason:
            raise InvalidCacheFormat(f"Block record #{index}: {reason}")
    return [dict(record) for record in payload]


class BlockCache:
    """Persistent cache of fetched blocks plus the blocks that failed to fetch."""

    def cache_block(self, block: Dict[str, Any]) -> bool:
        reason = _invalid_record_reason(block)
        if reason:
            LOGGER.warning("Skip caching block: %s", reason)
            return False
        sqlite_manager.upsert_blocks([block])
        return True

    def cache_blocks(self, blocks: List[Dict[str, Any]]) -> int:
        """Cache the valid blocks of ``blocks`` and skip the rest."""

        valid = [block for block in blocks if _invalid_record_reason(block) is None]
        if len(valid) != len(blocks):
            LOGGER.warning("Filtered out %s invalid block records", len(blocks) - len(valid))
        return sqlite_manager.upsert_blocks(valid)

    def import_blocks(self, payload: Any) -> int:
        """Validate and store ``payload`` atomically; return the number of blocks imported."""

        records = validate_blocks(payload)
        count = sqlite_manager.upsert_blocks(records)
        LOGGER.info("Imported %s blocks into cache", count)
        return count

    def export_blocks(self) -> List[Dict[str, Any]]:
        return sqlite_manager.fetch_blocks()

    def get_block(self, number: int) -> Optional[Dict[str, Any]]:
        return sqlite_manager.fetch_block(number)

    def get_blocks_in_range(self, start: int, end: int) -> List[Dict[str, Any]]:
        return sqlite_manager.fetch_blocks(start=start, end=end)

    def get_cached_block_numbers(self, start: int, end: int) -> List[int]:
        return sqlite_manager.fetch_block_numbers(start, end)

    def highest_block_number(self) -> Optional[int]:
        return sqlite_manager.block_bounds()["highest"]

    def lowest_block_number(self) -> Optional[int]:
        return sqlite_manager.block_bounds()["lowest"]

    def stats(self) -> Dict[str, Any]:
        bounds = sqlite_manager.block_bounds()
        return {
            "total_blocks": bounds["total"],
            "lowest_block": bounds["lowest"],
            "highest_block": bounds["highest"],
            "oldest_timestamp": bounds["oldest"],
            "newest_timestamp": bounds["newest"],
            "error_blocks": len(sqlite_manager.list_error_blocks()),
        }

    def clear(self) -> None:
        sqlite_manager.delete_blocks()

    def clear_older_than(self, timestamp: int) -> None:
        sqlite_manager.delete_blocks(older_than=timestamp)

    def record_error_block(self, block_number: int, error_type: str, error_message: str) -> None:
        if not _is_block_number(block_number):
            LOGGER.warning("Skip error record for invalid block number %r", block_number)
            return
        sqlite_manager.upsert_error_block(block_number, error_type, error_message, int(time.time()))

    def remove_error_block(self, block_number: int) -> None:
        sqlite_manager.delete_error_block(block_number)

    def error_blocks(self, start: Optional[int] = None, end: Optional[int] = None) -> List[Dict[str, Any]]:
        return sqlite_manager.list_error_blocks(start, end)

    def clear_error_blocks(self) -> None:
        sqlite_manager.clear_error_blocks()

    def export_archive(self, path: Path) -> int:
        """Write every cached block to ``path`` (zip when the suffix is ``.zip``)."""

        blocks = self.export_blocks()
        if not blocks:
            raise ValueError("No blocks in cache to export")
        document = json.dumps(
            {
                "version": CACHE_VERSION,
                "timestamp": datetime.now(tz=timezone.utc).isoformat(),
                "blocks": blocks,
            }
        )
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.suffix == ".zip":
            with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                archive.writestr(ARCHIVE_MEMBER, document)
        else:
            path.write_text(document, encoding="utf-8")
        LOGGER.info("Exported %s blocks to %s", len(blocks), path)
        return len(blocks)

    def import_archive(self, path: Path) -> int:
        """Load an archive written by :meth:`export_archive` and import its blocks."""

        path = Path(path)
        if path.suffix == ".zip":
            try:
                with zipfile.ZipFile(path) as archive:
                    members = [name for name in archive.namelist() if name.endswith(".json")]
                    if not members:
                        raise InvalidCacheFormat("No JSON file found in the zip archive")
                    data = archive.read(members[0])
            except zipfile.BadZipFile as exc:
                raise InvalidCacheFormat(f"Not a zip archive: {path}") from exc
        else:
            data = path.read_bytes()
        try:
            raw = data.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise InvalidCacheFormat(f"Cache file is not UTF-8 text: {path}") from exc
        try:
            document = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise InvalidCacheFormat(f"Cache file is not valid JSON: {exc}") from exc
        if not isinstance(document, dict) or "blocks" not in document:
            raise InvalidCacheFormat("Invalid cache file format")
        return self.import_blocks(document["blocks"])


__all__ = ["CACHE_VERSION", "ARCHIVE_MEMBER", "validate_blocks", "BlockCache"]
