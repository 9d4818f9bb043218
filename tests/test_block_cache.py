from __future__ import annotations

import json
import sys
import zipfile
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from core.errors import InvalidCacheFormat
from storage.block_cache import ARCHIVE_MEMBER, BlockCache
from storage.migrate import initialize_database


@pytest.fixture()
def cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> BlockCache:
    db_path = tmp_path / "cache.db"
    monkeypatch.setenv("CHAINSENTRY_DB_PATH", str(db_path))
    initialize_database(str(db_path))
    return BlockCache()


def _block(number: int, timestamp: int = 1_700_000_000) -> dict:
    return {"number": number, "hash": f"0x{number:064x}", "timestamp": timestamp, "transactions": []}


def test_import_rejects_top_level_object(cache: BlockCache) -> None:
    cache.import_blocks([_block(1), _block(2)])

    with pytest.raises(InvalidCacheFormat):
        cache.import_blocks({"blocks": [_block(3)]})

    assert [block["number"] for block in cache.export_blocks()] == [1, 2]


def test_one_bad_record_rejects_whole_import(cache: BlockCache) -> None:
    payload = [_block(10), {"number": 11}, _block(12)]
    with pytest.raises(InvalidCacheFormat):
        cache.import_blocks(payload)
    assert cache.export_blocks() == []

    for bad in ({"number": -1, "hash": "0x1"}, {"number": True, "hash": "0x1"}, {"number": 1, "hash": ""}, "0x1"):
        with pytest.raises(InvalidCacheFormat):
            cache.import_blocks([bad])


def test_import_overwrites_existing_numbers(cache: BlockCache) -> None:
    cache.import_blocks([_block(5)])
    replacement = dict(_block(5), hash="0xreplaced")
    assert cache.import_blocks([replacement]) == 1
    assert cache.get_block(5)["hash"] == "0xreplaced"


def test_queries_and_stats(cache: BlockCache) -> None:
    cache.cache_blocks([_block(3, 300), _block(1, 100), {"hash": "0xnonumber"}, _block(2, 200)])
    cache.record_error_block(4, "timeout", "eth_getBlockByNumber timed out")

    assert cache.get_cached_block_numbers(1, 3) == [1, 2, 3]
    assert [b["number"] for b in cache.get_blocks_in_range(2, 3)] == [2, 3]
    assert cache.highest_block_number() == 3
    assert cache.lowest_block_number() == 1

    stats = cache.stats()
    assert stats["total_blocks"] == 3
    assert stats["oldest_timestamp"] == 100
    assert stats["newest_timestamp"] == 300
    assert stats["error_blocks"] == 1

    cache.cache_block(_block(4, 400))
    assert cache.error_blocks() == []

    cache.clear_older_than(250)
    assert cache.get_cached_block_numbers(0, 10) == [3, 4]
    cache.clear()
    assert cache.highest_block_number() is None


def test_error_blocks_count_retries(cache: BlockCache) -> None:
    cache.record_error_block(7, "timeout", "first")
    cache.record_error_block(7, "remote", "second")
    cache.record_error_block(-1, "timeout", "ignored")

    [entry] = cache.error_blocks()
    assert entry["block_number"] == 7
    assert entry["error_type"] == "remote"
    assert entry["retry_count"] == 1

    cache.remove_error_block(7)
    assert cache.error_blocks() == []


def test_zip_archive_roundtrip(cache: BlockCache, tmp_path: Path) -> None:
    cache.import_blocks([_block(1), _block(2)])
    archive = tmp_path / "export" / "cache.zip"
    assert cache.export_archive(archive) == 2

    with zipfile.ZipFile(archive) as bundle:
        document = json.loads(bundle.read(ARCHIVE_MEMBER))
    assert document["version"] == 1
    assert len(document["blocks"]) == 2

    cache.clear()
    assert cache.import_archive(archive) == 2
    assert cache.get_block(2)["hash"] == _block(2)["hash"]


def test_archive_import_validates_envelope(cache: BlockCache, tmp_path: Path) -> None:
    not_json = tmp_path / "broken.json"
    not_json.write_text("{", encoding="utf-8")
    wrong_shape = tmp_path / "list.json"
    wrong_shape.write_text(json.dumps([_block(1)]), encoding="utf-8")
    bad_blocks = tmp_path / "object.json"
    bad_blocks.write_text(json.dumps({"version": 1, "blocks": {"1": _block(1)}}), encoding="utf-8")
    not_zip = tmp_path / "fake.zip"
    not_zip.write_bytes(b"plain bytes")

    for path in (not_json, wrong_shape, bad_blocks, not_zip):
        with pytest.raises(InvalidCacheFormat):
            cache.import_archive(path)
    assert cache.export_blocks() == []

    with pytest.raises(ValueError):
        cache.export_archive(tmp_path / "empty.json")


def test_out_of_range_numbers_reject_whole_import(cache: BlockCache) -> None:
    cache.import_blocks([_block(1)])

    for bad in (
        {"number": 2**64, "hash": "0xc"},
        {"number": 2**63, "hash": "0xc"},
        dict(_block(3), timestamp=2**70),
        dict(_block(3), timestamp=float("inf")),
    ):
        with pytest.raises(InvalidCacheFormat):
            cache.import_blocks([_block(2), bad])

    assert [block["number"] for block in cache.export_blocks()] == [1]
    assert cache.import_blocks([{"number": 2**63 - 1, "hash": "0xmax"}]) == 1
    assert cache.highest_block_number() == 2**63 - 1


def test_non_utf8_archives_rejected(cache: BlockCache, tmp_path: Path) -> None:
    raw = tmp_path / "latin1.json"
    raw.write_bytes(b'{"version": 1, "blocks": [], "note": "\xff\xfe"}')
    zipped = tmp_path / "latin1.zip"
    with zipfile.ZipFile(zipped, "w") as bundle:
        bundle.writestr(ARCHIVE_MEMBER, b"\xff\xfe not utf-8")

    for path in (raw, zipped):
        with pytest.raises(InvalidCacheFormat):
            cache.import_archive(path)
    assert cache.export_blocks() == []
