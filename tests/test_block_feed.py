import asyncio
import sys
from pathlib import Path
from typing import Any, List, Optional, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from connectors.block_feed import LatestBlockFeed
from core.errors import RemoteError
from storage.block_cache import BlockCache
from storage.migrate import initialize_database


class _FakeManager:
    def __init__(self, blocks: List[Any]) -> None:
        self.blocks = list(blocks)
        self.requests: List[tuple] = []

    async def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        self.requests.append((method, list(params or [])))
        return self.blocks.pop(0)


def _rpc_block(number: int, transactions: List[Any]) -> dict:
    return {
        "number": hex(number),
        "hash": f"0x{number:064x}",
        "timestamp": hex(1_700_000_000 + number),
        "transactions": transactions,
    }


def _rpc_tx(tx_hash: str, value_eth: int, to: Optional[str] = "0x3333333333333333333333333333333333333333") -> dict:
    return {
        "hash": tx_hash,
        "from": "0x2222222222222222222222222222222222222222",
        "to": to,
        "value": hex(value_eth * 10**18),
        "blockNumber": "0x10",
    }


@pytest.fixture()
def cache(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> BlockCache:
    db_path = tmp_path / "feed.db"
    monkeypatch.setenv("CHAINSENTRY_DB_PATH", str(db_path))
    initialize_database(str(db_path))
    return BlockCache()


def test_latest_block_yields_transactions_once(cache: BlockCache) -> None:
    block = _rpc_block(16, [_rpc_tx("0xa", 15), _rpc_tx("0xb", 1, to=None), "0xhashonly", {"from": "0x1"}])
    manager = _FakeManager([block, dict(block)])
    feed = LatestBlockFeed(manager, cache=cache)

    async def _run() -> None:
        transactions = await feed.fetch_latest()
        assert [tx.hash for tx in transactions] == ["0xa", "0xb"]
        assert transactions[0].value == 15 * 10**18
        assert transactions[1].to_address is None
        assert feed.last_block_number == 16

        assert await feed.fetch_latest() == []

    asyncio.run(_run())
    assert manager.requests[0] == ("eth_getBlockByNumber", ["latest", True])
    cached = cache.get_block(16)
    assert cached["number"] == 16
    assert cached["timestamp"] == 1_700_000_016


def test_malformed_block_payload_raises() -> None:
    feed = LatestBlockFeed(_FakeManager([None]))
    with pytest.raises(RemoteError):
        asyncio.run(feed.fetch_latest())
