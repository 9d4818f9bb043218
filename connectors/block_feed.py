"""Transaction feed reading the newest block through the connection manager."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional

from alerts.models import Transaction
from core.errors import RemoteError
from core.network import parse_quantity
from storage.block_cache import BlockCache

if TYPE_CHECKING:
    from core.connection import ConnectionManager

LOGGER = logging.getLogger(__name__)


def _block_record(block: Dict[str, Any]) -> Dict[str, Any]:
    record = dict(block)
    record["number"] = parse_quantity(block.get("number"))
    if block.get("timestamp") is not None:
        record["timestamp"] = parse_quantity(block["timestamp"])
    return record


class LatestBlockFeed:
    """Yields the transactions of each new block exactly once."""

    def __init__(self, manager: "ConnectionManager", cache: Optional[BlockCache] = None) -> None:
        self._manager = manager
        self._cache = cache
        self._last_number: Optional[int] = None

    @property
    def last_block_number(self) -> Optional[int]:
        return self._last_number

    async def fetch_latest(self) -> List[Transaction]:
        block = await self._manager.call("eth_getBlockByNumber", ["latest", True])
        if not isinstance(block, dict):
            raise RemoteError(f"Unexpected block payload: {block!r}")
        record = _block_record(block)
        number = record["number"]
        if self._last_number is not None and number <= self._last_number:
            LOGGER.debug("Block %s already processed", number)
            return []

        if self._cache is not None:
            await asyncio.to_thread(self._cache.cache_block, record)

        transactions: List[Transaction] = []
        for raw in block.get("transactions") or []:
            # Hash-only entries carry nothing to evaluate.
            if not isinstance(raw, dict):
                continue
            try:
                transactions.append(Transaction.from_dict(raw))
            except (KeyError, ValueError) as exc:
                LOGGER.warning("Skipping malformed transaction in block %s: %s", number, exc)
        self._last_number = number
        LOGGER.info("Block %s carried %s transactions", number, len(transactions))
        return transactions


__all__ = ["LatestBlockFeed"]
