"""Point-in-time view of the remote chain and the RPC reads that build it."""

from __future__ import annotations

import dataclasses
import logging
import time
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Awaitable, Callable, Optional, Sequence

from core.errors import ChainSentryError, RemoteError

LOGGER = logging.getLogger(__name__)

GWEI = Decimal(10**9)

NETWORK_NAMES = {
    1: "Ethereum Mainnet",
    5: "Goerli Testnet",
    11155111: "Sepolia Testnet",
}

RpcCall = Callable[[str, Optional[Sequence[Any]]], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class NetworkSnapshot:
    """Immutable chain metadata captured by a successful probe."""

    display_name: str
    height: int
    chain_id: int
    gas_price_gwei: Decimal
    sync_state: Any
    captured_at: float
    node_version: Optional[str] = None

    def with_height(self, height: int, captured_at: Optional[float] = None) -> "NetworkSnapshot":
        """Return a new snapshot carrying a newer block height."""

        return dataclasses.replace(
            self, height=height, captured_at=captured_at if captured_at is not None else time.time()
        )

    @property
    def is_syncing(self) -> bool:
        return bool(self.sync_state)


def network_name(chain_id: int) -> str:
    return NETWORK_NAMES.get(chain_id, f"Chain ID: {chain_id}")


def parse_quantity(value: Any) -> int:
    """Decode a JSON-RPC quantity (``"0x1b4"``) or a plain integer."""

    if isinstance(value, bool):
        raise RemoteError(f"Expected a quantity, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        try:
            if text.lower().startswith("0x"):
                return int(text, 16)
            return int(text)
        except ValueError as exc:
            raise RemoteError(f"Malformed quantity: {value!r}") from exc
    raise RemoteError(f"Expected a quantity, got {value!r}")


def _client_version(raw: Any) -> Optional[str]:
    # Client versions look like "Geth/v1.13.5-stable/linux-amd64/go1.21.4".
    if not isinstance(raw, str):
        return None
    parts = raw.split("/")
    return parts[1] if len(parts) > 1 else raw or None


async def read_snapshot(call: RpcCall, now: Optional[Callable[[], float]] = None) -> NetworkSnapshot:
    """Probe the node and assemble a complete NetworkSnapshot.

    Height, chain id and gas price are mandatory; sync status and client
    version are optional because several public providers reject them.
    """

    started = time.perf_counter()
    height = parse_quantity(await call("eth_blockNumber", []))
    chain_id = parse_quantity(await call("eth_chainId", []))
    gas_price = Decimal(parse_quantity(await call("eth_gasPrice", []))) / GWEI

    sync_state: Any = None
    try:
        sync_state = await call("eth_syncing", [])
    except ChainSentryError as exc:
        LOGGER.debug("Sync status unavailable: %s", exc)

    version: Optional[str] = None
    try:
        version = _client_version(await call("web3_clientVersion", []))
    except ChainSentryError as exc:
        LOGGER.debug("Node info unavailable: %s", exc)

    LOGGER.debug("Network info read in %.2fms", (time.perf_counter() - started) * 1000)
    return NetworkSnapshot(
        display_name=network_name(chain_id),
        height=height,
        chain_id=chain_id,
        gas_price_gwei=gas_price,
        sync_state=sync_state,
        captured_at=(now or time.time)(),
        node_version=version,
    )


__all__ = ["NetworkSnapshot", "network_name", "parse_quantity", "read_snapshot", "RpcCall"]
