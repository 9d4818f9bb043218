"""Pure alert condition evaluation."""

from __future__ import annotations

from decimal import Decimal
from typing import Container, Iterable, Optional

from alerts.models import (
    AddressActivity,
    AlertCondition,
    ContractInteraction,
    LargeTransaction,
    SuspiciousAddress,
    Transaction,
)

WEI_PER_ETH = Decimal(10**18)

KNOWN_SUSPICIOUS_ADDRESSES: frozenset[str] = frozenset(
    {
        "0xfa09c3a328792253f8dee7116848723b72a6d2ea",
        "0x0fa09c3a328792253f8dee7116848723b72a6d2e",  # Bybit exploiter
        "0xdfd5293d8e347dfe59e90efd55b2956a1343963d",
        "0x21a31ee1afc51d94c2efccaa2092ad1028285549",
    }
)


def suspicious_address_set(extra: Iterable[str] = ()) -> frozenset[str]:
    """Known suspicious addresses plus ``extra``, lower-cased."""

    return KNOWN_SUSPICIOUS_ADDRESSES | {addr.strip().lower() for addr in extra if addr}


def wei_to_eth(value: int) -> Decimal:
    return Decimal(value) / WEI_PER_ETH


def format_eth(amount: Decimal) -> str:
    # normalize() alone renders 10 as "1E+1"
    return f"{amount.normalize():f}"


def _same_address(left: Optional[str], right: str) -> bool:
    return bool(left) and left.lower() == right.lower()


def matches(
    condition: AlertCondition,
    transaction: Transaction,
    suspicious_addresses: Container[str] = KNOWN_SUSPICIOUS_ADDRESSES,
) -> bool:
    """Return whether ``transaction`` satisfies ``condition``.

    ``suspicious_addresses`` must contain lower-cased addresses.
    """

    if isinstance(condition, AddressActivity):
        return _same_address(transaction.from_address, condition.address) or _same_address(
            transaction.to_address, condition.address
        )
    if isinstance(condition, LargeTransaction):
        return wei_to_eth(transaction.value) >= condition.threshold
    if isinstance(condition, ContractInteraction):
        return _same_address(transaction.to_address, condition.contract_address)
    if isinstance(condition, SuspiciousAddress):
        return any(
            addr and addr.lower() in suspicious_addresses
            for addr in (transaction.from_address, transaction.to_address)
        )
    raise TypeError(f"Unsupported alert condition: {condition!r}")


def describe(condition: AlertCondition, transaction: Transaction) -> str:
    """Notification text for a match of ``condition`` on ``transaction``."""

    if isinstance(condition, AddressActivity):
        return f"Activity detected for address {condition.address}"
    if isinstance(condition, LargeTransaction):
        return f"Large transaction of {format_eth(wei_to_eth(transaction.value))} ETH detected"
    if isinstance(condition, ContractInteraction):
        return f"Interaction with contract {condition.contract_address} detected"
    if isinstance(condition, SuspiciousAddress):
        return "Transaction involving suspicious address detected"
    raise TypeError(f"Unsupported alert condition: {condition!r}")


__all__ = [
    "WEI_PER_ETH",
    "KNOWN_SUSPICIOUS_ADDRESSES",
    "suspicious_address_set",
    "wei_to_eth",
    "format_eth",
    "matches",
    "describe",
]
