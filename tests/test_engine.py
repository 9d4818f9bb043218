import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alerts.engine import describe, matches, suspicious_address_set
from alerts.models import (
    AddressActivity,
    ContractInteraction,
    LargeTransaction,
    SuspiciousAddress,
    Transaction,
    condition_from_dict,
    condition_to_dict,
)

WEI = 10**18
WATCHED = "0xAbC0000000000000000000000000000000000001"
OTHER = "0x1111111111111111111111111111111111111111"


def _tx(from_address: str = OTHER, to_address: str | None = OTHER, eth: int = 1) -> Transaction:
    return Transaction(hash="0xfeed", from_address=from_address, to_address=to_address, value=eth * WEI)


def test_address_activity_is_case_insensitive() -> None:
    condition = AddressActivity(address=WATCHED)
    assert matches(condition, _tx(from_address=WATCHED.lower()))
    assert matches(condition, _tx(to_address=WATCHED.upper().replace("0X", "0x")))
    assert not matches(condition, _tx())
    assert not matches(condition, _tx(to_address=None))


def test_large_transaction_threshold_is_inclusive() -> None:
    condition = LargeTransaction(threshold=Decimal(10))
    assert not matches(condition, _tx(eth=5))
    assert matches(condition, _tx(eth=10))
    assert matches(condition, _tx(eth=15))
    assert not matches(condition, Transaction(hash="0x1", from_address=OTHER, to_address=OTHER, value=10 * WEI - 1))


def test_contract_interaction_checks_recipient_only() -> None:
    condition = ContractInteraction(contract_address=WATCHED)
    assert matches(condition, _tx(to_address=WATCHED.lower()))
    assert not matches(condition, _tx(from_address=WATCHED))
    assert not matches(condition, _tx(to_address=None))


def test_suspicious_address_uses_injected_set() -> None:
    condition = SuspiciousAddress()
    flagged = "0x21a31ee1afc51d94c2efccaa2092ad1028285549"
    assert matches(condition, _tx(from_address=flagged.upper().replace("0X", "0x")))
    assert not matches(condition, _tx())

    custom = suspicious_address_set([OTHER.upper().replace("0X", "0x")])
    assert matches(condition, _tx(), custom)
    assert flagged in custom


def test_describe_messages() -> None:
    assert describe(LargeTransaction(threshold=Decimal(10)), _tx(eth=15)) == "Large transaction of 15 ETH detected"
    half = Transaction(hash="0x2", from_address=OTHER, to_address=OTHER, value=WEI // 2)
    assert describe(LargeTransaction(threshold=Decimal("0.1")), half) == "Large transaction of 0.5 ETH detected"
    assert describe(AddressActivity(address=WATCHED), _tx()) == f"Activity detected for address {WATCHED}"
    assert describe(ContractInteraction(contract_address=WATCHED), _tx()) == (
        f"Interaction with contract {WATCHED} detected"
    )
    assert describe(SuspiciousAddress(), _tx()) == "Transaction involving suspicious address detected"


def test_condition_dict_shape() -> None:
    condition = condition_from_dict({"type": "contract_interaction", "parameters": {"contractAddress": WATCHED}})
    assert condition == ContractInteraction(contract_address=WATCHED)
    assert condition_to_dict(LargeTransaction(threshold=Decimal("2.5"))) == {
        "type": "large_transaction",
        "parameters": {"threshold": "2.5"},
    }
    with pytest.raises(ValueError):
        condition_from_dict({"type": "address_activity", "parameters": {}})
    with pytest.raises(ValueError):
        condition_from_dict({"type": "unknown"})


def test_unknown_condition_rejected() -> None:
    with pytest.raises(TypeError):
        matches(object(), _tx())  # type: ignore[arg-type]


def test_transaction_from_rpc_payload() -> None:
    tx = Transaction.from_dict(
        {"hash": "0xabc", "from": WATCHED, "to": None, "value": hex(3 * WEI), "blockNumber": "0x10"}
    )
    assert tx.to_address is None
    assert tx.value == 3 * WEI
    assert tx.block_number == 16
