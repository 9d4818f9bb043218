"""Alert, condition, transaction and notification models.

Alert conditions form a closed set of variants; each variant is its own frozen
dataclass and ``AlertCondition`` is their union. Persistence uses the
``{"type": ..., "parameters": {...}}`` shape.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, ClassVar, Dict, Optional, Union


class ConditionKind(str, Enum):
    ADDRESS_ACTIVITY = "address_activity"
    LARGE_TRANSACTION = "large_transaction"
    CONTRACT_INTERACTION = "contract_interaction"
    SUSPICIOUS_ADDRESS = "suspicious_address"


class AlertFrequency(str, Enum):
    ONCE = "once"
    ALWAYS = "always"


@dataclass(frozen=True, slots=True)
class AddressActivity:
    """Matches transactions sent from or to ``address``."""

    address: str
    kind: ClassVar[ConditionKind] = ConditionKind.ADDRESS_ACTIVITY

    def parameters(self) -> Dict[str, Any]:
        return {"address": self.address}


@dataclass(frozen=True, slots=True)
class LargeTransaction:
    """Matches transactions whose value in ETH is at least ``threshold``."""

    threshold: Decimal
    kind: ClassVar[ConditionKind] = ConditionKind.LARGE_TRANSACTION

    def parameters(self) -> Dict[str, Any]:
        return {"threshold": str(self.threshold)}


@dataclass(frozen=True, slots=True)
class ContractInteraction:
    """Matches transactions sent to ``contract_address``."""

    contract_address: str
    kind: ClassVar[ConditionKind] = ConditionKind.CONTRACT_INTERACTION

    def parameters(self) -> Dict[str, Any]:
        return {"contractAddress": self.contract_address}


@dataclass(frozen=True, slots=True)
class SuspiciousAddress:
    """Matches transactions touching a known suspicious address."""

    kind: ClassVar[ConditionKind] = ConditionKind.SUSPICIOUS_ADDRESS

    def parameters(self) -> Dict[str, Any]:
        return {}


AlertCondition = Union[AddressActivity, LargeTransaction, ContractInteraction, SuspiciousAddress]


def _require_address(parameters: Dict[str, Any], key: str) -> str:
    value = parameters.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"condition parameter '{key}' is required")
    return value.strip()


def _to_decimal(value: Any) -> Decimal:
    try:
        result = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValueError(f"invalid decimal value: {value!r}") from exc
    if not result.is_finite():
        raise ValueError(f"invalid decimal value: {value!r}")
    return result


def condition_from_dict(data: Dict[str, Any]) -> AlertCondition:
    kind = ConditionKind(data["type"])
    parameters = dict(data.get("parameters") or {})
    if kind is ConditionKind.ADDRESS_ACTIVITY:
        return AddressActivity(address=_require_address(parameters, "address"))
    if kind is ConditionKind.LARGE_TRANSACTION:
        if parameters.get("threshold") in (None, ""):
            raise ValueError("condition parameter 'threshold' is required")
        return LargeTransaction(threshold=_to_decimal(parameters["threshold"]))
    if kind is ConditionKind.CONTRACT_INTERACTION:
        return ContractInteraction(contract_address=_require_address(parameters, "contractAddress"))
    return SuspiciousAddress()


def condition_to_dict(condition: AlertCondition) -> Dict[str, Any]:
    return {"type": condition.kind.value, "parameters": condition.parameters()}


@dataclass(slots=True)
class NotificationChannels:
    in_app: bool = True
    email: bool = False


@dataclass(slots=True)
class Alert:
    """A user-defined rule evaluated against incoming transactions."""

    name: str
    condition: AlertCondition
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    description: str = ""
    enabled: bool = True
    frequency: AlertFrequency = AlertFrequency.ALWAYS
    last_triggered_at: Optional[float] = None
    channels: NotificationChannels = field(default_factory=NotificationChannels)
    email_address: Optional[str] = None
    created_at: float = field(default_factory=time.time)

    def __post_init__(self) -> None:
        if not self.name.strip():
            raise ValueError("alert name must not be empty")
        if self.channels.email and not self.email_address:
            raise ValueError("email channel requires 'email_address'")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Alert":
        channels = data.get("channels") or {}
        return cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            condition=condition_from_dict(data["condition"]),
            enabled=bool(data.get("enabled", True)),
            frequency=AlertFrequency(data.get("frequency", AlertFrequency.ALWAYS.value)),
            last_triggered_at=data.get("last_triggered_at"),
            channels=NotificationChannels(
                in_app=bool(channels.get("in_app", True)),
                email=bool(channels.get("email", False)),
            ),
            email_address=data.get("email_address"),
            created_at=float(data.get("created_at") or time.time()),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "condition": condition_to_dict(self.condition),
            "enabled": self.enabled,
            "frequency": self.frequency.value,
            "last_triggered_at": self.last_triggered_at,
            "channels": {"in_app": self.channels.in_app, "email": self.channels.email},
            "email_address": self.email_address,
            "created_at": self.created_at,
        }


def _to_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError(f"invalid integer value: {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        text = value.strip()
        return int(text, 16) if text.lower().startswith("0x") else int(text)
    raise ValueError(f"invalid integer value: {value!r}")


@dataclass(frozen=True, slots=True)
class Transaction:
    """A fetched transaction; ``value`` is in wei, ``to_address`` is ``None`` for contract creation."""

    hash: str
    from_address: str
    to_address: Optional[str]
    value: int = 0
    block_number: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Transaction":
        block_number = data.get("blockNumber", data.get("block_number"))
        return cls(
            hash=str(data["hash"]),
            from_address=str(data.get("from") or data.get("from_address") or ""),
            to_address=data.get("to") or data.get("to_address") or None,
            value=_to_int(data.get("value", 0) or 0),
            block_number=_to_int(block_number) if block_number is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": str(self.value),
            "blockNumber": self.block_number,
        }


@dataclass(slots=True)
class Notification:
    """A persisted firing event; ``alert_name`` is copied at fire time."""

    alert_id: str
    alert_name: str
    message: str
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    fired_at: float = field(default_factory=time.time)
    read: bool = False
    evidence_ref: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Notification":
        return cls(
            id=str(data["id"]),
            alert_id=str(data["alert_id"]),
            alert_name=str(data.get("alert_name", "")),
            message=str(data.get("message", "")),
            fired_at=float(data.get("fired_at") or 0.0),
            read=bool(data.get("read", False)),
            evidence_ref=data.get("evidence_ref"),
            details=dict(data.get("details") or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "alert_id": self.alert_id,
            "alert_name": self.alert_name,
            "message": self.message,
            "fired_at": self.fired_at,
            "read": self.read,
            "evidence_ref": self.evidence_ref,
            "details": dict(self.details),
        }


__all__ = [
    "ConditionKind",
    "AlertFrequency",
    "AddressActivity",
    "LargeTransaction",
    "ContractInteraction",
    "SuspiciousAddress",
    "AlertCondition",
    "condition_from_dict",
    "condition_to_dict",
    "NotificationChannels",
    "Alert",
    "Transaction",
    "Notification",
]
