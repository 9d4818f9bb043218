"""E-mail delivery contract; delivery itself lives outside this package."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol


@dataclass(slots=True)
class NotifierTestResult:
    """Self-test outcome for a delivery channel."""

    ok: bool
    detail: str = ""


class EmailSender(Protocol):
    """Hands an alert e-mail to an external delivery service."""

    name: str

    async def send_email(
        self,
        recipient: str,
        alert_name: str,
        message: str,
        evidence: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Deliver one alert e-mail; return whether the relay accepted it."""

    async def self_test(self) -> NotifierTestResult:
        """Check that the channel is reachable."""
