"""E-mail relay client posting alert mails to an HTTP webhook."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import httpx

from alerts.notifiers.base import EmailSender, NotifierTestResult

LOGGER = logging.getLogger(__name__)


def _sign(secret: str, timestamp: int, body: bytes) -> str:
    string_to_sign = f"{timestamp}\n".encode("utf-8") + body
    signature = hmac.new(secret.encode("utf-8"), string_to_sign, digestmod=hashlib.sha256).digest()
    return base64.b64encode(signature).decode("utf-8")


async def post_email(
    payload: Mapping[str, Any],
    webhook: str,
    secret: Optional[str] = None,
    client: Optional[httpx.AsyncClient] = None,
) -> None:
    """POST an e-mail request to the relay; raise on HTTP errors."""

    body = json.dumps(payload, ensure_ascii=False, default=str).encode("utf-8")
    headers = {"Content-Type": "application/json"}
    if secret:
        timestamp = int(time.time() * 1000)
        headers["X-Timestamp"] = str(timestamp)
        headers["X-Signature"] = _sign(secret, timestamp, body)
    if client is not None:
        response = await client.post(webhook, content=body, headers=headers)
        response.raise_for_status()
    else:
        async with httpx.AsyncClient(timeout=10) as own_client:
            response = await own_client.post(webhook, content=body, headers=headers)
            response.raise_for_status()
    LOGGER.info("Relay accepted e-mail to %s", payload.get("to"))


@dataclass(slots=True)
class WebhookEmailSender(EmailSender):
    """Sends alert e-mails through a relay webhook."""

    webhook: Optional[str]
    secret: Optional[str] = None
    client: Optional[httpx.AsyncClient] = None
    name: str = "email"

    def enabled(self) -> bool:
        return bool(self.webhook)

    async def send_email(
        self,
        recipient: str,
        alert_name: str,
        message: str,
        evidence: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if not self.enabled():
            LOGGER.info("E-mail relay missing webhook; skip send for %s", alert_name)
            return False
        payload = {
            "to": recipient,
            "subject": f"[chainsentry] {alert_name}",
            "alert": alert_name,
            "message": message,
            "evidence": dict(evidence or {}),
        }
        await post_email(payload, self.webhook or "", self.secret, self.client)
        return True

    async def self_test(self) -> NotifierTestResult:
        if not self.webhook:
            return NotifierTestResult(ok=False, detail="Missing webhook for e-mail relay")
        try:
            probe = {"to": None, "subject": "[TEST] relay self-test", "test": True}
            await post_email(probe, self.webhook, self.secret, self.client)
            return NotifierTestResult(ok=True, detail="E-mail relay reachable")
        except httpx.HTTPError as exc:
            LOGGER.exception("E-mail relay self-test failed: %s", exc)
            return NotifierTestResult(ok=False, detail=str(exc))


__all__ = ["post_email", "WebhookEmailSender"]
