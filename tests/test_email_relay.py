import asyncio
import json
import sys
from pathlib import Path
from typing import List

import httpx

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alerts.email_relay import WebhookEmailSender
from alerts.log_email import LoggingEmailSender


def test_webhook_sender_posts_signed_payload() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"ok": True})

    async def _run() -> bool:
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            sender = WebhookEmailSender(webhook="https://relay.example/mail", secret="s3cret", client=client)
            return await sender.send_email(
                "analyst@example.com", "Whale watch", "Large transaction of 15 ETH detected", {"hash": "0xa"}
            )

    assert asyncio.run(_run()) is True
    body = json.loads(seen[0].content)
    assert body["to"] == "analyst@example.com"
    assert body["subject"] == "[chainsentry] Whale watch"
    assert body["evidence"] == {"hash": "0xa"}
    assert "X-Signature" in seen[0].headers
    assert "X-Timestamp" in seen[0].headers


def test_webhook_sender_without_url_skips_delivery() -> None:
    sender = WebhookEmailSender(webhook=None)
    assert sender.enabled() is False
    assert asyncio.run(sender.send_email("a@example.com", "x", "y")) is False
    assert asyncio.run(sender.self_test()).ok is False


def test_self_test_reports_http_errors() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502)

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            return await WebhookEmailSender(webhook="https://relay.example/mail", client=client).self_test()

    result = asyncio.run(_run())
    assert result.ok is False
    assert "502" in result.detail


def test_logging_sender_always_accepts() -> None:
    sender = LoggingEmailSender()
    assert asyncio.run(sender.send_email("a@example.com", "Whale watch", "message")) is True
    assert asyncio.run(sender.self_test()).ok is True
