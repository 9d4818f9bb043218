import asyncio
import sys
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, List, Mapping, Optional

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alerts.director import AlertDirector
from alerts.models import (
    AddressActivity,
    Alert,
    AlertFrequency,
    LargeTransaction,
    NotificationChannels,
    Transaction,
)
from alerts.notifiers.base import EmailSender, NotifierTestResult
from core.event_bus import EventBus
from core.events import EventType
from storage.kv_store import InMemoryKeyValueStore
from storage.notification_store import NotificationStore

WEI = 10**18
SENDER = "0x2222222222222222222222222222222222222222"
RECEIVER = "0x3333333333333333333333333333333333333333"


@dataclass
class _FakeEmailSender(EmailSender):
    name: str = "fake-email"
    fail: bool = False
    sent: List[tuple] = field(default_factory=list)

    async def send_email(
        self,
        recipient: str,
        alert_name: str,
        message: str,
        evidence: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        if self.fail:
            raise ConnectionError("relay unreachable")
        self.sent.append((recipient, alert_name, message, dict(evidence or {})))
        return True

    async def self_test(self) -> NotifierTestResult:
        return NotifierTestResult(ok=True, detail="fake")


def _batch(*eth_values: int, start: int = 1) -> List[Transaction]:
    return [
        Transaction(hash=f"0x{index:064x}", from_address=SENDER, to_address=RECEIVER, value=value * WEI)
        for index, value in enumerate(eth_values, start=start)
    ]


def _large_alert(frequency: AlertFrequency, **kwargs: Any) -> Alert:
    return Alert(name="Whale watch", condition=LargeTransaction(threshold=Decimal(10)), frequency=frequency, **kwargs)


def test_once_alert_fires_for_first_match_only() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        alert = store.add_alert(_large_alert(AlertFrequency.ONCE))
        director = AlertDirector(store, clock=lambda: 1700000000.0)

        fired = await director.process_batch(_batch(5, 15, 20))
        assert len(fired) == 1
        assert fired[0].message == "Large transaction of 15 ETH detected"
        assert fired[0].evidence_ref == _batch(5, 15, 20)[1].hash
        assert store.get_alert(alert.id).last_triggered_at == 1700000000.0

        assert await director.process_batch(_batch(20)) == []
        assert len(store.list_notifications()) == 1

    asyncio.run(_run())


def test_once_alert_fires_again_after_reset() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        alert = store.add_alert(_large_alert(AlertFrequency.ONCE))
        director = AlertDirector(store)

        await director.process_batch(_batch(15))
        store.reset_trigger(alert.id)
        fired = await director.process_batch(
            [Transaction(hash="0xnew", from_address=SENDER, to_address=RECEIVER, value=30 * WEI)]
        )
        assert len(fired) == 1
        assert len(store.list_notifications(alert_id=alert.id)) == 2

    asyncio.run(_run())


def test_always_alert_fires_on_every_match() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        store.add_alert(_large_alert(AlertFrequency.ALWAYS))
        director = AlertDirector(store)

        fired = await director.process_batch(_batch(5, 15))
        assert [n.message for n in fired] == ["Large transaction of 15 ETH detected"]

        fired = await director.process_batch(_batch(5, 12, 20, start=10))
        assert len(fired) == 2
        assert len(store.list_notifications()) == 3

    asyncio.run(_run())


def test_same_transaction_is_not_notified_twice() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        store.add_alert(_large_alert(AlertFrequency.ALWAYS))
        director = AlertDirector(store)

        batch = _batch(15)
        assert len(await director.process_batch(batch)) == 1
        assert await director.process_batch(batch) == []
        assert len(store.list_notifications()) == 1

    asyncio.run(_run())


def test_disabled_alerts_are_skipped() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        alert = store.add_alert(_large_alert(AlertFrequency.ALWAYS))
        store.set_enabled(alert.id, False)
        director = AlertDirector(store)
        assert await director.process_batch(_batch(50)) == []

    asyncio.run(_run())


def test_email_is_sent_and_in_app_event_published() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        store.add_alert(
            Alert(
                name="Receiver activity",
                condition=AddressActivity(address=RECEIVER.upper().replace("0X", "0x")),
                channels=NotificationChannels(in_app=True, email=True),
                email_address="analyst@example.com",
            )
        )
        bus = EventBus()
        fired_events = []
        bus.subscribe(EventType.ALERT_FIRED, fired_events.append)
        sender = _FakeEmailSender()
        director = AlertDirector(store, email_sender=sender, event_bus=bus)

        fired = await director.process_batch(_batch(1))
        await director.aclose()

        assert len(fired) == 1
        assert len(fired_events) == 1
        assert fired_events[0].event.notification_id == fired[0].id
        recipient, alert_name, message, evidence = sender.sent[0]
        assert recipient == "analyst@example.com"
        assert alert_name == "Receiver activity"
        assert message.startswith("Activity detected for address")
        assert evidence["hash"] == fired[0].evidence_ref

    asyncio.run(_run())


def test_email_failure_keeps_notification() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        store.add_alert(
            _large_alert(
                AlertFrequency.ALWAYS,
                channels=NotificationChannels(in_app=False, email=True),
                email_address="analyst@example.com",
            )
        )
        bus = EventBus()
        faults = []
        bus.subscribe(EventType.SYSTEM_FAULT, faults.append)
        director = AlertDirector(store, email_sender=_FakeEmailSender(fail=True), event_bus=bus)

        fired = await director.process_batch(_batch(15, 25))
        await director.aclose()

        assert len(fired) == 2
        assert len(store.list_notifications()) == 2
        assert len(faults) == 2
        assert faults[0].event.category == "email"
        assert director.pending_emails == 0

    asyncio.run(_run())


def test_notification_keeps_alert_name_after_rename() -> None:
    async def _run() -> None:
        store = NotificationStore(InMemoryKeyValueStore())
        alert = store.add_alert(_large_alert(AlertFrequency.ALWAYS))
        director = AlertDirector(store)
        await director.process_batch(_batch(11))

        alert = store.get_alert(alert.id)
        alert.name = "Renamed"
        store.update_alert(alert)
        assert store.list_notifications()[0].alert_name == "Whale watch"

    asyncio.run(_run())
