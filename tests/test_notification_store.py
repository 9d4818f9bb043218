import sys
from decimal import Decimal
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from alerts.models import (
    Alert,
    AlertFrequency,
    LargeTransaction,
    Notification,
    NotificationChannels,
    SuspiciousAddress,
)
from storage.kv_store import ALERTS_KEY, InMemoryKeyValueStore
from storage.notification_store import NotificationStore


def _store() -> NotificationStore:
    return NotificationStore(InMemoryKeyValueStore())


def test_alert_crud_roundtrip() -> None:
    store = _store()
    alert = store.add_alert(
        Alert(
            name="Whale watch",
            description="Transfers above 12.5 ETH",
            condition=LargeTransaction(threshold=Decimal("12.5")),
            frequency=AlertFrequency.ONCE,
        )
    )
    loaded = store.get_alert(alert.id)
    assert loaded == alert
    assert loaded.description == "Transfers above 12.5 ETH"
    assert loaded is not alert

    with pytest.raises(ValueError):
        store.add_alert(alert)

    disabled = store.set_enabled(alert.id, False)
    assert disabled.enabled is False
    assert store.list_alerts(enabled=True) == []
    assert [a.id for a in store.list_alerts()] == [alert.id]

    with pytest.raises(KeyError):
        store.set_enabled("missing", True)


def test_trigger_marker_persists_until_reset() -> None:
    store = _store()
    alert = store.add_alert(Alert(name="Suspicious", condition=SuspiciousAddress(), frequency=AlertFrequency.ONCE))

    store.mark_triggered(alert.id, 123.0)
    assert store.get_alert(alert.id).last_triggered_at == 123.0

    store.reset_trigger(alert.id)
    assert store.get_alert(alert.id).last_triggered_at is None


def test_email_channel_requires_address() -> None:
    with pytest.raises(ValueError):
        Alert(name="Mail me", condition=SuspiciousAddress(), channels=NotificationChannels(email=True))
    with pytest.raises(ValueError):
        Alert(name="  ", condition=SuspiciousAddress())


def test_delete_alert_cascades_to_its_notifications_only() -> None:
    store = _store()
    first = store.add_alert(Alert(name="First", condition=SuspiciousAddress()))
    second = store.add_alert(Alert(name="Second", condition=SuspiciousAddress()))
    store.append_notification(Notification(alert_id=first.id, alert_name="First", message="a", evidence_ref="0x1"))
    store.append_notification(Notification(alert_id=first.id, alert_name="First", message="b", evidence_ref="0x2"))
    kept = Notification(alert_id=second.id, alert_name="Second", message="c", evidence_ref="0x1")
    store.append_notification(kept)

    assert store.delete_alert(first.id) is True
    assert [a.id for a in store.list_alerts()] == [second.id]
    assert [n.id for n in store.list_notifications()] == [kept.id]
    assert store.delete_alert(first.id) is False


def test_notifications_deduplicated_and_ordered() -> None:
    store = _store()
    older = Notification(alert_id="a1", alert_name="A", message="old", fired_at=10.0, evidence_ref="0xaa")
    newer = Notification(alert_id="a1", alert_name="A", message="new", fired_at=20.0, evidence_ref="0xbb")

    assert store.append_notification(older) is True
    assert store.append_notification(newer) is True
    assert store.append_notification(older) is False
    same_evidence = Notification(alert_id="a1", alert_name="A", message="again", evidence_ref="0xaa")
    assert store.append_notification(same_evidence) is False

    assert [n.message for n in store.list_notifications()] == ["new", "old"]


def test_read_state_operations() -> None:
    store = _store()
    notes = [
        Notification(alert_id="a1", alert_name="A", message=str(i), fired_at=float(i), evidence_ref=f"0x{i}")
        for i in range(3)
    ]
    for note in notes:
        store.append_notification(note)
    assert store.unread_count() == 3

    assert store.mark_read(notes[0].id) is True
    assert store.mark_read("missing") is False
    assert store.unread_count() == 2
    assert len(store.list_notifications(unread_only=True)) == 2

    assert store.mark_all_read() == 2
    assert store.unread_count() == 0

    assert store.delete_notification(notes[1].id) is True
    assert len(store.list_notifications()) == 2
    store.delete_all_notifications()
    assert store.list_notifications() == []


def test_unreadable_alerts_are_skipped() -> None:
    backing = InMemoryKeyValueStore({ALERTS_KEY: {"broken": {"id": "broken", "name": "x"}}})
    store = NotificationStore(backing)
    assert store.list_alerts() == []


def test_alert_without_description_loads_empty() -> None:
    payload = Alert(name="Legacy", condition=SuspiciousAddress()).to_dict()
    del payload["description"]
    assert Alert.from_dict(payload).description == ""
