"""Durable alert definitions and notification log over the key-value contract.

Alerts and notifications are stored as id-keyed maps under their own keys.
Every read returns fresh model objects, so callers never hold a handle into
the persisted state.
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Dict, List, Optional

from alerts.models import Alert, Notification
from storage.kv_store import ALERTS_KEY, NOTIFICATIONS_KEY, KeyValueStore

LOGGER = logging.getLogger(__name__)


class NotificationStore:
    """Owner of the persisted Alert and Notification collections."""

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    # -- alerts -----------------------------------------------------------

    def _load_alerts(self) -> Dict[str, Alert]:
        raw = self._store.get(ALERTS_KEY, {}) or {}
        alerts: Dict[str, Alert] = {}
        for alert_id, payload in raw.items():
            try:
                alerts[alert_id] = Alert.from_dict(payload)
            except (KeyError, ValueError) as exc:
                LOGGER.warning("Skip unreadable alert %s: %s", alert_id, exc)
        return alerts

    def _save_alerts(self, alerts: Dict[str, Alert]) -> None:
        self._store.set(ALERTS_KEY, {alert_id: alert.to_dict() for alert_id, alert in alerts.items()})

    def list_alerts(self, enabled: Optional[bool] = None) -> List[Alert]:
        alerts = sorted(self._load_alerts().values(), key=lambda a: a.created_at)
        if enabled is None:
            return alerts
        return [alert for alert in alerts if alert.enabled == enabled]

    def get_alert(self, alert_id: str) -> Optional[Alert]:
        return self._load_alerts().get(alert_id)

    def add_alert(self, alert: Alert) -> Alert:
        alerts = self._load_alerts()
        if alert.id in alerts:
            raise ValueError(f"alert {alert.id} already exists")
        alerts[alert.id] = alert
        self._save_alerts(alerts)
        LOGGER.info("Alert %s (%s) created", alert.id, alert.name)
        return dataclasses.replace(alert)

    def update_alert(self, alert: Alert) -> Alert:
        alerts = self._load_alerts()
        if alert.id not in alerts:
            raise KeyError(alert.id)
        alerts[alert.id] = alert
        self._save_alerts(alerts)
        return dataclasses.replace(alert)

    def set_enabled(self, alert_id: str, enabled: bool) -> Alert:
        alert = self.get_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        return self.update_alert(dataclasses.replace(alert, enabled=enabled))

    def mark_triggered(self, alert_id: str, fired_at: float) -> Optional[Alert]:
        alert = self.get_alert(alert_id)
        if alert is None:
            return None
        return self.update_alert(dataclasses.replace(alert, last_triggered_at=fired_at))

    def reset_trigger(self, alert_id: str) -> Alert:
        """Clear ``last_triggered_at`` so a ``once`` alert may fire again."""

        alert = self.get_alert(alert_id)
        if alert is None:
            raise KeyError(alert_id)
        return self.update_alert(dataclasses.replace(alert, last_triggered_at=None))

    def delete_alert(self, alert_id: str) -> bool:
        """Delete the alert and every notification it produced."""

        alerts = self._load_alerts()
        removed = alerts.pop(alert_id, None) is not None
        self._save_alerts(alerts)
        notifications = self._load_notifications()
        kept = {nid: n for nid, n in notifications.items() if n.alert_id != alert_id}
        if len(kept) != len(notifications):
            self._save_notifications(kept)
        LOGGER.info(
            "Alert %s deleted with %s notifications", alert_id, len(notifications) - len(kept)
        )
        return removed

    # -- notifications ----------------------------------------------------

    def _load_notifications(self) -> Dict[str, Notification]:
        raw = self._store.get(NOTIFICATIONS_KEY, {}) or {}
        notifications: Dict[str, Notification] = {}
        for notification_id, payload in raw.items():
            try:
                notifications[notification_id] = Notification.from_dict(payload)
            except (KeyError, ValueError) as exc:
                LOGGER.warning("Skip unreadable notification %s: %s", notification_id, exc)
        return notifications

    def _save_notifications(self, notifications: Dict[str, Notification]) -> None:
        self._store.set(
            NOTIFICATIONS_KEY,
            {notification_id: n.to_dict() for notification_id, n in notifications.items()},
        )

    def append_notification(self, notification: Notification) -> bool:
        """Persist ``notification`` unless it duplicates an existing one.

        Duplicates share the id, or the alert id plus evidence reference
        (the same alert firing twice for the same transaction).
        """

        notifications = self._load_notifications()
        if notification.id in notifications:
            return False
        if notification.evidence_ref is not None:
            for existing in notifications.values():
                if (
                    existing.alert_id == notification.alert_id
                    and existing.evidence_ref == notification.evidence_ref
                ):
                    LOGGER.debug(
                        "Duplicate notification for alert %s evidence %s dropped",
                        notification.alert_id,
                        notification.evidence_ref,
                    )
                    return False
        notifications[notification.id] = notification
        self._save_notifications(notifications)
        return True

    def list_notifications(self, alert_id: Optional[str] = None, unread_only: bool = False) -> List[Notification]:
        """Notifications, newest first."""

        items = list(self._load_notifications().values())
        if alert_id is not None:
            items = [n for n in items if n.alert_id == alert_id]
        if unread_only:
            items = [n for n in items if not n.read]
        return sorted(items, key=lambda n: n.fired_at, reverse=True)

    def unread_count(self) -> int:
        return sum(1 for n in self._load_notifications().values() if not n.read)

    def mark_read(self, notification_id: str) -> bool:
        notifications = self._load_notifications()
        notification = notifications.get(notification_id)
        if notification is None:
            return False
        notification.read = True
        self._save_notifications(notifications)
        return True

    def mark_all_read(self) -> int:
        notifications = self._load_notifications()
        changed = 0
        for notification in notifications.values():
            if not notification.read:
                notification.read = True
                changed += 1
        if changed:
            self._save_notifications(notifications)
        return changed

    def delete_notification(self, notification_id: str) -> bool:
        notifications = self._load_notifications()
        if notifications.pop(notification_id, None) is None:
            return False
        self._save_notifications(notifications)
        return True

    def delete_all_notifications(self) -> None:
        self._save_notifications({})


__all__ = ["NotificationStore"]
