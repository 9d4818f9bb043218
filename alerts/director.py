"""Alert orchestration across incoming transaction batches.

Batches are processed strictly one after another. Within a batch every
enabled alert is checked against the transactions in their given order:

* ``once`` alerts are skipped when they already fired; otherwise the first
  match fires, records ``last_triggered_at`` and ends the scan for that alert.
* ``always`` alerts fire on every matching transaction.

A notification is persisted before any e-mail is attempted. E-mail delivery
runs as a background task whose failures are logged and published as
system faults but never undo or block persistence.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Container, List, Optional, Sequence, Set, Tuple

from alerts.engine import KNOWN_SUSPICIOUS_ADDRESSES, describe, matches
from alerts.models import Alert, AlertFrequency, Notification, Transaction
from alerts.notifiers.base import EmailSender
from core.event_bus import EventBus
from core.events import AlertFiredEvent, EventType, Severity, SystemFaultEvent, event_detail
from storage.notification_store import NotificationStore

LOGGER = logging.getLogger(__name__)


class AlertDirector:
    """Runs the alert engine over transaction batches and records the results."""

    def __init__(
        self,
        store: NotificationStore,
        email_sender: Optional[EmailSender] = None,
        event_bus: Optional[EventBus] = None,
        suspicious_addresses: Container[str] = KNOWN_SUSPICIOUS_ADDRESSES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._email_sender = email_sender
        self._event_bus = event_bus
        self._suspicious = suspicious_addresses
        self._clock = clock
        self._batch_lock = asyncio.Lock()
        self._email_tasks: Set[asyncio.Task] = set()

    async def process_batch(self, transactions: Sequence[Transaction]) -> List[Notification]:
        """Evaluate one batch and return the notifications it created."""

        async with self._batch_lock:
            fired = await asyncio.to_thread(self._evaluate, transactions)
            for alert, notification in fired:
                self._announce(alert, notification)
        if fired:
            LOGGER.info("Batch of %s transactions fired %s notifications", len(transactions), len(fired))
        return [notification for _, notification in fired]

    def _evaluate(self, transactions: Sequence[Transaction]) -> List[Tuple[Alert, Notification]]:
        # Runs in a worker thread; only touches the store.
        fired: List[Tuple[Alert, Notification]] = []
        if not transactions:
            return fired
        for alert in self._store.list_alerts(enabled=True):
            if alert.frequency is AlertFrequency.ONCE and alert.last_triggered_at is not None:
                continue
            for transaction in transactions:
                if not matches(alert.condition, transaction, self._suspicious):
                    continue
                notification = self._fire(alert, transaction)
                if notification is not None:
                    fired.append((alert, notification))
                if alert.frequency is AlertFrequency.ONCE:
                    break
        return fired

    def _fire(self, alert: Alert, transaction: Transaction) -> Optional[Notification]:
        fired_at = self._clock()
        notification = Notification(
            alert_id=alert.id,
            alert_name=alert.name,
            message=describe(alert.condition, transaction),
            fired_at=fired_at,
            evidence_ref=transaction.hash,
            details=transaction.to_dict(),
        )
        stored = self._store.append_notification(notification)
        self._store.mark_triggered(alert.id, fired_at)
        return notification if stored else None

    def _announce(self, alert: Alert, notification: Notification) -> None:
        LOGGER.info("Alert %s fired on %s: %s", alert.name, notification.evidence_ref, notification.message)
        if alert.channels.in_app and self._event_bus is not None:
            self._event_bus.emit(
                AlertFiredEvent(
                    event_type=EventType.ALERT_FIRED,
                    severity=Severity.WARNING,
                    source="alerts",
                    message=notification.message,
                    detail=event_detail(alert_name=alert.name),
                    alert_id=alert.id,
                    notification_id=notification.id,
                    evidence_ref=notification.evidence_ref,
                )
            )
        if alert.channels.email and alert.email_address:
            self._dispatch_email(alert, notification)

    def _dispatch_email(self, alert: Alert, notification: Notification) -> None:
        if self._email_sender is None:
            LOGGER.warning("No e-mail sender configured; skip e-mail for alert %s", alert.name)
            return
        task = asyncio.ensure_future(self._send_email(alert.email_address or "", notification))
        self._email_tasks.add(task)
        task.add_done_callback(self._email_tasks.discard)

    async def _send_email(self, recipient: str, notification: Notification) -> None:
        assert self._email_sender is not None
        try:
            delivered = await self._email_sender.send_email(
                recipient, notification.alert_name, notification.message, notification.details
            )
        except Exception as exc:
            LOGGER.exception("E-mail for alert %s failed: %s", notification.alert_name, exc)
            self._emit_email_fault(notification, str(exc))
            return
        if not delivered:
            LOGGER.warning("E-mail for alert %s was not delivered", notification.alert_name)
            self._emit_email_fault(notification, "not delivered")

    def _emit_email_fault(self, notification: Notification, reason: str) -> None:
        if self._event_bus is None:
            return
        self._event_bus.emit(
            SystemFaultEvent(
                event_type=EventType.SYSTEM_FAULT,
                severity=Severity.WARNING,
                source="alerts",
                message=f"E-mail delivery failed for {notification.alert_name}: {reason}",
                detail=event_detail(notification_id=notification.id),
                component="email",
                category="email",
            )
        )

    @property
    def pending_emails(self) -> int:
        return len(self._email_tasks)

    async def aclose(self) -> None:
        """Wait for outstanding e-mail deliveries."""

        if self._email_tasks:
            await asyncio.gather(*list(self._email_tasks), return_exceptions=True)


__all__ = ["AlertDirector"]
