"""Lightweight event bus decoupling the connection layer, the alert layer and subscribers."""

from __future__ import annotations

import logging
import time
from collections import defaultdict
from typing import Callable, DefaultDict, Iterable, List

from core.events import EventBase, EventEnvelope, EventType

LOGGER = logging.getLogger(__name__)

Subscriber = Callable[[EventEnvelope], None]


class EventBus:
    """Publish/subscribe hub shared by the manager, the monitor and the director."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[Subscriber]] = defaultdict(list)

    def subscribe(self, event_type: EventType, handler: Subscriber) -> None:
        """Register a callback for one event type."""

        self._subscribers[event_type.value].append(handler)

    def unsubscribe(self, event_type: EventType, handler: Subscriber) -> None:
        handlers = self._subscribers.get(event_type.value, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, envelope: EventEnvelope) -> None:
        """Deliver the envelope to the subscribers of its event type.

        A failing subscriber is logged and does not prevent delivery to the
        remaining ones.
        """

        for handler in list(self._subscribers.get(envelope.event.event_type.value, [])):
            try:
                handler(envelope)
            except Exception:
                LOGGER.exception("Subscriber %r failed on %s", handler, envelope.event.event_type.value)

    def emit(self, event: EventBase) -> EventEnvelope:
        """Wrap ``event`` with the current time and publish it."""

        envelope = EventEnvelope(event=event, ts=time.time())
        self.publish(envelope)
        return envelope

    def subscribers(self, event_type: EventType) -> Iterable[Subscriber]:
        """Expose subscribers for tests and debugging."""

        return tuple(self._subscribers.get(event_type.value, ()))
