"""Key-value persistence contract used for settings, alerts and notifications.

Values are JSON-compatible structures. Reads of a missing key return the
supplied default so the application works against an empty store on first run.
"""

from __future__ import annotations

import copy
import json
import logging
import time
from typing import Any, Dict, Protocol

from storage import sqlite_manager

LOGGER = logging.getLogger(__name__)

KEY_PREFIX = "chainsentry:"
PROVIDER_KEY = f"{KEY_PREFIX}provider"
AUTO_RECONNECT_KEY = f"{KEY_PREFIX}auto_reconnect"
ALERTS_KEY = f"{KEY_PREFIX}alerts"
NOTIFICATIONS_KEY = f"{KEY_PREFIX}notifications"


class KeyValueStore(Protocol):
    def get(self, key: str, default: Any = None) -> Any:
        """Return the stored value or ``default``."""

    def set(self, key: str, value: Any) -> None:
        """Persist ``value``; ``None`` clears the key."""


class InMemoryKeyValueStore:
    """Process-local store; values are deep-copied in and out."""

    def __init__(self, initial: Dict[str, Any] | None = None) -> None:
        self._data: Dict[str, Any] = copy.deepcopy(initial or {})

    def get(self, key: str, default: Any = None) -> Any:
        if key not in self._data:
            return default
        return copy.deepcopy(self._data[key])

    def set(self, key: str, value: Any) -> None:
        if value is None:
            self._data.pop(key, None)
            return
        self._data[key] = copy.deepcopy(value)


class SqliteKeyValueStore:
    """Store backed by the ``kv_state`` table, values encoded as JSON."""

    def get(self, key: str, default: Any = None) -> Any:
        row = sqlite_manager.get_kv(key)
        if not row or row.get("value") is None:
            return default
        try:
            return json.loads(row["value"])
        except json.JSONDecodeError:
            LOGGER.warning("Invalid JSON stored under %s; using default", key)
            return default

    def set(self, key: str, value: Any) -> None:
        if value is None:
            sqlite_manager.delete_kv(key)
            return
        sqlite_manager.set_kv(key, json.dumps(value), int(time.time()))


__all__ = [
    "KEY_PREFIX",
    "PROVIDER_KEY",
    "AUTO_RECONNECT_KEY",
    "ALERTS_KEY",
    "NOTIFICATIONS_KEY",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    "SqliteKeyValueStore",
]
