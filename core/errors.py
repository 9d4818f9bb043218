"""Error taxonomy shared by the connection and alerting layers."""

from __future__ import annotations

from typing import Any, Optional


class ChainSentryError(Exception):
    """Base class for every error raised by this package."""


class TransportError(ChainSentryError):
    """A single RPC call could not be completed."""


class TransportTimeout(TransportError):
    """The call exceeded its deadline on every allowed attempt."""


class RemoteError(ChainSentryError):
    """The node answered with a JSON-RPC error payload or a malformed result."""

    def __init__(self, message: str, code: Optional[int] = None, data: Any = None) -> None:
        super().__init__(message)
        self.code = code
        self.data = data


class ConnectivityLost(ChainSentryError):
    """A probe failed against the active endpoint."""


class ReconnectExhausted(ConnectivityLost):
    """All reconnect attempts failed; a new endpoint has to be picked manually."""


class InvalidCacheFormat(ChainSentryError, ValueError):
    """A block cache import payload was rejected."""


__all__ = [
    "ChainSentryError",
    "TransportError",
    "TransportTimeout",
    "RemoteError",
    "ConnectivityLost",
    "ReconnectExhausted",
    "InvalidCacheFormat",
]
