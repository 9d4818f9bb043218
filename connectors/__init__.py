"""Node connectors: JSON-RPC transports and the latest-block feed."""

from .block_feed import LatestBlockFeed
from .transport import (
    HttpTransport,
    RetryingTransport,
    TransportClients,
    WebSocketTransport,
    build_transport,
)

__all__ = [
    "LatestBlockFeed",
    "HttpTransport",
    "RetryingTransport",
    "TransportClients",
    "WebSocketTransport",
    "build_transport",
]
