"""Transport contract used by the connection manager to reach a node."""

from __future__ import annotations

from typing import Any, Callable, Optional, Protocol, Sequence

from core.health import Endpoint, TransportKind


class Transport(Protocol):
    """A single-endpoint JSON-RPC channel."""

    kind: TransportKind
    url: str

    async def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        """Issue one RPC call and return its ``result``.

        Raises ``TransportTimeout``/``TransportError`` when the call cannot be
        completed and ``RemoteError`` when the node answers with an error.
        """

    async def aclose(self) -> None:
        """Abandon in-flight calls and release sockets/clients."""


TransportFactory = Callable[[Endpoint], Transport]


__all__ = ["Transport", "TransportFactory"]
