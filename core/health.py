"""Endpoint model, connection states and reconnect backoff helpers."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional
from urllib.parse import urlsplit

FALLBACK_PROVIDER = "https://cloudflare-eth.com"

_SECURE_SCHEMES = {"http": "https", "ws": "wss"}
_STREAMING_SCHEMES = {"ws", "wss"}
_LOCAL_HOSTS = {"localhost", "127.0.0.1", "::1"}


class TransportKind(str, Enum):
    """How calls reach the node."""

    HTTP = "http"
    STREAMING = "streaming"


class ConnectionState(str, Enum):
    """States of the ConnectionManager state machine."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def normalize_url(url: str, secure: bool = True) -> str:
    """Strip whitespace and upgrade ``http``/``ws`` to their TLS variants when ``secure``."""

    cleaned = url.strip()
    scheme, sep, rest = cleaned.partition("://")
    if not sep:
        raise ValueError(f"Endpoint URL has no scheme: {url!r}")
    scheme = scheme.lower()
    if scheme not in _SECURE_SCHEMES and scheme not in _SECURE_SCHEMES.values():
        raise ValueError(f"Unsupported endpoint scheme: {scheme}")
    if secure and scheme in _SECURE_SCHEMES:
        scheme = _SECURE_SCHEMES[scheme]
    return f"{scheme}://{rest}"


@dataclass(frozen=True, slots=True)
class Endpoint:
    """A node address plus the transport used to reach it."""

    url: str
    kind: TransportKind

    @classmethod
    def parse(cls, url: str, secure: bool = True) -> "Endpoint":
        normalized = normalize_url(url, secure=secure)
        scheme = normalized.split("://", 1)[0]
        kind = TransportKind.STREAMING if scheme in _STREAMING_SCHEMES else TransportKind.HTTP
        return cls(url=normalized, kind=kind)

    @property
    def is_secure(self) -> bool:
        return self.url.startswith(("https://", "wss://"))


def _is_local(url: str) -> bool:
    host = urlsplit(url).hostname or ""
    return host in _LOCAL_HOSTS


def select_default_endpoint(providers: Iterable[str], fallback: Optional[str] = None) -> str:
    """Pick the first remote ``wss://`` provider, then ``https://``, then the fallback."""

    candidates = [url.strip() for url in providers if url and not _is_local(url)]
    for prefix in ("wss://", "https://"):
        for url in candidates:
            if url.startswith(prefix):
                return url
    return fallback or FALLBACK_PROVIDER


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay in seconds before reconnect ``attempt`` (0-based): ``min(base * 2**attempt, cap)``."""

    if attempt < 0:
        raise ValueError("attempt must be non-negative")
    # 2**attempt grows without bound; clamp the exponent before multiplying.
    if attempt > 32:
        return cap
    return min(base * (2 ** attempt), cap)


__all__ = [
    "FALLBACK_PROVIDER",
    "TransportKind",
    "ConnectionState",
    "Endpoint",
    "normalize_url",
    "select_default_endpoint",
    "backoff_delay",
]
