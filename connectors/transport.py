"""JSON-RPC transports for HTTP and websocket endpoints.

``HttpTransport`` and ``WebSocketTransport`` issue single calls.
``RetryingTransport`` wraps any transport with a per-attempt deadline and a
bounded number of transparent retries; it owns the pending-request
bookkeeping for the calls it issued. Streaming endpoints are not wrapped:
the websocket transport re-opens its socket on the next call after a drop
and reports timeouts directly.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import httpx
import websockets
from websockets.exceptions import WebSocketException

from core.errors import RemoteError, TransportError, TransportTimeout
from core.health import Endpoint, TransportKind
from core.providers import Transport

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 15.0
DEFAULT_MAX_RETRIES = 3
RATE_LIMIT_DELAY = 1.0


def _default_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=DEFAULT_TIMEOUT, headers={"Content-Type": "application/json"})


@dataclass
class TransportClients:
    """Container for injectable network dependencies."""

    http_factory: Callable[[], httpx.AsyncClient] = _default_http_client
    ws_connect: Callable[[str], Awaitable[Any]] = websockets.connect


def _request_payload(request_id: int, method: str, params: Optional[Sequence[Any]]) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": request_id, "method": method, "params": list(params or [])}


def _unwrap(payload: Any, request_id: int) -> Any:
    if not isinstance(payload, dict):
        raise RemoteError(f"Malformed JSON-RPC response: {payload!r}")
    if payload.get("id") != request_id:
        raise RemoteError(f"Response id {payload.get('id')!r} does not match request {request_id}")
    error = payload.get("error")
    if error is not None:
        if isinstance(error, dict):
            raise RemoteError(str(error.get("message", "RPC error")), code=error.get("code"), data=error.get("data"))
        raise RemoteError(str(error))
    if "result" not in payload:
        raise RemoteError("JSON-RPC response carries neither result nor error")
    return payload["result"]


class HttpTransport:
    """JSON-RPC over HTTP POST."""

    kind = TransportKind.HTTP

    def __init__(
        self,
        url: str,
        clients: Optional[TransportClients] = None,
        rate_limit_delay: float = RATE_LIMIT_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.url = url
        self._clients = clients or TransportClients()
        self._timeout = timeout
        self._rate_limit_delay = rate_limit_delay
        self._ids = itertools.count(1)
        self._http: Optional[httpx.AsyncClient] = None
        self._closed = False

    def _get_http(self) -> httpx.AsyncClient:
        if self._closed:
            raise TransportError("transport closed")
        if self._http is None:
            self._http = self._clients.http_factory()
        return self._http

    async def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        request_id = next(self._ids)
        payload = _request_payload(request_id, method, params)
        client = self._get_http()
        try:
            response = await client.post(self.url, json=payload, timeout=self._timeout)
            if response.status_code == 429:
                LOGGER.debug("Rate limited by %s; retrying %s once", self.url, method)
                await asyncio.sleep(self._rate_limit_delay)
                response = await client.post(self.url, json=payload, timeout=self._timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransportTimeout(f"{method} timed out against {self.url}") from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise TransportError(f"HTTP {status} from {self.url}") from exc
        except httpx.RequestError as exc:
            raise TransportError(f"{method} failed against {self.url}: {exc}") from exc
        try:
            body = response.json()
        except ValueError as exc:
            raise RemoteError(f"Non-JSON response from {self.url}") from exc
        return _unwrap(body, request_id)

    async def aclose(self) -> None:
        self._closed = True
        if self._http is not None:
            await self._http.aclose()
            self._http = None


class WebSocketTransport:
    """JSON-RPC over a websocket with id-based response dispatch."""

    kind = TransportKind.STREAMING

    def __init__(
        self,
        url: str,
        clients: Optional[TransportClients] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ) -> None:
        self.url = url
        self._clients = clients or TransportClients()
        self._timeout = timeout
        self._ids = itertools.count(1)
        self._pending: Dict[int, asyncio.Future] = {}
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._closed = False

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def _ensure_connected(self) -> Any:
        async with self._connect_lock:
            if self._closed:
                raise TransportError("transport closed")
            if self._ws is not None:
                return self._ws
            LOGGER.info("Opening websocket to %s", self.url)
            try:
                ws = await self._clients.ws_connect(self.url)
            except asyncio.TimeoutError as exc:
                raise TransportTimeout(f"Opening websocket to {self.url} timed out") from exc
            except (OSError, WebSocketException) as exc:
                raise TransportError(f"Cannot open websocket to {self.url}: {exc}") from exc
            self._ws = ws
            self._reader = asyncio.ensure_future(self._read_loop(ws))
            return ws

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                try:
                    payload = json.loads(raw)
                except json.JSONDecodeError:
                    LOGGER.warning("Failed to decode websocket message: %s", raw)
                    continue
                if not isinstance(payload, dict):
                    continue
                future = self._pending.pop(payload.get("id"), None)
                if future is None or future.done():
                    LOGGER.debug("Dropping response for unknown or expired id %r", payload.get("id"))
                    continue
                future.set_result(payload)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.warning("Websocket to %s closed: %s", self.url, exc)
        finally:
            if self._ws is ws:
                self._ws = None
            self._fail_pending(TransportError(f"websocket to {self.url} closed"))

    def _fail_pending(self, error: Exception) -> None:
        pending, self._pending = self._pending, {}
        for future in pending.values():
            if not future.done():
                future.set_exception(error)

    async def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        ws = await self._ensure_connected()
        request_id = next(self._ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await ws.send(json.dumps(_request_payload(request_id, method, params)))
            payload = await asyncio.wait_for(future, self._timeout)
        except asyncio.TimeoutError as exc:
            raise TransportTimeout(f"{method} timed out against {self.url}") from exc
        except WebSocketException as exc:
            raise TransportError(f"{method} failed against {self.url}: {exc}") from exc
        finally:
            self._pending.pop(request_id, None)
        return _unwrap(payload, request_id)

    async def aclose(self) -> None:
        self._closed = True
        reader, self._reader = self._reader, None
        ws, self._ws = self._ws, None
        if reader is not None and not reader.done():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)
        self._fail_pending(TransportError("transport closed"))
        if ws is not None:
            try:
                await ws.close()
            except WebSocketException as exc:
                LOGGER.debug("Error closing websocket: %s", exc)
            LOGGER.info("Websocket to %s closed", self.url)


@dataclass(slots=True)
class PendingRequest:
    """Retry bookkeeping for one logical call."""

    request_id: int
    method: str
    attempt_count: int = 0
    max_attempts: int = DEFAULT_MAX_RETRIES
    deadline: float = 0.0
    task: Optional[asyncio.Future] = None


class RetryingTransport:
    """Adds deadlines and transparent retries to an inner transport.

    Each attempt gets ``timeout`` seconds. A timed-out attempt is cancelled
    and re-issued until ``max_retries`` retries have been spent; the next
    timeout raises ``TransportTimeout``. Remote errors are never retried.
    """

    def __init__(
        self,
        inner: Transport,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = DEFAULT_MAX_RETRIES,
    ) -> None:
        self._inner = inner
        self._timeout = timeout
        self._max_retries = max_retries
        self._ids = itertools.count(1)
        self._pending: Dict[int, PendingRequest] = {}
        self._closed = False

    @property
    def kind(self) -> TransportKind:
        return self._inner.kind

    @property
    def url(self) -> str:
        return self._inner.url

    @property
    def pending(self) -> Dict[int, PendingRequest]:
        return dict(self._pending)

    async def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        if self._closed:
            raise TransportError("transport closed")
        loop = asyncio.get_running_loop()
        request = PendingRequest(request_id=next(self._ids), method=method, max_attempts=self._max_retries)
        self._pending[request.request_id] = request
        try:
            while True:
                request.deadline = loop.time() + self._timeout
                request.task = asyncio.ensure_future(self._inner.call(method, params))
                try:
                    return await asyncio.wait_for(request.task, self._timeout)
                except (asyncio.TimeoutError, TransportTimeout):
                    if request.attempt_count >= request.max_attempts:
                        raise TransportTimeout(
                            f"{method} timed out after {request.attempt_count + 1} attempts against {self.url}"
                        ) from None
                    request.attempt_count += 1
                    LOGGER.debug(
                        "%s #%s timed out; retry %s/%s",
                        method,
                        request.request_id,
                        request.attempt_count,
                        request.max_attempts,
                    )
                except asyncio.CancelledError:
                    if self._closed:
                        raise TransportError("transport closed") from None
                    raise
        finally:
            self._pending.pop(request.request_id, None)
            if request.task is not None and not request.task.done():
                request.task.cancel()

    async def aclose(self) -> None:
        """Cancel every in-flight attempt, drop bookkeeping and close the inner transport."""

        self._closed = True
        pending, self._pending = self._pending, {}
        for request in pending.values():
            if request.task is not None and not request.task.done():
                request.task.cancel()
        await self._inner.aclose()


def build_transport(
    endpoint: Endpoint,
    timeout: float = DEFAULT_TIMEOUT,
    max_retries: int = DEFAULT_MAX_RETRIES,
    clients: Optional[TransportClients] = None,
) -> Transport:
    """Create the transport stack for ``endpoint``."""

    if endpoint.kind is TransportKind.STREAMING:
        return WebSocketTransport(endpoint.url, clients=clients, timeout=timeout)
    inner = HttpTransport(endpoint.url, clients=clients, timeout=timeout)
    return RetryingTransport(inner, timeout=timeout, max_retries=max_retries)


__all__ = [
    "TransportClients",
    "HttpTransport",
    "WebSocketTransport",
    "PendingRequest",
    "RetryingTransport",
    "build_transport",
]
