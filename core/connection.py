"""Connection manager owning the single active node endpoint.

State machine::

    disconnected --set_endpoint--> connecting
    connecting   --probe ok------> connected
    connecting   --probe fails---> reconnecting | disconnected
    connected    --probe fails---> reconnecting | disconnected
    reconnecting --timer fires---> connecting

The active ``(endpoint, transport)`` pair is replaced in a single assignment,
so callers never reach a half-switched endpoint. Reconnect delays follow
``backoff_delay`` and the manager gives up after ``max_reconnect_attempts``
consecutive failures, leaving the choice of a new endpoint to the user.
"""

from __future__ import annotations

import asyncio
import logging
import time
from functools import partial
from typing import Any, Callable, List, Optional, Protocol, Sequence, Tuple

from connectors.transport import build_transport
from core.config_loader import ConnectionConfig
from core.errors import ConnectivityLost, ReconnectExhausted, RemoteError, TransportError
from core.event_bus import EventBus
from core.events import ConnectionStateEvent, EventType, NetworkSnapshotEvent, Severity, SystemFaultEvent, event_detail
from core.health import ConnectionState, Endpoint, backoff_delay, select_default_endpoint
from core.network import NetworkSnapshot, read_snapshot
from core.providers import Transport, TransportFactory
from core.scheduler import AsyncioScheduler, Scheduler, TimerHandle
from storage.kv_store import AUTO_RECONNECT_KEY, PROVIDER_KEY, InMemoryKeyValueStore, KeyValueStore

LOGGER = logging.getLogger(__name__)


class Monitor(Protocol):
    async def stop(self) -> None:
        """Cancel background probe loops."""


class ConnectionManager:
    """Keeps one live endpoint, probes it and reconnects with backoff."""

    def __init__(
        self,
        config: Optional[ConnectionConfig] = None,
        event_bus: Optional[EventBus] = None,
        store: Optional[KeyValueStore] = None,
        scheduler: Optional[Scheduler] = None,
        transport_factory: Optional[TransportFactory] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config or ConnectionConfig()
        self._event_bus = event_bus
        self._store = store if store is not None else InMemoryKeyValueStore()
        self._scheduler = scheduler or AsyncioScheduler()
        self._transport_factory = transport_factory or partial(
            build_transport,
            timeout=self._config.request_timeout,
            max_retries=self._config.max_retries,
        )
        self._clock = clock
        self._state = ConnectionState.DISCONNECTED
        self._active: Optional[Tuple[Endpoint, Transport]] = None
        self._snapshot: Optional[NetworkSnapshot] = None
        self._auto_reconnect = bool(self._store.get(AUTO_RECONNECT_KEY, self._config.auto_reconnect))
        self._reconnect_attempt = 0
        self._reconnect_timer: Optional[TimerHandle] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._connect_lock = asyncio.Lock()
        self._monitors: List[Monitor] = []
        self._last_error: Optional[ConnectivityLost] = None
        self._closed = False

    # ------------------------------------------------------------------
    # Read-only views
    # ------------------------------------------------------------------
    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def scheduler(self) -> Scheduler:
        return self._scheduler

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def endpoint(self) -> Optional[Endpoint]:
        active = self._active
        return active[0] if active is not None else None

    @property
    def snapshot(self) -> Optional[NetworkSnapshot]:
        return self._snapshot

    @property
    def is_connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempt

    @property
    def last_error(self) -> Optional[ConnectivityLost]:
        return self._last_error

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    @auto_reconnect.setter
    def auto_reconnect(self, enabled: bool) -> None:
        self._auto_reconnect = bool(enabled)
        self._store.set(AUTO_RECONNECT_KEY, self._auto_reconnect)
        if not self._auto_reconnect and self._state is ConnectionState.RECONNECTING:
            LOGGER.info("Auto-reconnect disabled; abandoning pending reconnect")
            self._cancel_reconnect_timer()
            self._set_state(ConnectionState.DISCONNECTED)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def start(self) -> Optional[NetworkSnapshot]:
        """Connect to the persisted endpoint, or to the default selection on first run."""

        url = self._store.get(PROVIDER_KEY)
        if url:
            try:
                Endpoint.parse(url, secure=self._config.secure_only)
            except ValueError as exc:
                LOGGER.warning("Ignoring stored provider %r: %s", url, exc)
                url = None
        if not url:
            url = select_default_endpoint(self._config.providers, self._config.default_provider)
        try:
            return await self.set_endpoint(url)
        except ConnectivityLost as exc:
            LOGGER.warning("Initial connection to %s failed: %s", url, exc)
            return None

    async def set_endpoint(self, url: str, *, secure: Optional[bool] = None) -> NetworkSnapshot:
        """Switch to ``url`` and probe it.

        ``http``/``ws`` URLs are upgraded to ``https``/``wss`` unless
        ``secure=False``. Raises ``ConnectivityLost`` when the probe fails.
        """

        if self._closed:
            raise ConnectivityLost("connection manager is closed")
        endpoint = Endpoint.parse(url, secure=self._config.secure_only if secure is None else secure)
        self._cancel_reconnect_timer()
        self._cancel_reconnect_task()
        async with self._connect_lock:
            if self._state is ConnectionState.CONNECTED and self.endpoint == endpoint and self._snapshot is not None:
                LOGGER.debug("Already connected to %s", endpoint.url)
                return self._snapshot
            self._cancel_reconnect_timer()
            self._reconnect_attempt = 0
            LOGGER.info("Switching endpoint to %s (%s)", endpoint.url, endpoint.kind.value)
            return await self._connect(endpoint)

    async def reconnect(self) -> NetworkSnapshot:
        """Reconnect to the current endpoint with a fresh retry budget.

        A request arriving while a connect sequence is running waits for that
        sequence instead of starting a second one.
        """

        if self._closed:
            raise ConnectivityLost("connection manager is closed")
        if self._active is None:
            raise ConnectivityLost("no endpoint selected")
        if self._connect_lock.locked():
            LOGGER.debug("Connect sequence already running; coalescing reconnect request")
            async with self._connect_lock:
                pass
            if self._state is ConnectionState.CONNECTED and self._snapshot is not None:
                return self._snapshot
            raise self._last_error or ConnectivityLost("reconnect failed")
        self._cancel_reconnect_timer()
        async with self._connect_lock:
            active = self._active
            if active is None:
                raise ConnectivityLost("no endpoint selected")
            self._reconnect_attempt = 0
            LOGGER.info("Manual reconnect to %s", active[0].url)
            return await self._connect(active[0])

    async def reset_settings(self) -> Optional[NetworkSnapshot]:
        """Forget the persisted endpoint and auto-reconnect flag, then reconnect to the default."""

        self._store.set(PROVIDER_KEY, None)
        self._store.set(AUTO_RECONNECT_KEY, None)
        self._auto_reconnect = self._config.auto_reconnect
        url = select_default_endpoint(self._config.providers, self._config.default_provider)
        LOGGER.info("Connection settings reset; default endpoint is %s", url)
        try:
            return await self.set_endpoint(url)
        except ConnectivityLost as exc:
            LOGGER.warning("Connection to default endpoint %s failed: %s", url, exc)
            return None

    async def call(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        """Issue an RPC call against the active endpoint."""

        active = self._active
        if self._closed or active is None:
            raise ConnectivityLost("no active endpoint")
        return await active[1].call(method, params)

    async def refresh_snapshot(self) -> Optional[NetworkSnapshot]:
        """Re-read the full snapshot while connected; errors propagate to the caller."""

        active = self._active
        if self._state is not ConnectionState.CONNECTED or active is None:
            return None
        snapshot = await read_snapshot(active[1].call, now=self._clock)
        if self._active is not active or self._state is not ConnectionState.CONNECTED:
            LOGGER.debug("Endpoint changed during metadata refresh; dropping snapshot")
            return self._snapshot
        self._publish_snapshot(snapshot)
        return snapshot

    def attach_monitor(self, monitor: Monitor) -> None:
        if monitor not in self._monitors:
            self._monitors.append(monitor)

    async def join(self) -> None:
        """Wait for an in-flight reconnect cycle, if any."""

        task = self._reconnect_task
        if task is not None and task is not asyncio.current_task():
            await asyncio.gather(task, return_exceptions=True)

    async def cleanup(self) -> None:
        """Tear everything down; safe to call more than once."""

        if self._closed:
            return
        self._closed = True
        self._cancel_reconnect_timer()
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        monitors, self._monitors = self._monitors, []
        for monitor in monitors:
            await monitor.stop()
        active, self._active = self._active, None
        if active is not None:
            await self._close_transport(active[1])
        self._set_state(ConnectionState.DISCONNECTED)
        LOGGER.info("Connection manager closed")

    async def __aenter__(self) -> "ConnectionManager":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.cleanup()

    # ------------------------------------------------------------------
    # Probe outcomes reported by the monitor
    # ------------------------------------------------------------------
    def report_connectivity_lost(self, exc: Exception) -> Optional[ConnectivityLost]:
        """Enter the reconnect path after a failed health probe while connected."""

        if self._closed or self._state is not ConnectionState.CONNECTED:
            return None
        if self._connect_lock.locked():
            return None
        return self._handle_probe_failure(exc)

    def report_probe_success(self, height: int) -> None:
        """Record a successful health probe and republish the snapshot."""

        if self._closed or self._active is None or self._connect_lock.locked():
            return
        if self._state is ConnectionState.CONNECTING:
            return
        if self._state is not ConnectionState.CONNECTED:
            LOGGER.info("Connectivity to %s restored", self._active[0].url)
            self._cancel_reconnect_timer()
            self._reconnect_attempt = 0
            self._last_error = None
            if self._snapshot is not None:
                self._publish_snapshot(self._snapshot.with_height(height, self._clock()))
            self._set_state(ConnectionState.CONNECTED)
            return
        if self._snapshot is not None and self._snapshot.height != height:
            self._publish_snapshot(self._snapshot.with_height(height, self._clock()))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    async def _connect(self, endpoint: Endpoint) -> NetworkSnapshot:
        # Caller holds _connect_lock.
        transport = self._transport_factory(endpoint)
        previous, self._active = self._active, (endpoint, transport)
        self._set_state(ConnectionState.CONNECTING)
        if previous is not None and previous[1] is not transport:
            await self._close_transport(previous[1])
        try:
            snapshot = await read_snapshot(transport.call, now=self._clock)
        except (TransportError, RemoteError) as exc:
            raise self._handle_probe_failure(exc) from exc
        except Exception as exc:
            LOGGER.exception("Unexpected error probing %s", endpoint.url)
            raise self._handle_probe_failure(exc) from exc
        if self._closed:
            raise ConnectivityLost("connection manager is closed")
        self._reconnect_attempt = 0
        self._last_error = None
        self._store.set(PROVIDER_KEY, endpoint.url)
        self._publish_snapshot(snapshot)
        self._set_state(ConnectionState.CONNECTED)
        LOGGER.info("Connected to %s (%s, block %s)", endpoint.url, snapshot.display_name, snapshot.height)
        return snapshot

    def _handle_probe_failure(self, exc: Exception) -> ConnectivityLost:
        url = self.endpoint.url if self.endpoint is not None else None
        if self._closed:
            return ConnectivityLost("connection manager is closed")

        if not self._auto_reconnect:
            error = ConnectivityLost(f"Probe against {url} failed: {exc}")
            LOGGER.warning("%s; auto-reconnect is off", error)
            self._record_fault(error, "probe", Severity.WARNING)
            self._set_state(ConnectionState.DISCONNECTED)
            return error

        limit = self._config.max_reconnect_attempts
        if self._reconnect_attempt >= limit:
            error = ReconnectExhausted(f"Gave up on {url} after {limit} reconnect attempts: {exc}")
            LOGGER.error("%s", error)
            self._record_fault(error, "reconnect", Severity.CRITICAL)
            self._set_state(ConnectionState.DISCONNECTED)
            return error

        delay = backoff_delay(self._reconnect_attempt, self._config.reconnect_base, self._config.reconnect_cap)
        self._reconnect_attempt += 1
        error = ConnectivityLost(f"Probe against {url} failed: {exc}")
        LOGGER.warning("%s; reconnect %s/%s in %.1fs", error, self._reconnect_attempt, limit, delay)
        self._record_fault(error, "probe", Severity.WARNING)
        self._set_state(ConnectionState.RECONNECTING)
        self._cancel_reconnect_timer()
        self._reconnect_timer = self._scheduler.call_later(delay, self._on_reconnect_timer)
        return error

    def _on_reconnect_timer(self) -> None:
        self._reconnect_timer = None
        if self._closed or self._state is not ConnectionState.RECONNECTING:
            return
        self._reconnect_task = asyncio.ensure_future(self._reconnect_cycle())

    async def _reconnect_cycle(self) -> None:
        async with self._connect_lock:
            active = self._active
            if self._closed or self._state is not ConnectionState.RECONNECTING or active is None:
                return
            LOGGER.info(
                "Reconnect attempt %s/%s to %s",
                self._reconnect_attempt,
                self._config.max_reconnect_attempts,
                active[0].url,
            )
            try:
                await self._connect(active[0])
            except ConnectivityLost as exc:
                LOGGER.debug("Reconnect to %s failed: %s", active[0].url, exc)

    def _cancel_reconnect_timer(self) -> None:
        timer, self._reconnect_timer = self._reconnect_timer, None
        if timer is not None:
            timer.cancel()

    def _cancel_reconnect_task(self) -> None:
        task = self._reconnect_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _close_transport(self, transport: Transport) -> None:
        try:
            await transport.aclose()
        except Exception as exc:
            LOGGER.warning("Closing transport for %s failed: %s", transport.url, exc)

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state
        if previous is state:
            return
        self._state = state
        endpoint = self.endpoint
        LOGGER.debug("Connection state %s -> %s", previous.value, state.value)
        if self._event_bus is None:
            return
        self._event_bus.emit(
            ConnectionStateEvent(
                event_type=EventType.CONNECTION_STATE,
                severity=Severity.INFO,
                source="connection",
                message=f"{previous.value} -> {state.value}",
                previous=previous.value,
                current=state.value,
                endpoint=endpoint.url if endpoint is not None else None,
            )
        )

    def _publish_snapshot(self, snapshot: NetworkSnapshot) -> None:
        self._snapshot = snapshot
        if self._event_bus is None:
            return
        self._event_bus.emit(
            NetworkSnapshotEvent(
                event_type=EventType.NETWORK_SNAPSHOT,
                severity=Severity.INFO,
                source="connection",
                message=f"{snapshot.display_name} at block {snapshot.height}",
                detail=event_detail(chain_id=snapshot.chain_id, node_version=snapshot.node_version),
                snapshot=snapshot,
            )
        )

    def _record_fault(self, error: ConnectivityLost, category: str, severity: Severity) -> None:
        self._last_error = error
        if self._event_bus is None:
            return
        endpoint = self.endpoint
        self._event_bus.emit(
            SystemFaultEvent(
                event_type=EventType.SYSTEM_FAULT,
                severity=severity,
                source="connection",
                message=str(error),
                detail=event_detail(attempt=self._reconnect_attempt, error=type(error).__name__),
                component="connection",
                endpoint=endpoint.url if endpoint is not None else None,
                category=category,
            )
        )


__all__ = ["ConnectionManager"]
