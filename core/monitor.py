"""Background probe loops layered on top of the connection manager."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional

from core.connection import ConnectionManager
from core.errors import ChainSentryError
from core.health import ConnectionState
from core.network import NetworkSnapshot, parse_quantity
from core.scheduler import Scheduler

LOGGER = logging.getLogger(__name__)


class NetworkMonitor:
    """Runs the health probe and the metadata refresh on separate periods.

    Only the health probe changes the connection state: a failure while
    connected hands the error to the manager's reconnect path, a failure
    while not connected is ignored, and a success while not connected marks
    the link as connected again. Metadata refresh failures are logged only.
    """

    def __init__(
        self,
        manager: ConnectionManager,
        health_interval: Optional[float] = None,
        metadata_interval: Optional[float] = None,
        scheduler: Optional[Scheduler] = None,
    ) -> None:
        self._manager = manager
        self._health_interval = health_interval or manager.config.health_interval
        self._metadata_interval = metadata_interval or manager.config.metadata_interval
        self._scheduler = scheduler or manager.scheduler
        self._tasks: List[asyncio.Task] = []
        manager.attach_monitor(self)

    @property
    def snapshot(self) -> Optional[NetworkSnapshot]:
        return self._manager.snapshot

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._tasks = [
            asyncio.create_task(
                self._periodic("health", self._health_interval, self.check_health), name="health_probe"
            ),
            asyncio.create_task(
                self._periodic("metadata", self._metadata_interval, self.refresh_metadata),
                name="metadata_refresh",
            ),
        ]
        LOGGER.info(
            "Network monitor started (health every %ss, metadata every %ss)",
            self._health_interval,
            self._metadata_interval,
        )

    async def stop(self) -> None:
        tasks, self._tasks = self._tasks, []
        current = asyncio.current_task()
        pending = [task for task in tasks if task is not current]
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)

    async def _periodic(self, name: str, interval: float, coro: Callable[[], Awaitable[object]]) -> None:
        while True:
            await self._scheduler.sleep(interval)
            try:
                await coro()
            except Exception as exc:
                LOGGER.exception("Task %s failed: %s", name, exc)

    async def check_health(self) -> bool:
        """Probe the current block height once; return whether it succeeded."""

        manager = self._manager
        try:
            height = parse_quantity(await manager.call("eth_blockNumber"))
        except ChainSentryError as exc:
            if manager.state is ConnectionState.CONNECTED:
                LOGGER.warning("Health probe failed: %s", exc)
                manager.report_connectivity_lost(exc)
            else:
                LOGGER.debug("Health probe failed while %s: %s", manager.state.value, exc)
            return False
        manager.report_probe_success(height)
        if manager.snapshot is None and manager.state is ConnectionState.CONNECTED:
            await self.refresh_metadata()
        return True

    async def refresh_metadata(self) -> Optional[NetworkSnapshot]:
        try:
            return await self._manager.refresh_snapshot()
        except ChainSentryError as exc:
            LOGGER.warning("Metadata refresh failed: %s", exc)
            return None


__all__ = ["NetworkMonitor"]
