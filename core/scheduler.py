"""Timer abstraction so reconnect backoff and probe loops can run on a fake clock in tests."""

from __future__ import annotations

import asyncio
from typing import Callable, Protocol


class TimerHandle(Protocol):
    def cancel(self) -> None:
        """Prevent the callback from running if it has not fired yet."""


class Scheduler(Protocol):
    """Schedule-after / cancel / sleep primitives."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        """Run ``callback`` once after ``delay`` seconds."""

    async def sleep(self, delay: float) -> None:
        """Suspend the current task for ``delay`` seconds."""


class AsyncioScheduler:
    """Scheduler backed by the running asyncio loop."""

    def call_later(self, delay: float, callback: Callable[[], None]) -> TimerHandle:
        return asyncio.get_running_loop().call_later(delay, callback)

    async def sleep(self, delay: float) -> None:
        await asyncio.sleep(delay)


__all__ = ["TimerHandle", "Scheduler", "AsyncioScheduler"]
