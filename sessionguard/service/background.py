"""Cancellable periodic tasks for background sweeps.

Each sweep (revocation cleanup, attempt cleanup, session expiry) runs in its
own task started by ``start()`` and cancelled by ``stop()``. A failing sweep is
logged and retried on the next interval; it never kills the loop.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from sessionguard.logging import get_logger

logger = get_logger(__name__)


class PeriodicTask:
    """Run ``callback`` every ``interval`` seconds until stopped."""

    def __init__(
        self,
        name: str,
        callback: Callable[[], Awaitable[object]],
        interval: float,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be greater than zero")
        self.name = name
        self.callback = callback
        self.interval = interval
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self._running:
            logger.warning("periodic_task_already_running", task=self.name)
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        logger.info("periodic_task_started", task=self.name, interval=self.interval)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("periodic_task_stopped", task=self.name)

    async def run_once(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.error(
                "periodic_task_failed",
                task=self.name,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _run_loop(self) -> None:
        while self._running:
            await asyncio.sleep(self.interval)
            await self.run_once()


__all__ = ["PeriodicTask"]
