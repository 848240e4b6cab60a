"""Fixed-interval background polling on the running event loop."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from inquiry_sync.metrics import record_background_failure

logger = logging.getLogger(__name__)


class Poller:
    """
    Calls `fn` every `interval` seconds until stopped.

    Ticks are scheduled on a fixed cadence and do not wait for the previous
    call to settle, so one call that never resolves stalls only itself.
    Anything `fn` raises is logged and dropped here: a failed poll never
    propagates past the tick.
    """

    def __init__(self, name: str, fn: Callable[[], Awaitable[object]], interval: float):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.name = name
        self.interval = interval
        self._fn = fn
        self._loop_task: Optional[asyncio.Task] = None
        self._ticks: set[asyncio.Task] = set()

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    def start(self, run_immediately: bool = True) -> None:
        if self.running:
            return
        self._loop_task = asyncio.get_running_loop().create_task(
            self._run(run_immediately), name=f"poller:{self.name}"
        )
        logger.info(f"Poller {self.name} started (every {self.interval}s)")

    async def stop(self) -> None:
        """Cancel the timer and any tick still in flight."""
        tasks = list(self._ticks)
        if self._loop_task is not None:
            tasks.append(self._loop_task)
            self._loop_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._ticks.clear()
        logger.info(f"Poller {self.name} stopped")

    async def _run(self, run_immediately: bool) -> None:
        if not run_immediately:
            await asyncio.sleep(self.interval)
        while True:
            tick = asyncio.get_running_loop().create_task(self._tick())
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)
            await asyncio.sleep(self.interval)

    async def _tick(self) -> None:
        try:
            await self._fn()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning(f"Poller {self.name} tick failed", exc_info=True)
            record_background_failure("poll")
