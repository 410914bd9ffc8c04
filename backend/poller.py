"""
Sweep Poller - runs the cron passes on a timer inside the API process.

Use this when no external scheduler calls the /api/cron endpoints.
Runs as background tasks inside the FastAPI lifespan.

    queue:
      poller_enabled: true
      message_poll_interval: 120     # seconds between queue passes
      tracking_poll_interval: 300    # seconds between tracking runs
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Awaitable, Callable, Optional

logger = structlog.get_logger()


class SweepPoller:
    """
    Calls each registered pass every `interval` seconds until stopped.
    A failing pass is logged and retried on the next tick.
    """

    def __init__(self):
        self._passes: list[tuple[str, Callable[[], Awaitable[object]], float]] = []
        self._tasks: list[asyncio.Task] = []
        self._running = False
        self.runs: dict[str, int] = {}

    def add(self, name: str, fn: Callable[[], Awaitable[object]], interval_s: float) -> None:
        self._passes.append((name, fn, interval_s))
        self.runs.setdefault(name, 0)

    async def start(self) -> None:
        """Start one polling loop per registered pass."""
        self._running = True
        for name, fn, interval_s in self._passes:
            self._tasks.append(asyncio.create_task(self._loop(name, fn, interval_s), name=f"poller:{name}"))
        logger.info("sweep_poller_started", passes=[p[0] for p in self._passes])

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("sweep_poller_stopped")

    async def _loop(self, name: str, fn: Callable[[], Awaitable[object]], interval_s: float) -> None:
        while self._running:
            await self.run_once(name, fn)
            await asyncio.sleep(interval_s)

    async def run_once(self, name: str, fn: Callable[[], Awaitable[object]]) -> Optional[object]:
        try:
            result = await fn()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("poll_cycle_error", sweep=name, error=str(e))
            return None
        self.runs[name] = self.runs.get(name, 0) + 1
        logger.debug("poll_cycle_complete", sweep=name, result=result)
        return result
