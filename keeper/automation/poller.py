"""Job poller - drives the executor on a fixed cadence.

Ticks are single-flight: when the timer fires while the previous tick is
still running, the firing is skipped rather than queued. Stopping the poller
cancels the timer only; an in-flight tick (and any transaction it submitted)
is allowed to finish. A tick whose pre-tick hook raises is skipped.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol


logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_MS = 15_000

PreTickHook = Callable[[], Awaitable[None]]


class TickRunner(Protocol):
    async def run_tick(self) -> object:
        ...


class JobPoller:
    def __init__(self, executor: TickRunner, *, pre_tick: Optional[PreTickHook] = None) -> None:
        self.executor = executor
        self.pre_tick = pre_tick
        self.interval_ms = DEFAULT_POLL_INTERVAL_MS
        self.skipped_ticks = 0
        self._timer: Optional[asyncio.Task[None]] = None
        self._in_flight: Optional[asyncio.Task[None]] = None

    def start(self, interval_ms: int = DEFAULT_POLL_INTERVAL_MS) -> None:
        """Start the timer; the first tick fires immediately.

        Must be called from within a running event loop.
        """
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        if self.is_running():
            logger.warning("Job poller already running")
            return

        self.interval_ms = interval_ms
        logger.info(f"Starting job poller with interval {interval_ms}ms")
        self._timer = asyncio.get_running_loop().create_task(self._timer_loop())

    async def stop(self) -> None:
        """Cancel the timer. Does not abort an in-flight tick."""
        timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
            try:
                await timer
            except asyncio.CancelledError:
                pass
        if self.tick_in_flight():
            logger.info("Job poller stopped; in-flight tick will run to completion")
        else:
            logger.info("Job poller stopped")

    async def wait_for_idle(self) -> None:
        """Wait for the in-flight tick, if any, to finish."""
        task = self._in_flight
        if task is not None and not task.done():
            await asyncio.shield(task)

    def is_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def tick_in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    async def _timer_loop(self) -> None:
        while True:
            self._fire()
            await asyncio.sleep(self.interval_ms / 1000)

    def _fire(self) -> None:
        if self.tick_in_flight():
            self.skipped_ticks += 1
            logger.warning("Previous tick still running - skipping this firing")
            return
        self._in_flight = asyncio.get_running_loop().create_task(self._run_tick())

    async def _run_tick(self) -> None:
        if self.pre_tick is not None:
            try:
                await self.pre_tick()
            except Exception as e:
                # Pause state may be stale; never tick on it.
                logger.warning(f"Pre-tick hook failed, skipping tick: {e}")
                return

        try:
            await self.executor.run_tick()
        except Exception as e:
            logger.exception(f"Unhandled error in tick: {e}")
