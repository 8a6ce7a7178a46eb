"""Tests for the single-flight job poller."""

from __future__ import annotations

import asyncio

import pytest

from keeper.automation import JobPoller


class SlowExecutor:
    def __init__(self, duration: float = 0.05, fail_first: bool = False) -> None:
        self.duration = duration
        self.fail_first = fail_first
        self.started = 0
        self.completed = 0
        self.running = 0
        self.peak = 0

    async def run_tick(self) -> list:
        self.started += 1
        self.running += 1
        self.peak = max(self.peak, self.running)
        try:
            await asyncio.sleep(self.duration)
            if self.fail_first and self.started == 1:
                raise RuntimeError("store unavailable")
            self.completed += 1
            return []
        finally:
            self.running -= 1


@pytest.mark.asyncio
async def test_first_tick_fires_immediately() -> None:
    executor = SlowExecutor(duration=0)
    poller = JobPoller(executor)

    poller.start(interval_ms=60_000)
    await asyncio.sleep(0.01)
    await poller.stop()

    assert executor.started == 1


@pytest.mark.asyncio
async def test_ticks_never_overlap() -> None:
    executor = SlowExecutor(duration=0.05)
    poller = JobPoller(executor)

    poller.start(interval_ms=10)
    await asyncio.sleep(0.2)
    await poller.stop()
    await poller.wait_for_idle()

    assert executor.peak == 1
    assert executor.started >= 2
    assert poller.skipped_ticks > 0


@pytest.mark.asyncio
async def test_stop_lets_in_flight_tick_finish() -> None:
    executor = SlowExecutor(duration=0.05)
    poller = JobPoller(executor)

    poller.start(interval_ms=60_000)
    await asyncio.sleep(0.01)
    await poller.stop()

    assert poller.is_running() is False
    assert poller.tick_in_flight() is True

    await poller.wait_for_idle()
    assert executor.completed == 1
    assert poller.tick_in_flight() is False


@pytest.mark.asyncio
async def test_tick_errors_do_not_kill_timer() -> None:
    executor = SlowExecutor(duration=0, fail_first=True)
    poller = JobPoller(executor)

    poller.start(interval_ms=10)
    await asyncio.sleep(0.1)
    await poller.stop()
    await poller.wait_for_idle()

    assert executor.started >= 2
    assert executor.completed >= 1


@pytest.mark.asyncio
async def test_pre_tick_hook_runs_before_each_tick() -> None:
    calls: list[str] = []

    class RecordingExecutor:
        async def run_tick(self) -> list:
            calls.append("tick")
            return []

    async def hook() -> None:
        calls.append("hook")

    poller = JobPoller(RecordingExecutor(), pre_tick=hook)
    poller.start(interval_ms=10)
    await asyncio.sleep(0.05)
    await poller.stop()
    await poller.wait_for_idle()

    assert calls[:4] == ["hook", "tick", "hook", "tick"]


@pytest.mark.asyncio
async def test_failed_pre_tick_hook_skips_tick() -> None:
    calls: list[str] = []

    class RecordingExecutor:
        async def run_tick(self) -> list:
            calls.append("tick")
            return []

    async def hook() -> None:
        calls.append("hook")
        if len(calls) == 1:
            raise ConnectionError("store unreachable: cannot read pause flag")

    poller = JobPoller(RecordingExecutor(), pre_tick=hook)
    poller.start(interval_ms=10)
    await asyncio.sleep(0.05)
    await poller.stop()
    await poller.wait_for_idle()

    # The failed sync skips its tick; the timer keeps going.
    assert calls[:3] == ["hook", "hook", "tick"]


@pytest.mark.asyncio
async def test_start_rejects_non_positive_interval() -> None:
    poller = JobPoller(SlowExecutor())
    with pytest.raises(ValueError):
        poller.start(interval_ms=0)


@pytest.mark.asyncio
async def test_start_twice_is_noop() -> None:
    executor = SlowExecutor(duration=0)
    poller = JobPoller(executor)

    poller.start(interval_ms=60_000)
    poller.start(interval_ms=10)
    await asyncio.sleep(0.05)
    await poller.stop()

    assert poller.interval_ms == 60_000
    assert executor.started == 1
