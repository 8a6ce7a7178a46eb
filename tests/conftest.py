"""Shared test fixtures for pytest.

Provides job factories, a controllable clock and a scripted price source used
across the automation tests.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from keeper.automation.pricing import PriceSourceError
from keeper.types import DCAParams, Job, LimitOrderParams

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

OWNER = "0xAbCdEf0000000000000000000000000000000001"
TOKEN_A = "0x1111111111111111111111111111111111111111"
TOKEN_B = "0x2222222222222222222222222222222222222222"
ONE = 10**18
ON_CHAIN_ID = "0x" + "ab" * 32


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class ScriptedPriceSource:
    """Price source returning fixed prices per pair, or raising on demand."""

    def __init__(self, prices: dict[tuple[str, str], int] | None = None) -> None:
        self.prices = dict(prices or {})
        self.error: Exception | None = None
        self.calls: list[tuple[str, str]] = []

    async def get_price(self, token_in: str, token_out: str) -> int:
        self.calls.append((token_in, token_out))
        if self.error is not None:
            raise self.error
        return self.prices.get((token_in, token_out), 0)

    def fail(self, message: str = "no liquidity") -> None:
        self.error = PriceSourceError(message)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def price_source() -> ScriptedPriceSource:
    return ScriptedPriceSource({(TOKEN_A, TOKEN_B): 2 * ONE})


@pytest.fixture
def make_limit_order_job() -> Callable[..., Job]:
    """Factory for active limit order jobs (sell 1 A when price >= 1.5 B)."""

    def factory(job_id: str = "job-limit-1", **overrides: Any) -> Job:
        params = LimitOrderParams(
            token_in=TOKEN_A,
            token_out=TOKEN_B,
            amount_in=ONE,
            min_amount_out=ONE,
            target_price=ONE * 3 // 2,
            direction="gte",
        )
        params = replace(params, **overrides.pop("params", {}))
        job = Job(
            id=job_id,
            owner=OWNER,
            type="limit_order",
            status="active",
            params=params,
            created_at=NOW - timedelta(hours=1),
            updated_at=NOW - timedelta(hours=1),
            on_chain_job_id=ON_CHAIN_ID,
        )
        return replace(job, **overrides)

    return factory


@pytest.fixture
def make_dca_job() -> Callable[..., Job]:
    """Factory for active DCA jobs due now (3 swaps, hourly)."""

    def factory(job_id: str = "job-dca-1", **overrides: Any) -> Job:
        params = DCAParams(
            token_in=TOKEN_A,
            token_out=TOKEN_B,
            amount_per_swap=ONE,
            interval_seconds=3600,
            total_swaps=3,
            swaps_completed=0,
            next_execution=NOW,
        )
        params = replace(params, **overrides.pop("params", {}))
        job = Job(
            id=job_id,
            owner=OWNER,
            type="dca",
            status="active",
            params=params,
            created_at=NOW - timedelta(hours=1),
            updated_at=NOW - timedelta(hours=1),
            on_chain_job_id=ON_CHAIN_ID,
        )
        return replace(job, **overrides)

    return factory
