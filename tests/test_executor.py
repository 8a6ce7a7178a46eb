"""Tests for the job executor."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field, replace
from datetime import timedelta
from decimal import Decimal

import pytest

from conftest import NOW, TOKEN_A
from keeper.automation import (
    AuditLogger,
    Executor,
    ExecutorConfig,
    PriceEvaluator,
    RetryScheduler,
    SafetyGuard,
)
from keeper.execution import PaperKeeperClient
from keeper.storage import InMemoryJobStore
from keeper.types import ExecutionReceipt


@dataclass
class Harness:
    executor: Executor
    store: InMemoryJobStore
    guard: SafetyGuard
    evaluator: PriceEvaluator
    retry: RetryScheduler
    keeper: PaperKeeperClient
    audit: AuditLogger
    outcomes: list = field(default_factory=list)

    async def tick(self) -> dict[str, str]:
        outcomes = await self.executor.run_tick()
        self.outcomes.extend(outcomes)
        return {o.job_id: o.outcome for o in outcomes}


@pytest.fixture
def harness(clock, price_source) -> Harness:
    store = InMemoryJobStore(clock=clock)
    guard = SafetyGuard(clock=clock)
    evaluator = PriceEvaluator(price_source, clock=clock)
    retry = RetryScheduler(base_delay_ms=1000, clock=clock)
    keeper = PaperKeeperClient()
    audit = AuditLogger()
    executor = Executor(
        store=store,
        safety_guard=guard,
        price_evaluator=evaluator,
        retry_scheduler=retry,
        keeper_client=keeper,
        audit_sink=audit,
        clock=clock,
    )
    return Harness(executor, store, guard, evaluator, retry, keeper, audit)


class TestLimitOrders:
    @pytest.mark.asyncio
    async def test_executes_when_condition_met(self, harness, make_limit_order_job) -> None:
        harness.store.add_job(make_limit_order_job())

        assert await harness.tick() == {"job-limit-1": "executed"}

        job = harness.store.get_job("job-limit-1")
        assert job.status == "executed"
        assert job.updated_at == NOW
        assert len(harness.keeper.submitted) == 1
        assert harness.store.executions[0].tx_hash == harness.outcomes[0].tx_hash
        assert harness.audit.get_events(event_type="job_executed", job_id="job-limit-1")

    @pytest.mark.asyncio
    async def test_waits_when_condition_not_met(self, harness, make_limit_order_job) -> None:
        job = make_limit_order_job(params={"target_price": 3 * 10**18})
        harness.store.add_job(job)

        assert await harness.tick() == {"job-limit-1": "waiting"}
        assert harness.store.get_job("job-limit-1") == job
        assert harness.keeper.submitted == []

    @pytest.mark.asyncio
    async def test_pending_job_is_activated_first(self, harness, make_limit_order_job) -> None:
        harness.store.add_job(make_limit_order_job(status="pending"))

        assert await harness.tick() == {"job-limit-1": "executed"}
        assert harness.audit.get_events(event_type="job_activated")
        assert harness.store.get_job("job-limit-1").status == "executed"

    @pytest.mark.asyncio
    async def test_unregistered_job_is_skipped(self, harness, make_limit_order_job) -> None:
        harness.store.add_job(make_limit_order_job(on_chain_job_id=None))

        assert await harness.tick() == {"job-limit-1": "unregistered"}
        assert harness.store.get_job("job-limit-1").status == "active"
        assert harness.keeper.submitted == []


class TestSafety:
    @pytest.mark.asyncio
    async def test_expired_job_fails_without_execution(self, harness, make_limit_order_job) -> None:
        harness.store.add_job(make_limit_order_job(expires_at=NOW - timedelta(minutes=1)))

        assert await harness.tick() == {"job-limit-1": "failed"}

        job = harness.store.get_job("job-limit-1")
        assert job.status == "failed"
        assert "expired" in job.last_error
        assert harness.keeper.submitted == []
        assert harness.audit.get_events(event_type="safety_violation")

    @pytest.mark.asyncio
    async def test_cancelled_job_is_never_picked_up(self, harness, make_limit_order_job) -> None:
        harness.store.add_job(make_limit_order_job(status="cancelled"))

        assert await harness.tick() == {}
        assert harness.keeper.submitted == []

    @pytest.mark.asyncio
    async def test_global_pause_blocks_without_mutation(self, harness, make_limit_order_job) -> None:
        job = make_limit_order_job()
        harness.store.add_job(job)
        harness.guard.pause_all()

        assert await harness.tick() == {"job-limit-1": "blocked"}
        assert harness.store.get_job("job-limit-1") == job
        assert harness.keeper.submitted == []

        harness.guard.resume_all()
        assert await harness.tick() == {"job-limit-1": "executed"}

    @pytest.mark.asyncio
    async def test_global_pause_leaves_pending_job_untouched(self, harness, make_limit_order_job) -> None:
        job = make_limit_order_job(status="pending")
        harness.store.add_job(job)
        harness.guard.pause_all()

        assert await harness.tick() == {"job-limit-1": "blocked"}
        assert harness.store.get_job("job-limit-1") == job
        assert harness.audit.get_events(event_type="job_activated") == []
        assert harness.guard.get_violations()[0].rule == "global_pause"

    @pytest.mark.asyncio
    async def test_global_pause_checked_before_any_rpc(
        self, harness, price_source, make_limit_order_job
    ) -> None:
        calls = []

        async def decimals(token: str) -> int:
            calls.append(token)
            raise ConnectionError("rpc down")

        harness.executor.price_evaluator = PriceEvaluator(
            price_source, {TOKEN_A: Decimal("1")}, decimals_resolver=decimals
        )
        harness.store.add_job(make_limit_order_job())
        harness.guard.pause_all()

        assert await harness.tick() == {"job-limit-1": "blocked"}
        assert [v.rule for v in harness.guard.get_violations()] == ["global_pause"]
        assert calls == []
        assert price_source.calls == []

    @pytest.mark.asyncio
    async def test_oversized_swap_is_blocked(self, harness, make_limit_order_job) -> None:
        harness.guard.update_config(max_swap_usd=Decimal("100"))
        harness.evaluator.update_token_price(TOKEN_A, "150")
        harness.store.add_job(make_limit_order_job())

        assert await harness.tick() == {"job-limit-1": "blocked"}
        assert harness.store.get_job("job-limit-1").status == "active"
        assert harness.guard.get_violations()[0].rule == "max_swap_usd"


class TestRetries:
    @pytest.mark.asyncio
    async def test_keeper_failure_retries_then_fails(self, harness, clock, make_limit_order_job) -> None:
        harness.keeper.fail_with = "execution reverted"
        harness.store.add_job(make_limit_order_job(max_retries=2))

        assert await harness.tick() == {"job-limit-1": "retry_scheduled"}
        job = harness.store.get_job("job-limit-1")
        assert job.retries == 1
        assert job.last_error == "execution reverted"
        assert harness.retry.contains("job-limit-1")

        # Still backing off: not evaluated again.
        assert await harness.tick() == {}

        clock.advance(1)
        assert await harness.tick() == {"job-limit-1": "failed"}

        job = harness.store.get_job("job-limit-1")
        assert job.status == "failed"
        assert job.retries == 2
        assert job.last_error == "execution reverted"
        assert harness.retry.size() == 0
        assert len(harness.audit.get_events(event_type="keeper_error")) == 2

    @pytest.mark.asyncio
    async def test_retry_counter_never_exceeds_budget(self, harness, make_limit_order_job) -> None:
        harness.keeper.fail_with = "boom"
        harness.store.add_job(make_limit_order_job(max_retries=1))

        assert await harness.tick() == {"job-limit-1": "failed"}
        assert harness.store.get_job("job-limit-1").retries == 1

    @pytest.mark.asyncio
    async def test_price_source_failure_is_retryable(
        self, harness, price_source, make_limit_order_job
    ) -> None:
        price_source.fail("no Swappi route")
        harness.store.add_job(make_limit_order_job())

        assert await harness.tick() == {"job-limit-1": "retry_scheduled"}
        assert harness.store.get_job("job-limit-1").last_error == "no Swappi route"
        assert harness.keeper.submitted == []

    @pytest.mark.asyncio
    async def test_decimals_lookup_failure_is_retryable(
        self, harness, price_source, make_limit_order_job
    ) -> None:
        async def decimals(token: str) -> int:
            raise ConnectionError("rpc down")

        harness.executor.price_evaluator = PriceEvaluator(
            price_source, {TOKEN_A: Decimal("1")}, decimals_resolver=decimals
        )
        harness.store.add_job(make_limit_order_job())

        assert await harness.tick() == {"job-limit-1": "retry_scheduled"}
        job = harness.store.get_job("job-limit-1")
        assert job.status == "active"
        assert job.retries == 1
        assert job.last_error == "rpc down"
        assert harness.retry.contains("job-limit-1")
        assert harness.keeper.submitted == []
    @pytest.mark.asyncio
    async def test_recovers_after_transient_failure(self, harness, clock, make_limit_order_job) -> None:
        harness.keeper.fail_with = "nonce too low"
        harness.store.add_job(make_limit_order_job())
        await harness.tick()

        harness.keeper.fail_with = None
        clock.advance(1)
        assert await harness.tick() == {"job-limit-1": "executed"}
        assert harness.store.get_job("job-limit-1").last_error is None
        assert harness.retry.size() == 0

    @pytest.mark.asyncio
    async def test_retry_dropped_when_job_cancelled(self, harness, clock, make_limit_order_job) -> None:
        harness.keeper.fail_with = "boom"
        harness.store.add_job(make_limit_order_job())
        await harness.tick()

        job = harness.store.get_job("job-limit-1")
        harness.store.add_job(replace(job, status="cancelled"))
        harness.keeper.fail_with = None
        clock.advance(1)

        assert await harness.tick() == {}
        assert harness.retry.size() == 0
        assert harness.keeper.submitted == []


class TestDCA:
    @pytest.mark.asyncio
    async def test_dca_tick_advances_schedule(self, harness, clock, make_dca_job) -> None:
        harness.store.add_job(make_dca_job())

        assert await harness.tick() == {"job-dca-1": "executed"}

        job = harness.store.get_job("job-dca-1")
        assert job.status == "active"
        assert job.params.swaps_completed == 1
        assert job.params.next_execution == NOW + timedelta(hours=1)

        # Not due again until the interval elapses.
        assert await harness.tick() == {"job-dca-1": "blocked"}

        clock.advance(3600)
        assert await harness.tick() == {"job-dca-1": "executed"}
        assert harness.store.get_job("job-dca-1").params.swaps_completed == 2

    @pytest.mark.asyncio
    async def test_final_dca_swap_completes_job(self, harness, make_dca_job) -> None:
        harness.store.add_job(
            make_dca_job(params={"swaps_completed": 2, "next_execution": NOW - timedelta(seconds=60)})
        )

        assert await harness.tick() == {"job-dca-1": "executed"}
        job = harness.store.get_job("job-dca-1")
        assert job.status == "executed"
        assert job.params.swaps_completed == 3


class TestDryRun:
    @pytest.mark.asyncio
    async def test_dry_run_has_no_side_effects(self, harness, make_limit_order_job, make_dca_job) -> None:
        harness.executor.config = ExecutorConfig(dry_run=True)
        limit = make_limit_order_job()
        dca = make_dca_job()
        harness.store.add_job(limit)
        harness.store.add_job(dca)

        assert await harness.tick() == {"job-limit-1": "dry_run", "job-dca-1": "dry_run"}
        assert harness.keeper.submitted == []
        assert harness.store.get_job("job-limit-1") == limit
        assert harness.store.get_job("job-dca-1") == dca
        assert harness.store.executions == []
        assert len(harness.audit.get_events(event_type="dry_run")) == 2


class TestIsolation:
    @pytest.mark.asyncio
    async def test_unexpected_error_does_not_abort_tick(self, harness, make_limit_order_job) -> None:
        original = harness.store.mark_executed

        async def flaky_mark_executed(job_id, tx_hash, amount_out=None):
            if job_id == "bad":
                raise RuntimeError("database is locked")
            await original(job_id, tx_hash, amount_out)

        harness.store.mark_executed = flaky_mark_executed
        harness.store.add_job(make_limit_order_job("bad"))
        harness.store.add_job(make_limit_order_job("good"))

        assert await harness.tick() == {"bad": "error", "good": "executed"}
        errors = harness.audit.get_events(event_type="error")
        assert [e.job_id for e in errors] == ["bad"]

    @pytest.mark.asyncio
    async def test_audit_sink_failure_is_swallowed(self, harness, make_limit_order_job) -> None:
        class BrokenSink:
            def record(self, event):
                raise OSError("disk full")

        harness.executor.audit_sink = BrokenSink()
        harness.store.add_job(make_limit_order_job())

        assert await harness.tick() == {"job-limit-1": "executed"}

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self, harness, make_limit_order_job) -> None:
        running = 0
        peak = 0

        class SlowKeeper:
            async def execute(self, job):
                nonlocal running, peak
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1
                return ExecutionReceipt(tx_hash=f"0x{job.id}")

        harness.executor.keeper_client = SlowKeeper()
        harness.executor.config = ExecutorConfig(max_concurrency=2)
        for i in range(5):
            harness.store.add_job(make_limit_order_job(f"job-{i}"))

        outcomes = await harness.tick()
        assert set(outcomes.values()) == {"executed"}
        assert len(outcomes) == 5
        assert peak == 2
