"""Job executor - one evaluation pass over every due job.

For each candidate job the executor:
1. Runs the safety guard
2. Evaluates the trigger condition via the price evaluator
3. Submits through the keeper client (skipped in dry-run mode)
4. Writes the outcome to the job store and the audit sink

Failures from the price source or the keeper client are retried with
exponential backoff until the job's retry budget is spent.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Literal, Optional

from keeper.execution.interfaces import KeeperClient
from keeper.persistence.interfaces import AuditSink, JobStore
from keeper.types import TERMINAL_STATUSES, DCAParams, Job, utc_now

from .audit import AuditEvent
from .pricing import PriceEvaluator
from .retry import RetryScheduler
from .rules import SafetyViolation
from .safety import SafetyContext, SafetyGuard


logger = logging.getLogger(__name__)

OutcomeType = Literal[
    "executed",
    "dry_run",
    "waiting",
    "blocked",
    "failed",
    "retry_scheduled",
    "unregistered",
    "error",
]


@dataclass(frozen=True)
class JobOutcome:
    """What happened to one job during a tick."""

    job_id: str
    outcome: OutcomeType
    detail: str = ""
    tx_hash: Optional[str] = None


@dataclass
class ExecutorConfig:
    # Log would-be executions without submitting transactions
    dry_run: bool = False

    # Max jobs evaluated concurrently within one tick
    max_concurrency: int = 4


class Executor:
    """Orchestrates one evaluation pass over all due jobs.

    Coordinates between:
    - Job store (source of active jobs, sink of status transitions)
    - Retry scheduler (jobs backing off after a transient failure)
    - Safety guard and price evaluator (may this job run, and is it time?)
    - Keeper client (on-chain submission)
    - Audit sink (records every attempt and outcome)
    """

    def __init__(
        self,
        *,
        store: JobStore,
        safety_guard: SafetyGuard,
        price_evaluator: PriceEvaluator,
        retry_scheduler: RetryScheduler,
        keeper_client: KeeperClient,
        audit_sink: AuditSink,
        config: Optional[ExecutorConfig] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.store = store
        self.safety_guard = safety_guard
        self.price_evaluator = price_evaluator
        self.retry_scheduler = retry_scheduler
        self.keeper_client = keeper_client
        self.audit_sink = audit_sink
        self.config = config or ExecutorConfig()
        self._clock = clock
        self._in_flight: set[str] = set()
        self._tick = 0

    async def run_tick(self) -> list[JobOutcome]:
        """Evaluate every active job and every retry whose backoff has elapsed."""
        self._tick += 1
        candidates = await self._gather_candidates()
        logger.info(f"=== Executor tick {self._tick}: {len(candidates)} candidate job(s) ===")

        semaphore = asyncio.Semaphore(max(1, self.config.max_concurrency))

        async def bounded(job: Job) -> Optional[JobOutcome]:
            async with semaphore:
                return await self._process_job(job)

        results = await asyncio.gather(*(bounded(job) for job in candidates))
        return [outcome for outcome in results if outcome is not None]

    async def _gather_candidates(self) -> list[Job]:
        active_jobs = await self.store.get_active_jobs()
        due = self.retry_scheduler.drain_due(self._clock())

        active_ids = {job.id for job in active_jobs}
        candidates: dict[str, Job] = {}
        for entry in due:
            if entry.job.id in active_ids:
                candidates[entry.job.id] = entry.job
            else:
                # Settled elsewhere (cancelled, executed) while backing off.
                logger.info(f"Dropping retry for job {entry.job.id}: no longer active in store")

        backing_off = 0
        for job in active_jobs:
            if job.id in candidates:
                # The store's record is fresher than the retry snapshot.
                candidates[job.id] = job
            elif self.retry_scheduler.contains(job.id):
                backing_off += 1
            else:
                candidates[job.id] = job

        logger.debug(f"{len(active_jobs)} active, {len(due)} due retries, {backing_off} backing off")
        return list(candidates.values())

    async def _process_job(self, job: Job) -> Optional[JobOutcome]:
        if job.id in self._in_flight:
            logger.warning(f"Job {job.id} is already being evaluated; skipping duplicate")
            return None

        self._in_flight.add(job.id)
        try:
            return await self._evaluate(job)
        except Exception as e:
            logger.exception(f"Error processing job {job.id}: {e}")
            self._audit(AuditEvent.for_job("error", job, f"Error processing job {job.id}: {e}", severity="error"))
            return JobOutcome(job_id=job.id, outcome="error", detail=str(e))
        finally:
            self._in_flight.discard(job.id)

    async def _evaluate(self, job: Job) -> JobOutcome:
        # 1. First pickup: pending -> active (never while paused)
        if job.status == "pending" and not self.safety_guard.is_paused():
            await self.store.activate_job(job.id)
            job = replace(job, status="active")
            self._audit(AuditEvent.for_job("job_activated", job, f"Job {job.id} activated"))

        # 2. Safety checks that need no I/O: pause, status, expiry, retries, DCA interval
        safety_result = self.safety_guard.check(job)
        if not safety_result.ok:
            assert safety_result.violation is not None
            return await self._handle_violation(job, safety_result.violation)

        # 3. Swap size, then trigger condition; both may hit the chain
        try:
            swap_usd = await self.price_evaluator.estimate_swap_usd(job)
        except Exception as e:
            return await self._handle_failure(job, e, source="price")

        if swap_usd > 0:
            safety_result = self.safety_guard.check(job, SafetyContext(swap_usd=swap_usd))
            if not safety_result.ok:
                assert safety_result.violation is not None
                return await self._handle_violation(job, safety_result.violation)

        try:
            price = await self.price_evaluator.check(job)
        except Exception as e:
            return await self._handle_failure(job, e, source="price")

        if not price.condition_met:
            logger.info(
                f"{job.type} {job.id}: condition not met "
                f"(current={price.current_price}, target={price.target_price}) - waiting"
            )
            return JobOutcome(job_id=job.id, outcome="waiting")

        if job.on_chain_job_id is None:
            logger.warning(f"{job.type} {job.id} has no on-chain job id - skipping until registered")
            return JobOutcome(job_id=job.id, outcome="unregistered")

        # 4. Execute
        if self.config.dry_run:
            message = f"DRY RUN: would execute {job.type} {job.id} (swap ${price.swap_usd})"
            logger.info(message)
            self._audit(
                AuditEvent.for_job("dry_run", job, message, context={"swap_usd": str(price.swap_usd)})
            )
            return JobOutcome(job_id=job.id, outcome="dry_run")

        logger.info(f"Executing {job.type} {job.id} (swap ${price.swap_usd})")
        try:
            receipt = await self.keeper_client.execute(job)
        except Exception as e:
            return await self._handle_failure(job, e, source="keeper")

        # 5. Record success
        if isinstance(job.params, DCAParams):
            swaps_completed = job.params.swaps_completed + 1
            next_execution = self._clock() + timedelta(seconds=job.params.interval_seconds)
            await self.store.mark_dca_tick(
                job.id, receipt.tx_hash, swaps_completed, next_execution, receipt.amount_out
            )
            message = f"DCA tick executed {swaps_completed}/{job.params.total_swaps} - tx {receipt.tx_hash}"
        else:
            await self.store.mark_executed(job.id, receipt.tx_hash, receipt.amount_out)
            message = f"Limit order executed - tx {receipt.tx_hash}"

        self.retry_scheduler.remove(job.id)
        logger.info(f"{job.type} {job.id}: {message}")
        self._audit(
            AuditEvent.for_job(
                "job_executed",
                job,
                message,
                context={"tx_hash": receipt.tx_hash, "swap_usd": str(price.swap_usd)},
            )
        )
        return JobOutcome(job_id=job.id, outcome="executed", detail=message, tx_hash=receipt.tx_hash)

    async def _handle_violation(self, job: Job, violation: SafetyViolation) -> JobOutcome:
        self._audit(
            AuditEvent.for_job(
                "safety_violation",
                job,
                f"Safety check failed [{violation.rule}]: {violation.detail}",
                severity="warning",
                context={"rule": violation.rule, "detail": violation.detail},
            )
        )
        if not violation.is_terminal:
            return JobOutcome(job_id=job.id, outcome="blocked", detail=violation.detail)

        self.retry_scheduler.remove(job.id)
        if job.status in TERMINAL_STATUSES:
            # Already settled elsewhere (e.g. cancelled while awaiting retry).
            return JobOutcome(job_id=job.id, outcome="blocked", detail=violation.detail)

        await self.store.mark_failed(job.id, violation.detail)
        self._audit(
            AuditEvent.for_job(
                "job_failed", job, f"Job {job.id} failed: {violation.detail}", severity="error"
            )
        )
        return JobOutcome(job_id=job.id, outcome="failed", detail=violation.detail)

    async def _handle_failure(self, job: Job, error: Exception, *, source: str) -> JobOutcome:
        message = str(error) or type(error).__name__
        logger.error(f"{job.type} {job.id} {source} failure: {message}")
        self._audit(
            AuditEvent.for_job(
                "keeper_error",
                job,
                f"{source} failure: {message}",
                severity="error",
                context={"source": source, "error_type": type(error).__name__},
            )
        )

        # Never let the stored counter overshoot max_retries.
        if job.retries < job.max_retries:
            await self.store.increment_retry(job.id)
        retries = min(job.retries + 1, job.max_retries)

        if retries >= job.max_retries:
            self.retry_scheduler.remove(job.id)
            await self.store.mark_failed(job.id, message)
            self._audit(
                AuditEvent.for_job(
                    "job_failed",
                    job,
                    f"Job {job.id} failed after {retries} attempt(s): {message}",
                    severity="error",
                )
            )
            return JobOutcome(job_id=job.id, outcome="failed", detail=message)

        await self.store.update_last_error(job.id, message)
        entry = self.retry_scheduler.enqueue(replace(job, retries=retries, last_error=message), self._clock())
        self._audit(
            AuditEvent.for_job(
                "job_retry_scheduled",
                job,
                f"Retry {retries}/{job.max_retries} scheduled for {entry.next_attempt_at.isoformat()}",
                severity="warning",
                context={"attempt": entry.attempt},
            )
        )
        return JobOutcome(job_id=job.id, outcome="retry_scheduled", detail=message)

    def _audit(self, event: AuditEvent) -> None:
        try:
            self.audit_sink.record(event)
        except Exception as e:
            logger.error(f"Audit sink failed to record {event.event_type} for job {event.job_id}: {e}")
