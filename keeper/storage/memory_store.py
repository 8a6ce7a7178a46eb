from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Optional, Sequence

from keeper.persistence.interfaces import JobStore
from keeper.types import DCAParams, Job, utc_now


@dataclass(frozen=True)
class ExecutionRecord:
    job_id: str
    tx_hash: str
    timestamp: datetime
    amount_out: Optional[int] = None


class InMemoryJobStore(JobStore):
    """Dict-backed job store for tests and local dry runs."""

    def __init__(self, jobs: Sequence[Job] = (), *, clock: Callable[[], datetime] = utc_now) -> None:
        self.jobs: dict[str, Job] = {job.id: job for job in jobs}
        self.executions: list[ExecutionRecord] = []
        self.paused = False
        self.last_heartbeat: Optional[datetime] = None
        self._clock = clock

    def add_job(self, job: Job) -> None:
        self.jobs[job.id] = job

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.jobs.get(job_id)

    def set_paused(self, paused: bool) -> None:
        self.paused = paused

    async def get_active_jobs(self) -> Sequence[Job]:
        return [job for job in self.jobs.values() if job.status in ("pending", "active")]

    async def activate_job(self, job_id: str) -> None:
        self._update(job_id, status="active")

    async def mark_executed(self, job_id: str, tx_hash: str, amount_out: Optional[int] = None) -> None:
        if self._update(job_id, status="executed", last_error=None):
            self.executions.append(ExecutionRecord(job_id, tx_hash, self._clock(), amount_out))

    async def mark_dca_tick(
        self,
        job_id: str,
        tx_hash: str,
        swaps_completed: int,
        next_execution: datetime,
        amount_out: Optional[int] = None,
    ) -> None:
        job = self.jobs.get(job_id)
        if job is None or not isinstance(job.params, DCAParams):
            return
        params = replace(job.params, swaps_completed=swaps_completed, next_execution=next_execution)
        status = "executed" if swaps_completed >= params.total_swaps else "active"
        self._update(job_id, params=params, status=status, last_error=None)
        self.executions.append(ExecutionRecord(job_id, tx_hash, self._clock(), amount_out))

    async def mark_failed(self, job_id: str, reason: str) -> None:
        self._update(job_id, status="failed", last_error=reason)

    async def increment_retry(self, job_id: str) -> None:
        job = self.jobs.get(job_id)
        if job is not None and job.retries < job.max_retries:
            self._update(job_id, retries=job.retries + 1)

    async def update_last_error(self, job_id: str, error: str) -> None:
        self._update(job_id, last_error=error)

    async def get_paused(self) -> bool:
        return self.paused

    async def update_heartbeat(self) -> None:
        self.last_heartbeat = self._clock()

    def _update(self, job_id: str, **changes: object) -> bool:
        job = self.jobs.get(job_id)
        if job is None:
            return False
        self.jobs[job_id] = replace(job, updated_at=max(self._clock(), job.updated_at), **changes)
        return True
