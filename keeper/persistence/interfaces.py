from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional, Protocol, Sequence

from keeper.types import Job

if TYPE_CHECKING:
    from keeper.automation.audit import AuditEvent


class JobStore(Protocol):
    """Persistence boundary for jobs. The store owns the live job records."""

    async def get_active_jobs(self) -> Sequence[Job]:
        """Return jobs awaiting evaluation (status pending or active)."""

    async def activate_job(self, job_id: str) -> None:
        """Transition a pending job to active on first pickup."""

    async def mark_executed(self, job_id: str, tx_hash: str, amount_out: Optional[int] = None) -> None:
        """Mark a job executed with the transaction reference."""

    async def mark_dca_tick(
        self,
        job_id: str,
        tx_hash: str,
        swaps_completed: int,
        next_execution: datetime,
        amount_out: Optional[int] = None,
    ) -> None:
        """Record one DCA swap; the job becomes executed once all swaps are done."""

    async def mark_failed(self, job_id: str, reason: str) -> None:
        """Mark a job terminally failed with `reason` as its last error."""

    async def increment_retry(self, job_id: str) -> None:
        """Increment the job's retry counter."""

    async def update_last_error(self, job_id: str, error: str) -> None:
        """Record the latest error without changing status or retries."""

    async def get_paused(self) -> bool:
        """Return the authoritative global pause flag."""

    async def update_heartbeat(self) -> None:
        """Record worker liveness."""


class AuditEventStore(Protocol):
    def log_event(
        self,
        *,
        event_type: str,
        message: str,
        severity: str = "info",
        job_id: str | None = None,
        actor: str = "system",
        event_time: datetime | None = None,
        context_json: str | None = None,
    ) -> None:
        """Persist an audit event (violations, executions, errors, etc.)."""


class AuditSink(Protocol):
    def record(self, event: AuditEvent) -> None:
        """Record an attempt or outcome. Fire-and-forget."""
