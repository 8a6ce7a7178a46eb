"""Delayed retry of jobs that failed transiently.

Backoff is exponential (`base_delay_ms * 2 ** (attempt - 1)`) so a flaky RPC
endpoint does not get hammered by every failing job on every tick.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from keeper.types import Job, utc_now


logger = logging.getLogger(__name__)

DEFAULT_BASE_DELAY_MS = 15_000  # one default poll interval


@dataclass
class RetryEntry:
    job: Job
    attempt: int
    next_attempt_at: datetime
    enqueued_at: datetime


class RetryScheduler:
    """Holds failed jobs until their backoff has elapsed.

    Entries are keyed by job id and kept in first-enqueue order; re-enqueuing
    an existing id updates the entry in place.
    """

    def __init__(
        self,
        *,
        base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
        max_delay_ms: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if base_delay_ms < 0:
            raise ValueError("base_delay_ms must be non-negative")
        self.base_delay_ms = base_delay_ms
        self.max_delay_ms = max_delay_ms
        self._clock = clock
        self._entries: dict[str, RetryEntry] = {}

    def backoff(self, attempt: int) -> timedelta:
        delay_ms = self.base_delay_ms * 2 ** (attempt - 1)
        if self.max_delay_ms is not None:
            delay_ms = min(delay_ms, self.max_delay_ms)
        return timedelta(milliseconds=delay_ms)

    def enqueue(self, job: Job, now: Optional[datetime] = None) -> RetryEntry:
        now = now or self._clock()
        entry = self._entries.get(job.id)
        if entry is None:
            entry = RetryEntry(job=job, attempt=1, next_attempt_at=now + self.backoff(1), enqueued_at=now)
            self._entries[job.id] = entry
        else:
            entry.attempt += 1
            entry.job = job
            entry.next_attempt_at = now + self.backoff(entry.attempt)

        logger.info(
            f"Job {job.id} scheduled for retry #{entry.attempt} at {entry.next_attempt_at.isoformat()}"
        )
        return entry

    def drain_due(self, now: Optional[datetime] = None) -> list[RetryEntry]:
        """Remove and return every entry whose backoff has elapsed."""
        now = now or self._clock()
        due = [entry for entry in self._entries.values() if entry.next_attempt_at <= now]
        for entry in due:
            del self._entries[entry.job.id]
        return due

    def remove(self, job_id: str) -> bool:
        return self._entries.pop(job_id, None) is not None

    def contains(self, job_id: str) -> bool:
        return job_id in self._entries

    def get(self, job_id: str) -> Optional[RetryEntry]:
        return self._entries.get(job_id)

    def size(self) -> int:
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)
