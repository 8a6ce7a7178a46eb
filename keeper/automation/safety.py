"""Safety guard for the automation engine.

Every job passes through `SafetyGuard.check` before the executor touches the
price source or the chain. Rules run in a fixed order and the first failure
wins, so a failing call reports exactly one violation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Callable, Optional

from keeper.types import DCAParams, Job, utc_now

from .rules import DEFAULT_SAFETY_CONFIG, SafetyConfig, SafetyRule, SafetyViolation


logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


@dataclass(frozen=True)
class SafetyContext:
    swap_usd: Decimal = Decimal("0")


@dataclass(frozen=True)
class SafetyResult:
    ok: bool
    reason: str
    violation: Optional[SafetyViolation] = None


class SafetyGuard:
    """Stateful rule engine and global circuit breaker.

    Owns its config, the pause flag and the violation log. Only the tick loop
    mutates it; cross-process pause state is synced in by the poller hook.
    """

    def __init__(self, config: Optional[SafetyConfig] = None, *, clock: Clock = utc_now) -> None:
        self._config = (config or DEFAULT_SAFETY_CONFIG).merged()
        self._violations: list[SafetyViolation] = []
        self._clock = clock

    # ---- circuit breaker

    def pause_all(self) -> None:
        if not self._config.global_pause:
            logger.warning("Global pause engaged: all job execution halted")
        self._config.global_pause = True

    def resume_all(self) -> None:
        if self._config.global_pause:
            logger.info("Global pause released: job execution resumed")
        self._config.global_pause = False

    def is_paused(self) -> bool:
        return self._config.global_pause

    # ---- config

    def update_config(self, **partial: object) -> None:
        """Merge `partial` into the current config."""
        self._config = self._config.merged(**partial)

    def get_config(self) -> SafetyConfig:
        """Return a snapshot; mutating it does not affect the guard."""
        return self._config.merged()

    # ---- violation log

    def get_violations(self) -> list[SafetyViolation]:
        return list(self._violations)

    def clear_violations(self) -> None:
        self._violations.clear()

    # ---- checks

    def check(self, job: Job, context: Optional[SafetyContext] = None) -> SafetyResult:
        ctx = context or SafetyContext()
        now = self._clock()

        failure = (
            self._check_global_pause()
            or self._check_status(job)
            or self._check_expiry(job, now)
            or self._check_retries(job)
            or self._check_swap_size(ctx.swap_usd)
            or self._check_dca_interval(job, now)
        )
        if failure is None:
            return SafetyResult(ok=True, reason="ok")

        rule, detail = failure
        violation = SafetyViolation(job_id=job.id, rule=rule, detail=detail, timestamp=now)
        self._violations.append(violation)
        logger.warning(f"Safety violation for job {job.id} [{rule}]: {detail}")
        return SafetyResult(ok=False, reason=detail, violation=violation)

    def _check_global_pause(self) -> Optional[tuple[SafetyRule, str]]:
        if self._config.global_pause:
            return "global_pause", "Global pause is active"
        return None

    def _check_status(self, job: Job) -> Optional[tuple[SafetyRule, str]]:
        if job.status != "active":
            return "status", f"Job status is '{job.status}', expected 'active'"
        return None

    def _check_expiry(self, job: Job, now: datetime) -> Optional[tuple[SafetyRule, str]]:
        if job.is_expired(now):
            return "expires_at", f"Job expired at {job.expires_at.isoformat()}"
        return None

    def _check_retries(self, job: Job) -> Optional[tuple[SafetyRule, str]]:
        if job.retries >= job.max_retries:
            return "max_retries", f"Retry limit reached: {job.retries}/{job.max_retries}"
        return None

    def _check_swap_size(self, swap_usd: Decimal) -> Optional[tuple[SafetyRule, str]]:
        if swap_usd > self._config.max_swap_usd:
            return "max_swap_usd", f"Swap value ${swap_usd} exceeds limit ${self._config.max_swap_usd}"
        return None

    def _check_dca_interval(self, job: Job, now: datetime) -> Optional[tuple[SafetyRule, str]]:
        # Re-derived here rather than trusting the price evaluator's due check.
        if job.type != "dca":
            return None
        params = job.params
        assert isinstance(params, DCAParams)

        if now < params.next_execution:
            remaining = (params.next_execution - now).total_seconds()
            return "min_execution_interval_seconds", f"DCA interval not reached: {remaining:.0f}s remaining"

        if params.swaps_completed > 0:
            previous = params.next_execution - timedelta(seconds=params.interval_seconds)
            earliest = previous + timedelta(seconds=self._config.min_execution_interval_seconds)
            if now < earliest:
                remaining = (earliest - now).total_seconds()
                return (
                    "min_execution_interval_seconds",
                    f"Minimum execution interval not reached: {remaining:.0f}s remaining",
                )
        return None
