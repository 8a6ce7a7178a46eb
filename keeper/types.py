from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Literal, Optional, Union

JobType = Literal["limit_order", "dca"]
JobStatus = Literal["pending", "active", "executed", "cancelled", "failed", "paused"]
Direction = Literal["gte", "lte"]

JOB_TYPES: tuple[str, ...] = ("limit_order", "dca")
JOB_STATUSES: tuple[str, ...] = ("pending", "active", "executed", "cancelled", "failed", "paused")
TERMINAL_STATUSES: frozenset[str] = frozenset({"executed", "cancelled", "failed"})

PRICE_SCALE = 10**18  # fixed-point prices carry 18 fractional digits


def utc_now() -> datetime:
    """Return a timezone-aware timestamp in UTC."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class LimitOrderParams:
    token_in: str
    token_out: str
    amount_in: int  # raw token units
    min_amount_out: int
    target_price: int  # tokenOut per tokenIn, scaled by PRICE_SCALE
    direction: Direction
    slippage_bps: Optional[int] = None  # display only

    def __post_init__(self) -> None:
        if self.direction not in ("gte", "lte"):
            raise ValueError(f"direction must be 'gte' or 'lte', got {self.direction!r}")
        if self.amount_in < 0 or self.min_amount_out < 0 or self.target_price < 0:
            raise ValueError("limit order amounts and target price must be non-negative")


@dataclass(frozen=True)
class DCAParams:
    token_in: str
    token_out: str
    amount_per_swap: int  # raw token units
    interval_seconds: int
    total_swaps: int
    swaps_completed: int
    next_execution: datetime

    def __post_init__(self) -> None:
        if self.amount_per_swap < 0:
            raise ValueError("amount_per_swap must be non-negative")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if not 0 <= self.swaps_completed <= self.total_swaps:
            raise ValueError(
                f"swaps_completed must be within [0, {self.total_swaps}], got {self.swaps_completed}"
            )


JobParams = Union[LimitOrderParams, DCAParams]


@dataclass(frozen=True)
class Job:
    """A user-authorized automation instruction.

    `type` is the discriminator for `params`; evaluators match on it and must
    handle both variants. Jobs are snapshots: the store owns the live record
    and every transition goes through it.
    """

    id: str
    owner: str
    type: JobType
    status: JobStatus
    params: JobParams
    created_at: datetime
    updated_at: datetime
    on_chain_job_id: Optional[str] = None
    expires_at: Optional[datetime] = None
    retries: int = 0
    max_retries: int = 5
    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        if self.type == "limit_order":
            expected: type = LimitOrderParams
        elif self.type == "dca":
            expected = DCAParams
        else:
            raise ValueError(f"Unknown job type: {self.type!r}")
        if not isinstance(self.params, expected):
            raise ValueError(f"{self.type} job requires {expected.__name__}, got {type(self.params).__name__}")
        if self.status not in JOB_STATUSES:
            raise ValueError(f"Unknown job status: {self.status!r}")
        if self.max_retries < 0 or not 0 <= self.retries <= self.max_retries:
            raise ValueError(f"retries must be within [0, {self.max_retries}], got {self.retries}")

    @property
    def token_in(self) -> str:
        return self.params.token_in

    @property
    def token_out(self) -> str:
        return self.params.token_out

    def is_owned_by(self, address: str) -> bool:
        """Compare owner addresses case-insensitively (checksummed vs lowercase)."""
        return self.owner.lower() == address.lower()

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at


@dataclass(frozen=True)
class PriceCheckResult:
    condition_met: bool
    current_price: int
    target_price: int
    swap_usd: Decimal


@dataclass(frozen=True)
class ExecutionReceipt:
    """Result of an on-chain submission."""

    tx_hash: str
    amount_out: Optional[int] = None
