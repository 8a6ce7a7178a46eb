"""Safety configuration for the automation engine.

Defines the global guardrails applied to every job before execution:
per-swap USD cap, slippage ceiling, retry policy, DCA spacing and the
global circuit breaker.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from decimal import Decimal
from typing import Literal

from keeper.types import utc_now

SafetyRule = Literal[
    "global_pause",
    "status",
    "expires_at",
    "max_retries",
    "max_swap_usd",
    "max_slippage_bps",
    "min_execution_interval_seconds",
]

# Violations of these rules can never clear on a later tick.
TERMINAL_RULES: frozenset[str] = frozenset({"status", "expires_at", "max_retries"})


@dataclass
class SafetyConfig:
    """Global safety parameters."""

    max_swap_usd: Decimal = Decimal("10000")  # Max USD value of a single swap
    max_slippage_bps: int = 500  # Max slippage applied to quoted swaps (500 = 5%)
    max_retries: int = 5  # Default retry budget for jobs created without one
    min_execution_interval_seconds: int = 30  # Min spacing between DCA swaps
    global_pause: bool = False  # Circuit breaker: halts all execution

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))

    def merged(self, **partial: object) -> SafetyConfig:
        """Return a copy with `partial` applied; unknown keys are rejected."""
        unknown = set(partial) - self.field_names()
        if unknown:
            raise ValueError(f"Unknown safety config keys: {sorted(unknown)}")
        values = {f.name: getattr(self, f.name) for f in fields(self)}
        values.update(partial)
        if not isinstance(values["max_swap_usd"], Decimal):
            values["max_swap_usd"] = Decimal(str(values["max_swap_usd"]))
        return SafetyConfig(**values)


DEFAULT_SAFETY_CONFIG = SafetyConfig()


@dataclass(frozen=True)
class SafetyViolation:
    job_id: str
    rule: SafetyRule
    detail: str
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def is_terminal(self) -> bool:
        return self.rule in TERMINAL_RULES
