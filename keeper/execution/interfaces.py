from __future__ import annotations

from typing import Protocol

from keeper.types import ExecutionReceipt, Job


class KeeperError(RuntimeError):
    """Any failure to get a job executed on-chain.

    Network errors, reverts, stale nonces and gas ceiling rejections all
    surface as this one type; the executor treats them as retryable.
    """


class KeeperClient(Protocol):
    """Protocol for on-chain job execution (paper or live)."""

    async def execute(self, job: Job) -> ExecutionReceipt:
        """Submit the job's swap and return the transaction reference."""
