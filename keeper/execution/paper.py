from __future__ import annotations

import hashlib
from typing import Optional

from keeper.execution.interfaces import KeeperError
from keeper.types import ExecutionReceipt, Job


class PaperKeeperClient:
    """Keeper client that never touches the chain.

    Returns synthetic transaction hashes so the full execute path (store
    transitions, audit records) can run locally. `fail_with` makes every
    call raise, for exercising the retry path.
    """

    def __init__(self, *, fail_with: Optional[str] = None) -> None:
        self.fail_with = fail_with
        self.submitted: list[Job] = []

    async def execute(self, job: Job) -> ExecutionReceipt:
        if self.fail_with is not None:
            raise KeeperError(self.fail_with)

        self.submitted.append(job)
        digest = hashlib.sha256(f"{job.id}:{len(self.submitted)}".encode()).hexdigest()
        return ExecutionReceipt(tx_hash=f"0x{digest}")
