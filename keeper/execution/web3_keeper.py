"""Live keeper client for the AutomationManager contract on Conflux eSpace.

Builds the Swappi swap calldata for a job, wraps it in the manager's
execute call, signs with the executor account and submits. Every failure
surfaces as `KeeperError`.
"""

from __future__ import annotations

import logging
import time

from eth_account import Account
from web3 import AsyncWeb3

from keeper.execution.abi import AUTOMATION_MANAGER_ABI, SWAPPI_ROUTER_ABI
from keeper.execution.interfaces import KeeperError
from keeper.types import DCAParams, ExecutionReceipt, Job, LimitOrderParams


logger = logging.getLogger(__name__)

GWEI = 10**9


class Web3KeeperClient:
    """Submits job executions with the executor's key.

    Callers should keep the RPC endpoint's own timeouts in place: this client
    does not bound latency beyond the optional receipt wait.
    """

    def __init__(
        self,
        *,
        w3: AsyncWeb3,
        private_key: str,
        contract_address: str,
        router_address: str,
        chain_id: int,
        max_gas_price_gwei: int = 1000,
        max_slippage_bps: int = 500,
        wait_for_receipt: bool = True,
        receipt_timeout_seconds: float = 120.0,
        deadline_seconds: int = 300,
    ) -> None:
        self._w3 = w3
        self._account = Account.from_key(private_key)
        self._contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self._router_address = AsyncWeb3.to_checksum_address(router_address)
        self._manager = w3.eth.contract(address=self._contract_address, abi=AUTOMATION_MANAGER_ABI)
        self._router = w3.eth.contract(address=self._router_address, abi=SWAPPI_ROUTER_ABI)
        self.chain_id = chain_id
        self.max_gas_price_wei = max_gas_price_gwei * GWEI
        self.max_slippage_bps = max_slippage_bps
        self.wait_for_receipt = wait_for_receipt
        self.receipt_timeout_seconds = receipt_timeout_seconds
        self.deadline_seconds = deadline_seconds

    @property
    def address(self) -> str:
        return self._account.address

    async def execute(self, job: Job) -> ExecutionReceipt:
        try:
            return await self._execute(job)
        except KeeperError:
            raise
        except Exception as e:
            raise KeeperError(f"{type(e).__name__}: {e}") from e

    async def _execute(self, job: Job) -> ExecutionReceipt:
        if not job.on_chain_job_id:
            raise KeeperError(f"Job {job.id} has no on-chain job id")

        gas_price = await self._w3.eth.gas_price
        if gas_price > self.max_gas_price_wei:
            raise KeeperError(
                f"Gas price {gas_price / GWEI:.2f} gwei exceeds ceiling {self.max_gas_price_wei / GWEI:.0f} gwei"
            )

        swap_calldata = await self._build_swap_calldata(job)
        on_chain_id = AsyncWeb3.to_bytes(hexstr=job.on_chain_job_id)
        if len(on_chain_id) != 32:
            raise KeeperError(f"Job {job.id} on-chain id is not bytes32: {job.on_chain_job_id}")

        if job.type == "limit_order":
            call = self._manager.functions.executeLimitOrder(on_chain_id, self._router_address, swap_calldata)
        elif job.type == "dca":
            call = self._manager.functions.executeDCATick(on_chain_id, self._router_address, swap_calldata)
        else:
            raise KeeperError(f"Unknown job type: {job.type!r}")

        nonce = await self._w3.eth.get_transaction_count(self._account.address, "pending")
        # build_transaction estimates gas, so a call that would revert fails here.
        tx = await call.build_transaction(
            {
                "from": self._account.address,
                "nonce": nonce,
                "gasPrice": gas_price,
                "chainId": self.chain_id,
            }
        )
        signed = self._account.sign_transaction(tx)
        tx_hash = await self._w3.eth.send_raw_transaction(signed.raw_transaction)
        tx_hex = AsyncWeb3.to_hex(tx_hash)
        logger.info(f"Submitted {job.type} {job.id} (nonce {nonce}) - tx {tx_hex}")

        if self.wait_for_receipt:
            receipt = await self._w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=self.receipt_timeout_seconds
            )
            if receipt["status"] != 1:
                raise KeeperError(f"Transaction {tx_hex} reverted")
            logger.info(f"Transaction {tx_hex} confirmed in block {receipt['blockNumber']}")

        return ExecutionReceipt(tx_hash=tx_hex)

    async def _build_swap_calldata(self, job: Job) -> bytes:
        params = job.params
        path = [AsyncWeb3.to_checksum_address(params.token_in), AsyncWeb3.to_checksum_address(params.token_out)]

        if isinstance(params, LimitOrderParams):
            amount_in = params.amount_in
            min_amount_out = params.min_amount_out
        elif isinstance(params, DCAParams):
            amount_in = params.amount_per_swap
            min_amount_out = await self._quote_min_out(amount_in, path)
        else:
            raise KeeperError(f"Unknown job type: {job.type!r}")

        deadline = int(time.time()) + self.deadline_seconds
        calldata = self._router.encode_abi(
            "swapExactTokensForTokens",
            args=[amount_in, min_amount_out, path, self._contract_address, deadline],
        )
        return AsyncWeb3.to_bytes(hexstr=calldata)

    async def _quote_min_out(self, amount_in: int, path: list[str]) -> int:
        amounts = await self._router.functions.getAmountsOut(amount_in, path).call()
        quoted = int(amounts[-1])
        return quoted * (10_000 - self.max_slippage_bps) // 10_000

    async def close(self) -> None:
        provider = self._w3.provider
        disconnect = getattr(provider, "disconnect", None)
        if disconnect is not None:
            await disconnect()
