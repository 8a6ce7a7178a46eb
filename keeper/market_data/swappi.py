"""Swappi (UniswapV2-style) router price source.

Quotes come from `getAmountsOut` for one whole unit of the input token,
first on the direct pair and then routed through wCFX.
"""

from __future__ import annotations

import logging
from typing import Optional

from web3 import AsyncWeb3
from web3.exceptions import BadFunctionCallOutput, ContractLogicError

from keeper.automation.pricing import DEFAULT_TOKEN_DECIMALS, PriceSourceError
from keeper.execution.abi import ERC20_DECIMALS_ABI, SWAPPI_ROUTER_ABI
from keeper.types import PRICE_SCALE


logger = logging.getLogger(__name__)


class OnChainDecimalsResolver:
    """Reads and caches ERC-20 `decimals()`; unreadable tokens count as 18."""

    def __init__(self, w3: AsyncWeb3) -> None:
        self._w3 = w3
        self._cache: dict[str, int] = {}

    async def __call__(self, token: str) -> int:
        key = token.lower()
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        contract = self._w3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=ERC20_DECIMALS_ABI)
        try:
            decimals = int(await contract.functions.decimals().call())
        except (ContractLogicError, BadFunctionCallOutput) as e:
            logger.warning(f"decimals() failed for {token}, assuming {DEFAULT_TOKEN_DECIMALS}: {e}")
            decimals = DEFAULT_TOKEN_DECIMALS

        self._cache[key] = decimals
        return decimals


class SwappiPriceSource:
    def __init__(
        self,
        *,
        w3: AsyncWeb3,
        router_address: str,
        wcfx_address: str,
        decimals_resolver: Optional[OnChainDecimalsResolver] = None,
    ) -> None:
        self._router = w3.eth.contract(address=AsyncWeb3.to_checksum_address(router_address), abi=SWAPPI_ROUTER_ABI)
        self._wcfx = AsyncWeb3.to_checksum_address(wcfx_address)
        self.decimals = decimals_resolver or OnChainDecimalsResolver(w3)

    async def get_price(self, token_in: str, token_out: str) -> int:
        """Price of one `token_in` in `token_out`, scaled by 1e18.

        Raises:
            PriceSourceError: neither the direct nor the wCFX route quotes.
        """
        decimals_in = await self.decimals(token_in)
        decimals_out = await self.decimals(token_out)
        unit_in = 10**decimals_in

        token_in = AsyncWeb3.to_checksum_address(token_in)
        token_out = AsyncWeb3.to_checksum_address(token_out)

        amount_out = await self._quote(unit_in, [token_in, token_out])
        if amount_out is None and self._wcfx not in (token_in, token_out):
            amount_out = await self._quote(unit_in, [token_in, self._wcfx, token_out])
            if amount_out is not None:
                logger.debug(f"Quoted {token_in}/{token_out} via wCFX")

        if amount_out is None:
            raise PriceSourceError(f"No Swappi route for {token_in} -> {token_out}")

        return _normalize(amount_out, decimals_out)

    async def _quote(self, amount_in: int, path: list[str]) -> Optional[int]:
        try:
            amounts = await self._router.functions.getAmountsOut(amount_in, path).call()
        except ContractLogicError as e:
            logger.debug(f"getAmountsOut reverted for path {path}: {e}")
            return None
        if not amounts:
            return None
        return int(amounts[-1])


def _normalize(amount: int, decimals: int) -> int:
    """Rescale a raw token amount to 1e18 fixed point."""
    if decimals <= 18:
        return amount * 10 ** (18 - decimals)
    return amount * PRICE_SCALE // 10**decimals
