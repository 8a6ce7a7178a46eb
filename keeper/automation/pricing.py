"""Trigger-condition evaluation and USD sizing for jobs."""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Mapping, Optional, Protocol

from keeper.types import DCAParams, Job, LimitOrderParams, PriceCheckResult, utc_now


logger = logging.getLogger(__name__)

DEFAULT_TOKEN_DECIMALS = 18

DecimalsResolver = Callable[[str], Awaitable[int]]


class PriceSource(Protocol):
    """Spot price of `token_in` denominated in `token_out`, scaled by 1e18."""

    async def get_price(self, token_in: str, token_out: str) -> int:
        """Return 0 if the pair is unknown or the price is unavailable."""
        ...


class PriceSourceError(RuntimeError):
    """Raised by price sources when a quote cannot be produced."""


async def default_decimals(token: str) -> int:
    return DEFAULT_TOKEN_DECIMALS


class PriceEvaluator:
    """Answers "is the trigger condition currently true?" for a job.

    Errors from the price source are not caught here: a failed lookup must
    stay distinguishable from a pair that legitimately quotes zero.
    """

    def __init__(
        self,
        source: PriceSource,
        token_prices_usd: Optional[Mapping[str, Decimal]] = None,
        *,
        decimals_resolver: DecimalsResolver = default_decimals,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._source = source
        self._token_prices_usd: dict[str, Decimal] = {}
        self._decimals = decimals_resolver
        self._clock = clock
        for token, price in (token_prices_usd or {}).items():
            self.update_token_price(token, price)

    async def check(self, job: Job) -> PriceCheckResult:
        if job.type == "limit_order":
            return await self.check_limit_order(job)
        if job.type == "dca":
            return await self.check_dca(job)
        raise ValueError(f"Unknown job type: {job.type!r}")

    async def check_limit_order(self, job: Job) -> PriceCheckResult:
        params = job.params
        if not isinstance(params, LimitOrderParams):
            raise ValueError(f"Job {job.id} is not a limit order")

        current_price = await self._source.get_price(params.token_in, params.token_out)
        target_price = params.target_price

        if current_price == 0:
            condition_met = False
        elif params.direction == "gte":
            condition_met = current_price >= target_price
        else:
            condition_met = current_price <= target_price

        swap_usd = await self._estimate_usd(params.token_in, params.amount_in)
        logger.debug(
            f"Limit order {job.id}: current={current_price} target={target_price} "
            f"direction={params.direction} met={condition_met} swap_usd={swap_usd}"
        )
        return PriceCheckResult(
            condition_met=condition_met,
            current_price=current_price,
            target_price=target_price,
            swap_usd=swap_usd,
        )

    async def check_dca(self, job: Job) -> PriceCheckResult:
        params = job.params
        if not isinstance(params, DCAParams):
            raise ValueError(f"Job {job.id} is not a DCA job")

        # DCA has no price trigger; the quote is only used for sizing.
        condition_met = self._clock() >= params.next_execution
        current_price = await self._source.get_price(params.token_in, params.token_out)
        swap_usd = await self._estimate_usd(params.token_in, params.amount_per_swap)
        logger.debug(
            f"DCA {job.id}: next_execution={params.next_execution.isoformat()} "
            f"met={condition_met} swap_usd={swap_usd}"
        )
        return PriceCheckResult(
            condition_met=condition_met,
            current_price=current_price,
            target_price=0,
            swap_usd=swap_usd,
        )

    async def estimate_swap_usd(self, job: Job) -> Decimal:
        """USD size of the job's next swap, without querying the price source."""
        params = job.params
        if isinstance(params, LimitOrderParams):
            return await self._estimate_usd(params.token_in, params.amount_in)
        if isinstance(params, DCAParams):
            return await self._estimate_usd(params.token_in, params.amount_per_swap)
        raise ValueError(f"Unknown job type: {job.type!r}")

    def update_token_price(self, token: str, usd_price: Decimal | float | str) -> None:
        self._token_prices_usd[token.lower()] = Decimal(str(usd_price))

    def get_token_price(self, token: str) -> Decimal:
        return self._token_prices_usd.get(token.lower(), Decimal("0"))

    async def _estimate_usd(self, token: str, raw_amount: int) -> Decimal:
        usd_per_token = self.get_token_price(token)
        if usd_per_token == 0:
            return Decimal("0")
        decimals = await self._decimals(token)
        return Decimal(raw_amount) / (Decimal(10) ** decimals) * usd_per_token
