"""CoinGecko token USD prices (free tier, no API key).

Used to size swaps in USD for the max-swap safety rule.
Rate limit: 10-30 calls/minute on free tier.
"""

from __future__ import annotations

import asyncio
import logging
from decimal import Decimal
from typing import Any, Sequence

import requests

from keeper.automation.pricing import PriceEvaluator


logger = logging.getLogger(__name__)


class CoinGeckoTokenPriceFeed:
    """Client for the CoinGecko `simple/token_price` endpoint."""

    BASE_URL = "https://api.coingecko.com/api/v3"
    DEFAULT_TIMEOUT = 10  # seconds

    def __init__(
        self,
        *,
        platform: str = "conflux",
        timeout: int = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.platform = platform
        self.timeout = timeout
        self._session = session or requests.Session()
        self._session.headers.update({
            "Accept": "application/json",
            "User-Agent": "cas-keeper/0.1",
        })

    def get_token_prices(self, tokens: Sequence[str]) -> dict[str, Decimal]:
        """Fetch USD prices for contract addresses on `platform`.

        Args:
            tokens: ERC-20 contract addresses

        Returns:
            Mapping of lowercased address to USD price. Tokens CoinGecko does
            not list are omitted.

        Raises:
            RuntimeError: If API request fails
        """
        if not tokens:
            return {}

        url = f"{self.BASE_URL}/simple/token_price/{self.platform}"
        params = {
            "contract_addresses": ",".join(sorted({t.lower() for t in tokens})),
            "vs_currencies": "usd",
        }

        try:
            response = self._session.get(url, params=params, timeout=self.timeout)
            response.raise_for_status()
            data: Any = response.json()
        except requests.RequestException as exc:
            raise RuntimeError(f"CoinGecko API request failed: {exc}") from exc

        if not isinstance(data, dict):
            raise RuntimeError(f"Unexpected response format: {type(data)}")

        prices: dict[str, Decimal] = {}
        for address, quote in data.items():
            if not isinstance(quote, dict) or quote.get("usd") is None:
                continue
            prices[str(address).lower()] = Decimal(str(quote["usd"]))
        return prices

    async def refresh(self, evaluator: PriceEvaluator, tokens: Sequence[str]) -> int:
        """Push fresh USD prices into `evaluator`; returns how many were updated."""
        loop = asyncio.get_running_loop()
        prices = await loop.run_in_executor(None, self.get_token_prices, list(tokens))
        for token, price in prices.items():
            evaluator.update_token_price(token, price)
        logger.debug(f"Refreshed {len(prices)}/{len(tokens)} token USD prices from CoinGecko")
        return len(prices)

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()
