"""Price sources: Swappi router quotes and CoinGecko USD prices."""

from .coingecko import CoinGeckoTokenPriceFeed
from .swappi import OnChainDecimalsResolver, SwappiPriceSource

__all__ = ["CoinGeckoTokenPriceFeed", "OnChainDecimalsResolver", "SwappiPriceSource"]
