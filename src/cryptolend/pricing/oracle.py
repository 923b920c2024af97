"""
Price lookup collaborators.

An oracle hands out a fresh PriceSnapshot on every call; callers never see a
table that changes underneath them.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Dict, Optional

import aiohttp

from cryptolend.config import PriceFeedSettings, PriceSource
from cryptolend.logging import get_logger
from .models import COINGECKO_IDS, DEFAULT_PRICES, PriceSnapshot

logger = get_logger(__name__)


class PriceOracle(ABC):
    """Abstract source of collateral unit prices."""

    @abstractmethod
    def snapshot(self) -> PriceSnapshot:
        """Return the current prices as an immutable snapshot."""
        pass

    async def refresh(self) -> bool:
        """Pull new prices from upstream. Static oracles have nothing to do."""
        return True


class StaticPriceOracle(PriceOracle):
    """Fixed price table."""

    def __init__(self, prices: Optional[Dict[str, float]] = None):
        table = DEFAULT_PRICES if prices is None else prices
        self._prices = {symbol.upper(): float(price) for symbol, price in table.items()}

    def snapshot(self) -> PriceSnapshot:
        return PriceSnapshot(prices=dict(self._prices), source="static")


class CoinGeckoPriceOracle(PriceOracle):
    """Price oracle backed by the CoinGecko simple price API.

    refresh() replaces the held snapshot wholesale. A failed refresh keeps the
    previous snapshot, so prices may be stale; before the first successful
    refresh the snapshot is empty and every lookup resolves to no price.
    """

    def __init__(self, config: PriceFeedSettings, coin_ids: Optional[Dict[str, str]] = None):
        self.config = config
        self.coin_ids = coin_ids or COINGECKO_IDS
        self._snapshot = PriceSnapshot(prices={}, source="coingecko")

    def snapshot(self) -> PriceSnapshot:
        return self._snapshot

    async def refresh(self) -> bool:
        """Fetch prices and swap in a new snapshot. Returns False on failure."""
        quotes = await self.fetch_prices()
        if quotes is None:
            return False

        prices = {}
        for symbol, coin_id in self.coin_ids.items():
            price = quotes.get(coin_id, {}).get(self.config.vs_currency)
            if price is not None:
                prices[symbol] = float(price)

        self._snapshot = PriceSnapshot(prices=prices, source="coingecko")
        logger.debug(f"Refreshed {len(prices)} collateral prices", source="coingecko")
        return True

    async def fetch_prices(self) -> Optional[Dict]:
        """Fetch raw quotes from CoinGecko."""
        url = f"{self.config.url}/simple/price"
        params = {
            'ids': ",".join(self.coin_ids.values()),
            'vs_currencies': self.config.vs_currency,
        }
        timeout = aiohttp.ClientTimeout(total=self.config.timeout)

        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url, params=params) as response:
                    if response.status == 200:
                        return await response.json()
                    logger.error(f"Failed to fetch prices: {response.status}")

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error fetching prices: {e}")

        return None


def create_price_oracle(config: PriceFeedSettings) -> PriceOracle:
    """Factory function to create the configured price oracle."""
    if config.source == PriceSource.STATIC:
        return StaticPriceOracle()
    elif config.source == PriceSource.COINGECKO:
        return CoinGeckoPriceOracle(config)
    else:
        raise ValueError(f"Unsupported price source: {config.source}")
