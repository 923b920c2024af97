"""
Price snapshot models.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from cryptolend.shared import utcnow


class CollateralAsset(str, Enum):
    """Assets accepted as collateral."""
    BTC = "BTC"
    ETH = "ETH"
    BNB = "BNB"
    ADA = "ADA"
    SOL = "SOL"
    MATIC = "MATIC"
    DOT = "DOT"
    LINK = "LINK"


# Reference prices used when no live feed is configured
DEFAULT_PRICES: Dict[str, float] = {
    CollateralAsset.BTC.value: 43250.0,
    CollateralAsset.ETH.value: 2540.0,
    CollateralAsset.BNB.value: 315.0,
    CollateralAsset.ADA.value: 0.85,
    CollateralAsset.SOL.value: 65.50,
    CollateralAsset.MATIC.value: 0.92,
    CollateralAsset.DOT.value: 7.20,
    CollateralAsset.LINK.value: 14.80,
}

# CoinGecko coin ids for each collateral symbol
COINGECKO_IDS: Dict[str, str] = {
    CollateralAsset.BTC.value: "bitcoin",
    CollateralAsset.ETH.value: "ethereum",
    CollateralAsset.BNB.value: "binancecoin",
    CollateralAsset.ADA.value: "cardano",
    CollateralAsset.SOL.value: "solana",
    CollateralAsset.MATIC.value: "matic-network",
    CollateralAsset.DOT.value: "polkadot",
    CollateralAsset.LINK.value: "chainlink",
}


class PriceSnapshot(BaseModel):
    """Immutable set of unit prices captured at one instant."""
    model_config = ConfigDict(frozen=True)

    prices: Dict[str, float] = Field(default_factory=dict, description="Unit price by collateral symbol")
    source: str = Field("static", description="Feed that produced the prices")
    captured_at: datetime = Field(default_factory=utcnow)

    def price_for(self, symbol: str) -> Optional[float]:
        """Unit price for a symbol, or None when the snapshot has no quote."""
        return self.prices.get(symbol.upper())

    def as_dict(self) -> Dict[str, float]:
        return dict(self.prices)
