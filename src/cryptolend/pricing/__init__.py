"""Collateral price lookup."""

from .models import CollateralAsset, PriceSnapshot, DEFAULT_PRICES
from .oracle import PriceOracle, StaticPriceOracle, CoinGeckoPriceOracle, create_price_oracle

__all__ = [
    "CollateralAsset",
    "PriceSnapshot",
    "DEFAULT_PRICES",
    "PriceOracle",
    "StaticPriceOracle",
    "CoinGeckoPriceOracle",
    "create_price_oracle"
]
