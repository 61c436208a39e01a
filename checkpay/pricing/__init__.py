"""Pricing subsystem for Checkpay.

Modules:
- assets.py: Settlement assets and their base-unit precision
- oracle.py: Price oracle protocol and an in-memory oracle
- normalizer.py: USD to asset conversion used to size escrow deposits
"""

from checkpay.pricing.assets import AssetRegistry, SettlementAsset
from checkpay.pricing.normalizer import Conversion, PriceNormalizer
from checkpay.pricing.oracle import FixedRateOracle, PriceOracle, RateQuote, StaticPriceOracle

__all__ = [
    "AssetRegistry",
    "SettlementAsset",
    "PriceOracle",
    "RateQuote",
    "StaticPriceOracle",
    "FixedRateOracle",
    "PriceNormalizer",
    "Conversion",
]
