"""
USD to settlement asset conversion.

Escrow deposits are sized in the settlement asset at the moment of deposit:
the USD price agreed in the application is re-quoted on every conversion, so
two conversions of the same amount made at different times can differ. Once
deposited, the amount is fixed and later price moves never rescale it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import ROUND_DOWN, Decimal
from typing import TYPE_CHECKING, Callable, Optional

from checkpay.errors import CollaboratorFailure, CommerceError, RateUnavailableError
from checkpay.logging_config import log_conversion
from checkpay.pricing.assets import SettlementAsset
from checkpay.pricing.oracle import PriceOracle, RateQuote

if TYPE_CHECKING:
    from checkpay.config import CommerceConfig

logger = logging.getLogger(__name__)

SOURCE_ORACLE = "oracle"
SOURCE_STABLECOIN = "stablecoin"


@dataclass(frozen=True)
class Conversion:
    """Result of one conversion, with the rate it was made at."""

    amount_usd: Decimal
    asset: str
    amount: int
    source: str
    quote: Optional[RateQuote] = None

    @property
    def used_fallback(self) -> bool:
        return self.source == SOURCE_STABLECOIN

    def to_dict(self) -> dict:
        return {
            "amount_usd": str(self.amount_usd),
            "asset": self.asset,
            "amount": str(self.amount),
            "source": self.source,
            "usd_per_unit": str(self.quote.usd_per_unit) if self.quote else "1",
            "as_of": self.quote.as_of.isoformat() if self.quote else None,
        }


class PriceNormalizer:
    """Converts USD amounts into settlement asset base units."""

    def __init__(
        self,
        oracle: PriceOracle,
        config: "CommerceConfig",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.oracle = oracle
        self.config = config
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def convert(self, amount_usd: Decimal, asset: str) -> int:
        """Convert ``amount_usd`` into base units of ``asset``.

        Raises:
            RateUnavailableError: No fresh oracle rate (or unknown asset)
            CollaboratorFailure: The oracle itself failed
        """
        return self.quote(amount_usd, asset).amount

    def quote(self, amount_usd: Decimal, asset: str) -> Conversion:
        """Convert and return the conversion details."""
        amount_usd = Decimal(amount_usd)
        if amount_usd < 0:
            raise ValueError("USD amount cannot be negative")

        settlement = self.config.asset_registry.get(asset)

        if self.config.is_stablecoin(settlement.symbol):
            amount = settlement.to_base_units(amount_usd)
            log_conversion(amount_usd, settlement.symbol, amount, SOURCE_STABLECOIN)
            return Conversion(amount_usd, settlement.symbol, amount, SOURCE_STABLECOIN)

        quote = self._fresh_rate(settlement)
        amount = self._apply_rate(amount_usd, settlement, quote)
        log_conversion(amount_usd, settlement.symbol, amount, SOURCE_ORACLE)
        return Conversion(amount_usd, settlement.symbol, amount, SOURCE_ORACLE, quote)

    def _fresh_rate(self, asset: SettlementAsset) -> RateQuote:
        try:
            quote = self.oracle.get_rate(asset.symbol)
        except CommerceError:
            raise
        except Exception as e:
            logger.error(f"Oracle lookup failed for {asset.symbol}: {e}")
            raise CollaboratorFailure(f"Oracle lookup failed for {asset.symbol}: {e}") from e

        if quote is None:
            raise RateUnavailableError(f"No rate available for {asset.symbol}")
        if quote.price <= 0:
            raise RateUnavailableError(f"Oracle reported non-positive price for {asset.symbol}")

        age = quote.age_seconds(self._clock())
        if age > self.config.max_rate_age_seconds:
            logger.warning(
                f"Stale rate for {asset.symbol}: {age:.0f}s old "
                f"(max {self.config.max_rate_age_seconds}s)"
            )
            raise RateUnavailableError(
                f"Rate for {asset.symbol} is stale ({age:.0f}s old)"
            )
        return quote

    @staticmethod
    def _apply_rate(amount_usd: Decimal, asset: SettlementAsset, quote: RateQuote) -> int:
        # units = usd / (price / 10**precision), then scaled to base units
        scaled = (
            amount_usd
            * (Decimal(10) ** asset.decimals)
            * (Decimal(10) ** quote.precision)
            / Decimal(quote.price)
        )
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))
