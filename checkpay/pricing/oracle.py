"""Price oracle interface.

The oracle is an external collaborator reporting asset/USD rates. The core
only consumes ``get_rate``; ``StaticPriceOracle`` is an in-process oracle for
tests and local development.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable, Dict, Optional, Protocol


@dataclass(frozen=True)
class RateQuote:
    """An oracle-reported rate: one asset unit costs ``price / 10**precision`` USD."""

    price: int
    precision: int
    as_of: datetime

    @property
    def usd_per_unit(self) -> Decimal:
        return Decimal(self.price) / (Decimal(10) ** self.precision)

    def age_seconds(self, now: datetime) -> float:
        return (now - self.as_of).total_seconds()


class PriceOracle(Protocol):
    """Protocol for asset/USD rate sources."""

    def get_rate(self, asset: str) -> Optional[RateQuote]:
        """Latest rate for ``asset``, or None if the oracle has none."""
        ...


class StaticPriceOracle:
    """In-memory oracle with settable rates.

    Counts calls per asset so tests can assert the oracle was (or wasn't)
    consulted.
    """

    def __init__(self, clock: Optional[Callable[[], datetime]] = None):
        self._rates: Dict[str, RateQuote] = {}
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.calls: Dict[str, int] = {}

    def set_rate(
        self,
        asset: str,
        usd_per_unit: Decimal,
        precision: int = 8,
        as_of: Optional[datetime] = None,
    ) -> RateQuote:
        price = int(Decimal(usd_per_unit) * (Decimal(10) ** precision))
        quote = RateQuote(price=price, precision=precision, as_of=as_of or self._clock())
        self._rates[asset.lower()] = quote
        return quote

    def clear(self, asset: str) -> None:
        self._rates.pop(asset.lower(), None)

    def get_rate(self, asset: str) -> Optional[RateQuote]:
        key = asset.lower()
        self.calls[key] = self.calls.get(key, 0) + 1
        return self._rates.get(key)


class FixedRateOracle:
    """Oracle quoting configured rates stamped at read time.

    For local development, where no live feed exists and a static quote
    would go stale after ``max_rate_age_seconds``.
    """

    def __init__(
        self,
        rates: Dict[str, Decimal],
        precision: int = 8,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._rates = {asset.lower(): Decimal(rate) for asset, rate in rates.items()}
        self.precision = precision
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def get_rate(self, asset: str) -> Optional[RateQuote]:
        rate = self._rates.get(asset.lower())
        if rate is None:
            return None
        price = int(rate * (Decimal(10) ** self.precision))
        return RateQuote(price=price, precision=self.precision, as_of=self._clock())
