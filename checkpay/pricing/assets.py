"""Settlement assets.

A settlement asset is the fungible unit escrow funds are held in: either the
chain's native asset (no token contract, no spend authorization) or a single
ERC20-like token.
"""

from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal
from typing import Dict, Iterable, List, Optional

from checkpay.errors import UnknownAssetError

NATIVE_DECIMALS = 18


@dataclass(frozen=True)
class SettlementAsset:
    """A registered settlement asset.

    Attributes:
        symbol: Ticker used by listings and the oracle (e.g. "testUSDT")
        decimals: Base-unit precision (18 for most tokens)
        token_address: Token contract address; None for the native asset
        is_stablecoin: USD-pegged, converted 1:1 without the oracle
    """

    symbol: str
    decimals: int = NATIVE_DECIMALS
    token_address: Optional[str] = None
    is_stablecoin: bool = False

    def __post_init__(self):
        if not self.symbol or not self.symbol.strip():
            raise ValueError("Asset symbol cannot be empty")
        if self.decimals < 0 or self.decimals > 36:
            raise ValueError(f"Invalid decimals: {self.decimals}")

    @property
    def is_native(self) -> bool:
        return self.token_address is None

    def to_base_units(self, amount: Decimal) -> int:
        """Convert a whole-unit amount to base units, rounding down."""
        scaled = Decimal(amount) * (Decimal(10) ** self.decimals)
        return int(scaled.to_integral_value(rounding=ROUND_DOWN))

    def from_base_units(self, amount: int) -> Decimal:
        """Convert base units back to a whole-unit Decimal."""
        return Decimal(amount) / (Decimal(10) ** self.decimals)


class AssetRegistry:
    """Lookup of settlement assets by symbol (case-insensitive)."""

    def __init__(self, assets: Iterable[SettlementAsset] = ()):
        self._assets: Dict[str, SettlementAsset] = {}
        for asset in assets:
            self.register(asset)

    def register(self, asset: SettlementAsset) -> None:
        self._assets[asset.symbol.lower()] = asset

    def get(self, symbol: str) -> SettlementAsset:
        asset = self._assets.get((symbol or "").lower())
        if asset is None:
            raise UnknownAssetError(f"Unknown settlement asset: {symbol!r}")
        return asset

    def __contains__(self, symbol: str) -> bool:
        return (symbol or "").lower() in self._assets

    def symbols(self) -> List[str]:
        return sorted(a.symbol for a in self._assets.values())
