"""
Commerce configuration.

Settings for the ledger contracts, settlement assets, oracle freshness and
content store endpoints. Construct directly (tests) or via
``CommerceConfig.from_env()`` which reads ``CHECKPAY_*`` variables.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional, Tuple

from checkpay.pricing.assets import AssetRegistry, SettlementAsset

logger = logging.getLogger(__name__)

DEFAULT_STABLECOINS = frozenset({"usdt", "usdc", "dai", "testusdt", "testusdc"})

DEFAULT_ASSETS: Tuple[SettlementAsset, ...] = (
    SettlementAsset(
        symbol="testUSDT",
        decimals=18,
        token_address="0x0000000000000000000000000000000000000a01",
        is_stablecoin=True,
    ),
    SettlementAsset(
        symbol="FXRP",
        decimals=6,
        token_address="0x0000000000000000000000000000000000000a02",
    ),
    SettlementAsset(symbol="FLR", decimals=18),
)


@dataclass
class CommerceConfig:
    """Configuration for the escrow core.

    Attributes:
        chain: Network name
        rpc_url: Ledger RPC endpoint
        escrow_factory_address: Contract authorized to pull the deposit (step 1 spender)
        escrow_wallet_address: Custody wallet used by escrow units
        listing_registry_address: Listing registry contract
        assets: Registered settlement assets
        stablecoin_symbols: Extra symbols treated as USD-pegged (lowercase)
        max_rate_age_seconds: Oracle quotes older than this are rejected
        default_delivery_days: Fallback when a delivery estimate can't be parsed
        confirmation_timeout_seconds: Caller-side wait for a transaction receipt
        ipfs_api_url: Content store API
        ipfs_gateway_url: Public gateway prefix for content ids
    """

    chain: str = "coston2"
    rpc_url: str = "https://coston2-api.flare.network/ext/C/rpc"
    escrow_factory_address: str = "0x0000000000000000000000000000000000000f01"
    escrow_wallet_address: str = "0x0000000000000000000000000000000000000f02"
    listing_registry_address: str = "0x0000000000000000000000000000000000000f03"
    assets: Tuple[SettlementAsset, ...] = DEFAULT_ASSETS
    stablecoin_symbols: FrozenSet[str] = DEFAULT_STABLECOINS
    max_rate_age_seconds: int = 300
    default_delivery_days: int = 30
    confirmation_timeout_seconds: int = 120
    ipfs_api_url: str = "http://127.0.0.1:5001"
    ipfs_gateway_url: str = "https://ipfs.io/ipfs/"
    _registry: Optional[AssetRegistry] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        if self.max_rate_age_seconds <= 0:
            raise ValueError("max_rate_age_seconds must be positive")
        if self.default_delivery_days <= 0:
            raise ValueError("default_delivery_days must be positive")
        self.stablecoin_symbols = frozenset(s.lower() for s in self.stablecoin_symbols)

    @property
    def asset_registry(self) -> AssetRegistry:
        if self._registry is None:
            self._registry = AssetRegistry(self.assets)
        return self._registry

    def is_stablecoin(self, symbol: str) -> bool:
        """Whether ``symbol`` is USD-pegged, by registration flag or by name."""
        if symbol in self.asset_registry and self.asset_registry.get(symbol).is_stablecoin:
            return True
        return (symbol or "").lower() in self.stablecoin_symbols

    @classmethod
    def from_env(cls) -> "CommerceConfig":
        """Build configuration from ``CHECKPAY_*`` environment variables."""
        kwargs = {}
        str_fields = {
            "CHECKPAY_CHAIN": "chain",
            "CHECKPAY_RPC_URL": "rpc_url",
            "CHECKPAY_ESCROW_FACTORY_ADDRESS": "escrow_factory_address",
            "CHECKPAY_ESCROW_WALLET_ADDRESS": "escrow_wallet_address",
            "CHECKPAY_LISTING_REGISTRY_ADDRESS": "listing_registry_address",
            "CHECKPAY_IPFS_API_URL": "ipfs_api_url",
            "CHECKPAY_IPFS_GATEWAY_URL": "ipfs_gateway_url",
        }
        for env_name, attr in str_fields.items():
            value = os.environ.get(env_name)
            if value:
                kwargs[attr] = value

        int_fields = {
            "CHECKPAY_MAX_RATE_AGE_SECONDS": "max_rate_age_seconds",
            "CHECKPAY_DEFAULT_DELIVERY_DAYS": "default_delivery_days",
            "CHECKPAY_CONFIRMATION_TIMEOUT_SECONDS": "confirmation_timeout_seconds",
        }
        for env_name, attr in int_fields.items():
            value = os.environ.get(env_name)
            if value:
                try:
                    kwargs[attr] = int(value)
                except ValueError:
                    raise ValueError(f"{env_name} must be an integer, got {value!r}")

        stablecoins = os.environ.get("CHECKPAY_STABLECOINS")
        if stablecoins:
            kwargs["stablecoin_symbols"] = frozenset(
                s.strip() for s in stablecoins.split(",") if s.strip()
            )

        assets = os.environ.get("CHECKPAY_ASSETS")
        if assets:
            kwargs["assets"] = parse_assets(assets)

        config = cls(**kwargs)
        logger.debug(f"Loaded commerce config for chain {config.chain}")
        return config


def parse_assets(value: str) -> Tuple[SettlementAsset, ...]:
    """Parse ``SYMBOL:DECIMALS:ADDRESS[:stable]`` entries separated by commas.

    ``ADDRESS`` may be ``native`` for the chain's native asset.
    """
    assets = []
    for entry in value.split(","):
        entry = entry.strip()
        if not entry:
            continue
        parts = entry.split(":")
        if len(parts) < 3:
            raise ValueError(f"Invalid asset entry: {entry!r}")
        symbol, decimals, address = parts[0], parts[1], parts[2]
        flags = {p.lower() for p in parts[3:]}
        assets.append(
            SettlementAsset(
                symbol=symbol,
                decimals=int(decimals),
                token_address=None if address.lower() == "native" else address,
                is_stablecoin="stable" in flags,
            )
        )
    return tuple(assets)
