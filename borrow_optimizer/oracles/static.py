"""Fixed price table, for dry runs and tests."""
from __future__ import annotations

import logging
from decimal import Decimal

logger = logging.getLogger(__name__)


class StaticPriceOracle:
    """Serve prices from an in-memory table of 18-decimal integers."""

    def __init__(self, prices: dict[str, int] | None = None) -> None:
        self._prices: dict[str, int] = dict(prices or {})

    @classmethod
    def from_usd(cls, prices: dict[str, float]) -> StaticPriceOracle:
        """Build from human readable USD prices (``{"0xUSDC": 1.0}``)."""
        return cls({asset: int(Decimal(str(price)) * 10**18) for asset, price in prices.items()})

    def set_price(self, asset: str, price18: int) -> None:
        logger.debug("Static price %s set to %s", asset, price18)
        self._prices[asset] = price18

    async def get_asset_price(self, asset: str) -> int:
        return self._prices.get(asset, 0)
