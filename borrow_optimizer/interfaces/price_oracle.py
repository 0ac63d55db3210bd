"""Price oracle protocol: 18-decimal USD prices keyed by asset address."""
from typing import Protocol


class PriceOracle(Protocol):
    """Abstract interface for reading asset prices.

    Prices are 18-decimal integers in a common unit (USD). ``0`` means the
    price is unknown; callers treat it as fatal.
    """

    async def get_asset_price(self, asset: str) -> int: ...
