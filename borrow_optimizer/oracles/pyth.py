"""Pyth Network price oracle service."""
from __future__ import annotations

import logging
import ssl

import aiohttp
import certifi

from ..config import AssetConfig, PythConfig

logger = logging.getLogger(__name__)


def _to_price18(price_raw: int, expo: int) -> int:
    """Rescale a Pyth ``price * 10**expo`` pair to 18 decimals."""
    shift = 18 + expo
    if shift >= 0:
        return price_raw * 10**shift
    return price_raw // 10 ** (-shift)


def _parse_prices(parsed: list[dict], feeds: dict[str, str]) -> dict[str, int]:
    """Map Hermes ``parsed`` items back to symbols; several symbols may share a feed."""
    symbols_by_feed: dict[str, list[str]] = {}
    for symbol, feed_id in feeds.items():
        symbols_by_feed.setdefault(feed_id.removeprefix("0x"), []).append(symbol)

    prices: dict[str, int] = {}
    for item in parsed:
        feed_id = str(item.get("id", "")).removeprefix("0x")
        price = item.get("price", {})
        price18 = _to_price18(int(price.get("price", 0)), int(price.get("expo", 0)))
        for symbol in symbols_by_feed.get(feed_id, []):
            prices[symbol] = price18
    return prices


class PythOracle:
    """Fetch prices from Pyth Network oracle as 18-decimal integers."""

    def __init__(
        self, config: PythConfig, assets: dict[str, AssetConfig] | None = None
    ) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self._symbols_by_address = {
            a.address: symbol for symbol, a in (assets or {}).items()
        }

    def _feeds_for(self, symbols: list[str] | None) -> dict[str, str]:
        if symbols is None:
            return dict(self.price_feeds)
        return {s: f for s, f in self.price_feeds.items() if s in symbols}

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, int]:
        """Fetch current prices from Pyth Network.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.

        Returns an empty mapping when Hermes cannot be reached.
        """
        feeds = self._feeds_for(symbols)
        if not feeds:
            return {}

        query = "&".join(f"ids[]={feed_id}" for feed_id in sorted(set(feeds.values())))
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        try:
            connector = aiohttp.TCPConnector(ssl=ssl_context)
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(f"{self.hermes_url}?{query}") as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return {}
                    data = await response.json()
        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return {}

        prices = _parse_prices(data.get("parsed", []), feeds)
        logger.debug("Pyth prices: %s", prices)
        return prices

    async def get_asset_price(self, asset: str) -> int:
        """Price of ``asset`` (an address or a feed symbol); ``0`` if unknown."""
        symbol = self._symbols_by_address.get(asset, asset)
        if symbol not in self.price_feeds:
            logger.warning("No Pyth feed configured for %s", asset)
            return 0
        prices = await self.fetch_prices([symbol])
        return prices.get(symbol, 0)
