"""Unit tests for Pyth oracle — price response parsing and error handling."""
from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from borrow_optimizer.config import AssetConfig, PythConfig
from borrow_optimizer.oracles.pyth import PythOracle, _parse_prices, _to_price18
from borrow_optimizer.oracles.static import StaticPriceOracle

from conftest import USDC, WETH

E18 = 10**18


@pytest.fixture()
def oracle() -> PythOracle:
    return PythOracle(
        PythConfig(
            hermes_url="https://hermes.example.com/v2/updates/price/latest",
            feeds={"WETH": "aaa111", "BTC": "bbb222", "USDC": "0xccc333"},
        ),
        {
            "WETH": AssetConfig(symbol="WETH", address=WETH, decimals=18),
            "USDC": AssetConfig(symbol="USDC", address=USDC, decimals=6),
        },
    )


def _make_pyth_response(items: list[dict]) -> dict:
    return {"parsed": items}


def _mock_session(status: int = 200, data: dict | None = None) -> AsyncMock:
    mock_response = AsyncMock()
    mock_response.status = status
    mock_response.json = AsyncMock(return_value=data or {})
    mock_response.__aenter__ = AsyncMock(return_value=mock_response)
    mock_response.__aexit__ = AsyncMock(return_value=None)

    mock_session = AsyncMock()
    mock_session.get = MagicMock(return_value=mock_response)
    mock_session.__aenter__ = AsyncMock(return_value=mock_session)
    mock_session.__aexit__ = AsyncMock(return_value=None)
    return mock_session


FULL_RESPONSE = _make_pyth_response(
    [
        {"id": "aaa111", "price": {"price": "200012345678", "expo": "-8"}},
        {"id": "bbb222", "price": {"price": "10000000000000", "expo": "-8"}},
        {"id": "ccc333", "price": {"price": "99990000", "expo": "-8"}},
    ]
)


class TestToPrice18:
    def test_negative_exponent(self) -> None:
        assert _to_price18(350000000, -8) == 35 * 10**17

    def test_exponent_below_eighteen_decimals(self) -> None:
        assert _to_price18(123, -20) == 1

    def test_positive_exponent(self) -> None:
        assert _to_price18(5, 2) == 500 * E18


class TestParsePrices:
    def test_shared_feed_fills_every_symbol(self) -> None:
        parsed = [{"id": "aaa111", "price": {"price": "100000000", "expo": "-8"}}]
        prices = _parse_prices(parsed, {"WETH": "0xaaa111", "ETH": "aaa111"})
        assert prices == {"WETH": E18, "ETH": E18}

    def test_unknown_feed_ignored(self) -> None:
        parsed = [{"id": "zzz", "price": {"price": "1", "expo": "0"}}]
        assert _parse_prices(parsed, {"WETH": "aaa111"}) == {}


class TestPythOracleFetchPrices:
    @pytest.mark.asyncio
    async def test_parses_response_correctly(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(data=FULL_RESPONSE)

        with patch("borrow_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("borrow_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices["WETH"] == 200012345678 * 10**10
        assert prices["BTC"] == 100000 * E18
        # feed ids configured with a 0x prefix match the bare ids Hermes returns
        assert prices["USDC"] == 9999 * 10**14

    @pytest.mark.asyncio
    async def test_handles_http_error(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(status=500)

        with patch("borrow_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("borrow_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_handles_network_error(self, oracle: PythOracle) -> None:
        mock_session = AsyncMock()
        mock_session.get = MagicMock(side_effect=ConnectionError("timeout"))
        mock_session.__aenter__ = AsyncMock(return_value=mock_session)
        mock_session.__aexit__ = AsyncMock(return_value=None)

        with patch("borrow_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("borrow_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices()

        assert prices == {}

    @pytest.mark.asyncio
    async def test_symbol_filter(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(data=FULL_RESPONSE)

        with patch("borrow_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("borrow_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                prices = await oracle.fetch_prices(symbols=["WETH"])

        assert "WETH" in prices
        # BTC and USDC not requested
        assert "BTC" not in prices
        url = mock_session.get.call_args[0][0]
        assert "ids[]=aaa111" in url
        assert "bbb222" not in url

    @pytest.mark.asyncio
    async def test_empty_feeds_returns_empty(self) -> None:
        oracle = PythOracle(PythConfig(hermes_url="https://x.com", feeds={}))
        prices = await oracle.fetch_prices()
        assert prices == {}


class TestPythOracleGetAssetPrice:
    @pytest.mark.asyncio
    async def test_by_address(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(data=FULL_RESPONSE)

        with patch("borrow_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("borrow_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                price = await oracle.get_asset_price(WETH)

        assert price == 200012345678 * 10**10

    @pytest.mark.asyncio
    async def test_unknown_asset_is_zero(self, oracle: PythOracle) -> None:
        assert await oracle.get_asset_price("0xdead") == 0

    @pytest.mark.asyncio
    async def test_failed_fetch_is_zero(self, oracle: PythOracle) -> None:
        mock_session = _mock_session(status=503)

        with patch("borrow_optimizer.oracles.pyth.aiohttp.ClientSession", return_value=mock_session):
            with patch("borrow_optimizer.oracles.pyth.aiohttp.TCPConnector"):
                price = await oracle.get_asset_price(USDC)

        assert price == 0


class TestStaticPriceOracle:
    @pytest.mark.asyncio
    async def test_from_usd(self) -> None:
        oracle = StaticPriceOracle.from_usd({WETH: 2000.5, USDC: 1.0})
        assert await oracle.get_asset_price(WETH) == 20005 * 10**17
        assert await oracle.get_asset_price(USDC) == E18

    @pytest.mark.asyncio
    async def test_set_price_and_unknown(self) -> None:
        oracle = StaticPriceOracle()
        assert await oracle.get_asset_price(WETH) == 0
        oracle.set_price(WETH, 3 * E18)
        assert await oracle.get_asset_price(WETH) == 3 * E18
