"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from borrow_optimizer.chains import ManualChain
from borrow_optimizer.config import (
    AppConfig,
    AssetConfig,
    KeeperConfig,
    NotificationsConfig,
    PriceOracleConfig,
    PythConfig,
    RiskConfig,
    TelegramConfig,
    VenueAssetConfig,
    VenueConfig,
)
from borrow_optimizer.engine import Engine, build_engine
from borrow_optimizer.oracles import StaticPriceOracle

WAD = 10**18

GOVERNANCE = "0x00000000000000000000000000000000000000a1"
KEEPER = "0x00000000000000000000000000000000000000b2"
USER = "0x00000000000000000000000000000000000000c3"
OTHER_USER = "0x00000000000000000000000000000000000000c4"
STRANGER = "0x00000000000000000000000000000000000000d5"

USDC = "0x1000000000000000000000000000000000000001"
WETH = "0x2000000000000000000000000000000000000002"

ALPHA_PLATFORM_ADAPTER = "0x0000000000000000000000000000000000000a01"
ALPHA_CONVERTER = "0x0000000000000000000000000000000000000c01"
BETA_PLATFORM_ADAPTER = "0x0000000000000000000000000000000000000a02"
BETA_CONVERTER = "0x0000000000000000000000000000000000000c02"

WETH_PRICE = 2000 * WAD
USDC_PRICE = WAD
USDC_LIQUIDITY = 1_000_000 * 10**6

# one day of blocks on the sample chain
PERIOD_BLOCKS = 1000


def make_venue(
    name: str,
    platform_adapter: str,
    converter: str,
    usdc_borrow_rate18: int,
    debt_gap_required: bool = False,
) -> VenueConfig:
    """Venue lending USDC against WETH at ``usdc_borrow_rate18`` per block."""
    return VenueConfig(
        name=name,
        platform_adapter=platform_adapter,
        converter=converter,
        debt_gap_required=debt_gap_required,
        assets={
            "USDC": VenueAssetConfig(
                borrow_rate_per_block18=usdc_borrow_rate18,
                liquidation_threshold18=85 * 10**16,
                ltv18=80 * 10**16,
                liquidity=USDC_LIQUIDITY,
            ),
            "WETH": VenueAssetConfig(
                borrow_rate_per_block18=10**9,
                liquidation_threshold18=80 * 10**16,
                ltv18=75 * 10**16,
                liquidity=1000 * WAD,
            ),
        },
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_assets() -> dict[str, AssetConfig]:
    return {
        "USDC": AssetConfig(symbol="USDC", address=USDC, decimals=6),
        "WETH": AssetConfig(symbol="WETH", address=WETH, decimals=18),
    }


@pytest.fixture()
def sample_risk() -> RiskConfig:
    return RiskConfig(
        min_health_factor2=105,
        target_health_factor2=200,
        max_health_factor2=400,
        threshold_apr=10,
        threshold_count_blocks=100,
    )


@pytest.fixture()
def sample_keeper_config() -> KeeperConfig:
    return KeeperConfig(
        check_interval_minutes=5,
        max_count_to_check=50,
        max_count_to_return=10,
        period_blocks=PERIOD_BLOCKS,
        address=KEEPER,
    )


@pytest.fixture()
def alpha_venue_config() -> VenueConfig:
    return make_venue("alpha", ALPHA_PLATFORM_ADAPTER, ALPHA_CONVERTER, 10**9)


@pytest.fixture()
def beta_venue_config() -> VenueConfig:
    return make_venue("beta", BETA_PLATFORM_ADAPTER, BETA_CONVERTER, 2 * 10**9)


@pytest.fixture()
def sample_pyth_config() -> PythConfig:
    return PythConfig(
        hermes_url="https://hermes.pyth.network/v2/updates/price/latest",
        feeds={"WETH": "aaa111", "USDC": "ccc333"},
    )


@pytest.fixture()
def sample_app_config(
    sample_assets: dict[str, AssetConfig],
    sample_risk: RiskConfig,
    sample_keeper_config: KeeperConfig,
    alpha_venue_config: VenueConfig,
    beta_venue_config: VenueConfig,
    sample_pyth_config: PythConfig,
) -> AppConfig:
    return AppConfig(
        governance=GOVERNANCE,
        risk=sample_risk,
        keeper=sample_keeper_config,
        assets=sample_assets,
        venues={"alpha": alpha_venue_config, "beta": beta_venue_config},
        price_oracle=PriceOracleConfig(provider="static", pyth=sample_pyth_config),
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=False,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
        ),
    )


# ---------------------------------------------------------------------------
# Engine fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def oracle() -> StaticPriceOracle:
    return StaticPriceOracle({WETH: WETH_PRICE, USDC: USDC_PRICE})


@pytest.fixture()
def chain() -> ManualChain:
    return ManualChain(block=10_000)


@pytest.fixture()
def engine(
    sample_app_config: AppConfig, oracle: StaticPriceOracle, chain: ManualChain
) -> Engine:
    return build_engine(sample_app_config, oracle=oracle, chain=chain)


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    governance: "0x00000000000000000000000000000000000000a1"
    state_file: state.yaml
    risk:
      min_health_factor2: 110
      target_health_factor2: 200
      max_health_factor2: 400
      threshold_apr: 10
      threshold_count_blocks: 100
      rewards_factor18: 5e17
      target_health_factors2:
        WETH: 150
    keeper:
      address: "0x00000000000000000000000000000000000000b2"
      check_interval_minutes: 5
      period_blocks: 1000
    chain:
      rpc_endpoints: ["https://rpc.example.com"]
      rpc_timeout: 10
    assets:
      USDC: {address: "0x1000000000000000000000000000000000000001", decimals: 6}
      WETH: {address: "0x2000000000000000000000000000000000000002", decimals: 18}
    venues:
      alpha:
        platform_adapter: "0x0000000000000000000000000000000000000a01"
        converter: "0x0000000000000000000000000000000000000c01"
        assets:
          USDC:
            borrow_rate_per_block18: 1e9
            liquidation_threshold18: 0.85e18
            liquidity: 1_000_000_000_000
          WETH:
            borrow_rate_per_block18: 1000000000
            liquidation_threshold18: 800000000000000000
            liquidity: 1000000000000000000000
      beta:
        platform_adapter: "0x0000000000000000000000000000000000000a02"
        converter: "0x0000000000000000000000000000000000000c02"
        debt_gap_required: true
        assets:
          USDC: {borrow_rate_per_block18: 2000000000, liquidity: 1000000000000}
          WETH: {liquidity: 1000000000000000000000}
    price_oracle:
      provider: static
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {WETH: "aaa", USDC: "ccc"}
      static:
        WETH: 2000
        USDC: 1.0
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: 999
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


async def open_position(
    engine: Engine,
    converter: str,
    user: str = USER,
    collateral_amount: int = WAD,
    amount_to_borrow: int = 800 * 10**6,
) -> str:
    """Borrow USDC against WETH for ``user``; 1 WETH / 800 USDC is exactly the 2.0 target."""
    return await engine.converter.borrow(
        converter, WETH, collateral_amount, USDC, amount_to_borrow, user, user
    )
