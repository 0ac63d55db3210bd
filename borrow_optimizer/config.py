"""Configuration loader: reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskConfig:
    """Global risk thresholds.

    Health factors have 2 decimals (``200`` means 2.0). ``threshold_apr`` is
    a percent, ``rebalance_*`` and ``debt_gap`` are parts of 100_000.
    """

    min_health_factor2: int = 105
    target_health_factor2: int = 200
    max_health_factor2: int = 400
    threshold_apr: int = 0
    threshold_count_blocks: int = 0
    rewards_factor18: int = 9 * 10**17
    rebalance_too_healthy: int = 10_000
    rebalance_unhealthy: int = 50_000
    blocks_per_day: int = 41_142
    apr_tolerance18: int = 0
    debt_gap: int = 1_000
    target_health_factors2: dict[str, int] = field(default_factory=dict)

    def target_health_factor2_for(self, asset: str) -> int:
        """Per-asset target when configured, global target otherwise."""
        return self.target_health_factors2.get(asset) or self.target_health_factor2


@dataclass(frozen=True)
class KeeperConfig:
    check_interval_minutes: int = 15
    max_count_to_check: int = 50
    max_count_to_return: int = 10
    period_blocks: int = 41_142
    address: str = ""


@dataclass(frozen=True)
class ChainConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30


@dataclass(frozen=True)
class AssetConfig:
    symbol: str = ""
    address: str = ""
    decimals: int = 18


@dataclass(frozen=True)
class VenueAssetConfig:
    """Parameters of one asset on the fixed-rate venue.

    Rates are 18-decimal fractions per block. ``liquidity`` caps borrowing and
    ``max_supply`` caps supplying, both in native units; ``0`` means unlimited
    for ``max_supply``.
    """

    borrow_rate_per_block18: int = 0
    supply_rate_per_block18: int = 0
    rewards_rate_per_block18: int = 0
    liquidation_threshold18: int = 85 * 10**16
    ltv18: int = 80 * 10**16
    liquidity: int = 0
    max_supply: int = 0


@dataclass(frozen=True)
class VenueConfig:
    name: str = ""
    platform_adapter: str = ""
    converter: str = ""
    frozen: bool = False
    paused: bool = False
    debt_gap_required: bool = False
    assets: dict[str, VenueAssetConfig] = field(default_factory=dict)


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)
    static_prices: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass(frozen=True)
class AppConfig:
    governance: str = ""
    risk: RiskConfig = field(default_factory=RiskConfig)
    keeper: KeeperConfig = field(default_factory=KeeperConfig)
    chain: ChainConfig = field(default_factory=ChainConfig)
    assets: dict[str, AssetConfig] = field(default_factory=dict)
    venues: dict[str, VenueConfig] = field(default_factory=dict)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)
    state_file: str = ""

    def asset_by_address(self, address: str) -> AssetConfig | None:
        for asset in self.assets.values():
            if asset.address == address:
                return asset
        return None


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _to_int(value: Any, default: int = 0) -> int:
    """Accept ints, numeric strings and scientific notation (``2e16``)."""
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    text = str(value).replace("_", "").strip()
    try:
        return int(text)
    except ValueError:
        mantissa, _, exponent = text.lower().partition("e")
        whole, _, frac = mantissa.partition(".")
        exp = int(exponent or 0) - len(frac)
        digits = int((whole or "0") + frac)
        return digits * 10**exp if exp >= 0 else digits // 10 ** (-exp)


def _build_risk(raw: dict[str, Any], assets: dict[str, AssetConfig]) -> RiskConfig:
    """Per-asset targets may be keyed by symbol; they are stored by address."""
    defaults = RiskConfig()
    return RiskConfig(
        min_health_factor2=_to_int(raw.get("min_health_factor2"), defaults.min_health_factor2),
        target_health_factor2=_to_int(
            raw.get("target_health_factor2"), defaults.target_health_factor2
        ),
        max_health_factor2=_to_int(raw.get("max_health_factor2"), defaults.max_health_factor2),
        threshold_apr=_to_int(raw.get("threshold_apr"), defaults.threshold_apr),
        threshold_count_blocks=_to_int(
            raw.get("threshold_count_blocks"), defaults.threshold_count_blocks
        ),
        rewards_factor18=_to_int(raw.get("rewards_factor18"), defaults.rewards_factor18),
        rebalance_too_healthy=_to_int(
            raw.get("rebalance_too_healthy"), defaults.rebalance_too_healthy
        ),
        rebalance_unhealthy=_to_int(raw.get("rebalance_unhealthy"), defaults.rebalance_unhealthy),
        blocks_per_day=_to_int(raw.get("blocks_per_day"), defaults.blocks_per_day),
        apr_tolerance18=_to_int(raw.get("apr_tolerance18"), defaults.apr_tolerance18),
        debt_gap=_to_int(raw.get("debt_gap"), defaults.debt_gap),
        target_health_factors2={
            (assets[k].address if k in assets else k): _to_int(v)
            for k, v in raw.get("target_health_factors2", {}).items()
        },
    )


def _build_keeper(raw: dict[str, Any]) -> KeeperConfig:
    return KeeperConfig(
        check_interval_minutes=int(raw.get("check_interval_minutes", 15)),
        max_count_to_check=int(raw.get("max_count_to_check", 50)),
        max_count_to_return=int(raw.get("max_count_to_return", 10)),
        period_blocks=_to_int(raw.get("period_blocks"), 41_142),
        address=raw.get("address", ""),
    )


def _build_chain(raw: dict[str, Any]) -> ChainConfig:
    return ChainConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
    )


def _build_assets(raw: dict[str, Any]) -> dict[str, AssetConfig]:
    assets: dict[str, AssetConfig] = {}
    for symbol, cfg in raw.items():
        assets[symbol] = AssetConfig(
            symbol=symbol,
            address=cfg.get("address", ""),
            decimals=int(cfg.get("decimals", 18)),
        )
    return assets


def _build_venue_asset(raw: dict[str, Any]) -> VenueAssetConfig:
    defaults = VenueAssetConfig()
    return VenueAssetConfig(
        borrow_rate_per_block18=_to_int(raw.get("borrow_rate_per_block18")),
        supply_rate_per_block18=_to_int(raw.get("supply_rate_per_block18")),
        rewards_rate_per_block18=_to_int(raw.get("rewards_rate_per_block18")),
        liquidation_threshold18=_to_int(
            raw.get("liquidation_threshold18"), defaults.liquidation_threshold18
        ),
        ltv18=_to_int(raw.get("ltv18"), defaults.ltv18),
        liquidity=_to_int(raw.get("liquidity")),
        max_supply=_to_int(raw.get("max_supply")),
    )


def _build_venues(raw: dict[str, Any]) -> dict[str, VenueConfig]:
    venues: dict[str, VenueConfig] = {}
    for name, cfg in raw.items():
        venues[name] = VenueConfig(
            name=name,
            platform_adapter=cfg.get("platform_adapter", ""),
            converter=cfg.get("converter", ""),
            frozen=bool(cfg.get("frozen", False)),
            paused=bool(cfg.get("paused", False)),
            debt_gap_required=bool(cfg.get("debt_gap_required", False)),
            assets={
                symbol: _build_venue_asset(asset_raw or {})
                for symbol, asset_raw in cfg.get("assets", {}).items()
            },
        )
    return venues


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
        static_prices={k: float(v) for k, v in raw.get("static", {}).items()},
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    assets = _build_assets(raw.get("assets", {}))
    cfg = AppConfig(
        governance=raw.get("governance", ""),
        risk=_build_risk(raw.get("risk", {}), assets),
        keeper=_build_keeper(raw.get("keeper", {})),
        chain=_build_chain(raw.get("chain", {})),
        assets=assets,
        venues=_build_venues(raw.get("venues", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        notifications=_build_notifications(raw.get("notifications", {})),
        state_file=raw.get("state_file", ""),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.governance:
        raise ValueError("A governance address must be configured")
    if cfg.price_oracle.provider not in ("pyth", "static"):
        raise ValueError(f"Unknown price oracle provider '{cfg.price_oracle.provider}'")

    risk = cfg.risk
    if risk.min_health_factor2 < 100:
        raise ValueError("min_health_factor2 must be at least 100 (1.0)")
    if risk.target_health_factor2 < risk.min_health_factor2:
        raise ValueError("target_health_factor2 must not be below min_health_factor2")
    if risk.max_health_factor2 < risk.target_health_factor2:
        raise ValueError("max_health_factor2 must not be below target_health_factor2")
    known = {asset.address for asset in cfg.assets.values()}
    for address, value in risk.target_health_factors2.items():
        if address not in known:
            raise ValueError(f"Target health factor for unknown asset '{address}'")
        if value < risk.min_health_factor2:
            raise ValueError(f"Target health factor of '{address}' is below the minimum")

    if not cfg.venues:
        raise ValueError("At least one venue must be configured")

    for asset in cfg.assets.values():
        if not asset.address:
            raise ValueError(f"Asset '{asset.symbol}' has no address")

    converters: set[str] = set()
    for venue in cfg.venues.values():
        if not venue.platform_adapter or not venue.converter:
            raise ValueError(f"Venue '{venue.name}' needs platform_adapter and converter")
        if venue.converter in converters:
            raise ValueError(f"Converter '{venue.converter}' is used by several venues")
        converters.add(venue.converter)
        for symbol in venue.assets:
            if symbol not in cfg.assets:
                raise ValueError(
                    f"Venue '{venue.name}' references unknown asset '{symbol}'"
                )
