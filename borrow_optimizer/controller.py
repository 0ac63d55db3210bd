"""Roles and risk configuration, changed only by governance."""
from __future__ import annotations

import logging
from dataclasses import replace
from typing import Sequence

from .config import RiskConfig
from .errors import (
    GovernanceOnly,
    IncorrectValue,
    KeeperOnly,
    WrongHealthFactor,
    WrongLengths,
    ZeroAddress,
)
from .fixed_point import DEBT_GAP_DENOMINATOR, WAD
from .models import is_zero_address

logger = logging.getLogger(__name__)


class Controller:
    """Holds the governance and keeper roles and the current :class:`RiskConfig`.

    ``RiskConfig`` is immutable; every setter swaps in a new instance, so a
    ranking or scan that already read ``risk`` keeps a consistent view.
    """

    def __init__(self, governance: str, keeper: str = "", risk: RiskConfig | None = None) -> None:
        if is_zero_address(governance):
            raise ZeroAddress("governance")
        self._governance = governance
        self._keeper = keeper
        self._risk = risk or RiskConfig()
        self._frozen: set[str] = set()

    @property
    def governance(self) -> str:
        return self._governance

    @property
    def keeper(self) -> str:
        return self._keeper

    @property
    def risk(self) -> RiskConfig:
        return self._risk

    @property
    def frozen_platform_adapters(self) -> frozenset[str]:
        return frozenset(self._frozen)

    # ------------------------------------------------------------------
    # Role checks
    # ------------------------------------------------------------------

    def require_governance(self, caller: str) -> None:
        if caller != self._governance:
            raise GovernanceOnly(caller)

    def require_keeper(self, caller: str) -> None:
        if is_zero_address(self._keeper) or caller != self._keeper:
            raise KeeperOnly(caller)

    def is_frozen(self, platform_adapter: str) -> bool:
        return platform_adapter in self._frozen

    # ------------------------------------------------------------------
    # Roles
    # ------------------------------------------------------------------

    def set_governance(self, new_governance: str, caller: str) -> None:
        self.require_governance(caller)
        if is_zero_address(new_governance):
            raise ZeroAddress("governance")
        logger.info("Governance changed from %s to %s", self._governance, new_governance)
        self._governance = new_governance

    def set_keeper(self, keeper: str, caller: str) -> None:
        self.require_governance(caller)
        if is_zero_address(keeper):
            raise ZeroAddress("keeper")
        logger.info("Keeper set to %s", keeper)
        self._keeper = keeper

    # ------------------------------------------------------------------
    # Health factors
    # ------------------------------------------------------------------

    def set_min_health_factor2(self, value: int, caller: str) -> None:
        self.require_governance(caller)
        if value < 100 or value > self._risk.target_health_factor2:
            raise WrongHealthFactor(f"min {value}")
        self._update(min_health_factor2=value)

    def set_target_health_factor2(self, value: int, caller: str) -> None:
        self.require_governance(caller)
        if value < self._risk.min_health_factor2 or value > self._risk.max_health_factor2:
            raise WrongHealthFactor(f"target {value}")
        self._update(target_health_factor2=value)

    def set_max_health_factor2(self, value: int, caller: str) -> None:
        self.require_governance(caller)
        if value < self._risk.target_health_factor2:
            raise WrongHealthFactor(f"max {value}")
        self._update(max_health_factor2=value)

    def set_target_health_factors2(
        self, assets: Sequence[str], values: Sequence[int], caller: str
    ) -> None:
        """Per-asset targets; ``0`` removes the override for that asset."""
        self.require_governance(caller)
        if len(assets) != len(values):
            raise WrongLengths(f"{len(assets)} assets, {len(values)} values")
        targets = dict(self._risk.target_health_factors2)
        for asset, value in zip(assets, values):
            if is_zero_address(asset):
                raise ZeroAddress("asset")
            if value == 0:
                targets.pop(asset, None)
                continue
            if value < self._risk.min_health_factor2:
                raise WrongHealthFactor(f"target {value} for {asset}")
            targets[asset] = value
        self._update(target_health_factors2=targets)

    # ------------------------------------------------------------------
    # Thresholds
    # ------------------------------------------------------------------

    def set_threshold_apr(self, value: int, caller: str) -> None:
        """Percent by which another venue must be cheaper to trigger a migration."""
        self.require_governance(caller)
        if not 0 <= value < 100:
            raise IncorrectValue(f"threshold apr {value}")
        self._update(threshold_apr=value)

    def set_threshold_count_blocks(self, value: int, caller: str) -> None:
        self.require_governance(caller)
        if value < 0:
            raise IncorrectValue(f"threshold count blocks {value}")
        self._update(threshold_count_blocks=value)

    def set_rewards_factor(self, value18: int, caller: str) -> None:
        self.require_governance(caller)
        if not 0 <= value18 <= WAD:
            raise IncorrectValue(f"rewards factor {value18}")
        self._update(rewards_factor18=value18)

    def set_blocks_per_day(self, value: int, caller: str) -> None:
        self.require_governance(caller)
        if value <= 0:
            raise IncorrectValue(f"blocks per day {value}")
        self._update(blocks_per_day=value)

    def set_debt_gap(self, value: int, caller: str) -> None:
        self.require_governance(caller)
        if not 0 <= value < DEBT_GAP_DENOMINATOR:
            raise IncorrectValue(f"debt gap {value}")
        self._update(debt_gap=value)

    def set_frozen(self, platform_adapter: str, frozen: bool, caller: str) -> None:
        """Exclude a venue from new conversions; its open positions stay as they are."""
        self.require_governance(caller)
        if is_zero_address(platform_adapter):
            raise ZeroAddress("platform adapter")
        if frozen:
            self._frozen.add(platform_adapter)
        else:
            self._frozen.discard(platform_adapter)
        logger.info("Platform adapter %s frozen=%s", platform_adapter, frozen)

    def _update(self, **changes: object) -> None:
        self._risk = replace(self._risk, **changes)
        logger.info("Risk config updated: %s", changes)

    def restore(self, risk: RiskConfig, frozen: set[str] | frozenset[str]) -> None:
        """Reinstate a saved configuration without role checks (startup only)."""
        self._risk = risk
        self._frozen = set(frozen)
