"""Quotes conversion plans from static per-asset parameters."""
from __future__ import annotations

import logging
from dataclasses import replace

from ... import entry_kinds
from ...config import AssetConfig, VenueAssetConfig, VenueConfig
from ...errors import BorrowManagerOnly, IncorrectValue, WrongHealthFactor, ZeroPrice
from ...fixed_point import MAX_UINT, WAD, amount_in_borrow_asset36
from ...interfaces.chain import ChainClient
from ...interfaces.price_oracle import PriceOracle
from ...models import NULL_PLAN, ConversionPlan, EntryData, PoolAdapterConfig
from .pool_adapter import FixedRatePoolAdapter

logger = logging.getLogger(__name__)


class FixedRatePlatformAdapter:
    """A lending venue with fixed per-block rates and finite liquidity.

    Rates, thresholds and caps come from :class:`VenueConfig`. Borrowed and
    supplied totals are tracked per asset so that open positions consume the
    venue's capacity.
    """

    def __init__(
        self,
        config: VenueConfig,
        assets: dict[str, AssetConfig],
        oracle: PriceOracle,
        chain: ChainClient,
    ) -> None:
        self._config = config
        self._oracle = oracle
        self._chain = chain
        self._frozen = config.frozen
        self._paused = config.paused
        self._params: dict[str, VenueAssetConfig] = {}
        self._decimals: dict[str, int] = {}
        for symbol, params in config.assets.items():
            asset = assets[symbol]
            self._params[asset.address] = params
            self._decimals[asset.address] = asset.decimals
        self._borrowed: dict[str, int] = {}
        self._supplied: dict[str, int] = {}
        self._pool_adapters: dict[str, FixedRatePoolAdapter] = {}
        self._borrow_manager: object | None = None

    # ------------------------------------------------------------------
    # Identity and governance switches
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return self._config.name

    @property
    def address(self) -> str:
        return self._config.platform_adapter

    @property
    def converter(self) -> str:
        return self._config.converter

    @property
    def converters(self) -> tuple[str, ...]:
        return (self._config.converter,)

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def paused(self) -> bool:
        return self._paused

    @property
    def debt_gap_required(self) -> bool:
        return self._config.debt_gap_required

    def set_frozen(self, frozen: bool) -> None:
        self._frozen = frozen

    def set_paused(self, paused: bool) -> None:
        self._paused = paused

    def set_borrow_manager(self, borrow_manager: object) -> None:
        """Bind the venue to the borrow manager allowed to open positions on it."""
        self._borrow_manager = borrow_manager

    def set_asset_params(self, asset: str, **changes: int) -> None:
        """Change rates or caps of a supported asset, e.g. ``borrow_rate_per_block18``."""
        self._params[asset] = replace(self._params[asset], **changes)

    def supports(self, asset: str) -> bool:
        return asset in self._params

    def params(self, asset: str) -> VenueAssetConfig:
        return self._params[asset]

    def decimals(self, asset: str) -> int:
        return self._decimals[asset]

    # ------------------------------------------------------------------
    # Capacity bookkeeping (called by pool adapters)
    # ------------------------------------------------------------------

    def available_to_borrow(self, asset: str) -> int:
        return max(0, self._params[asset].liquidity - self._borrowed.get(asset, 0))

    def available_to_supply(self, asset: str) -> int:
        cap = self._params[asset].max_supply
        if cap == 0:
            return MAX_UINT
        return max(0, cap - self._supplied.get(asset, 0))

    def on_borrow(self, collateral_asset: str, collateral_amount: int, borrow_asset: str, amount: int) -> None:
        self._supplied[collateral_asset] = self._supplied.get(collateral_asset, 0) + collateral_amount
        self._borrowed[borrow_asset] = self._borrowed.get(borrow_asset, 0) + amount

    def on_repay(self, collateral_asset: str, collateral_amount: int, borrow_asset: str, amount: int) -> None:
        self._supplied[collateral_asset] = max(0, self._supplied.get(collateral_asset, 0) - collateral_amount)
        self._borrowed[borrow_asset] = max(0, self._borrowed.get(borrow_asset, 0) - amount)

    async def current_block(self) -> int:
        return await self._chain.get_block_number()

    async def prices(self, collateral_asset: str, borrow_asset: str) -> tuple[int, int]:
        price_collateral = await self._oracle.get_asset_price(collateral_asset)
        price_borrow = await self._oracle.get_asset_price(borrow_asset)
        if price_collateral == 0:
            raise ZeroPrice(collateral_asset)
        if price_borrow == 0:
            raise ZeroPrice(borrow_asset)
        return price_collateral, price_borrow

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_conversion_plan(
        self,
        collateral_asset: str,
        amount_in: int,
        borrow_asset: str,
        count_blocks: int,
        entry_data: EntryData,
        health_factor2: int,
    ) -> ConversionPlan:
        """Quote borrowing ``borrow_asset`` against ``collateral_asset``.

        Returns ``NULL_PLAN`` when the venue is frozen or paused, when the pair
        is not supported, or when there is no liquidity left.
        """
        if amount_in <= 0 or count_blocks <= 0:
            raise IncorrectValue("amount_in and count_blocks must be positive")
        if health_factor2 < 100:
            raise WrongHealthFactor(f"{health_factor2}")
        if self._frozen or self._paused:
            logger.debug("Venue %s is frozen or paused", self.name)
            return NULL_PLAN
        if (
            collateral_asset == borrow_asset
            or not self.supports(collateral_asset)
            or not self.supports(borrow_asset)
        ):
            return NULL_PLAN

        collateral_params = self._params[collateral_asset]
        borrow_params = self._params[borrow_asset]
        price_collateral, price_borrow = await self.prices(collateral_asset, borrow_asset)
        collateral_decimals = self._decimals[collateral_asset]
        pd = entry_kinds.PricesAndDecimals.from_decimals(
            price_collateral, price_borrow, collateral_decimals, self._decimals[borrow_asset]
        )
        hf18 = health_factor2 * 10**16
        lt18 = collateral_params.liquidation_threshold18

        collateral, borrow = entry_kinds.evaluate(entry_data, amount_in, hf18, lt18, pd)

        max_borrow = self.available_to_borrow(borrow_asset)
        max_supply = self.available_to_supply(collateral_asset)
        if borrow > max_borrow:
            borrow = max_borrow
            collateral = entry_kinds.exact_borrow_out_for_min_collateral_in(borrow, hf18, lt18, pd)
        if collateral > max_supply:
            collateral = max_supply
            borrow = min(
                max_borrow,
                entry_kinds.exact_collateral_in_for_max_borrow_out(collateral, hf18, lt18, pd),
            )
        if borrow == 0 or collateral == 0:
            logger.debug("Venue %s has no capacity for %s", self.name, borrow_asset)
            return NULL_PLAN

        borrow_cost36 = (
            borrow * borrow_params.borrow_rate_per_block18 * count_blocks * WAD // pd.rb10pow_dec
        )
        collateral_in_borrow36 = amount_in_borrow_asset36(
            collateral, price_collateral, price_borrow, collateral_decimals
        )
        supply_income36 = (
            collateral_in_borrow36 * collateral_params.supply_rate_per_block18 * count_blocks // WAD
        )
        rewards_amount36 = (
            collateral_in_borrow36 * collateral_params.rewards_rate_per_block18 * count_blocks // WAD
        )

        return ConversionPlan(
            converter=self.converter,
            collateral_amount=collateral,
            amount_to_borrow=borrow,
            max_amount_to_borrow=max_borrow,
            max_amount_to_supply=max_supply,
            ltv18=collateral_params.ltv18,
            liquidation_threshold18=lt18,
            borrow_cost36=borrow_cost36,
            supply_income36=supply_income36,
            rewards_amount36=rewards_amount36,
            amount_collateral_in_borrow_asset36=collateral_in_borrow36,
        )

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    async def create_pool_adapter(
        self, pool_adapter: str, config: PoolAdapterConfig, caller: object
    ) -> FixedRatePoolAdapter:
        if self._borrow_manager is None or caller is not self._borrow_manager:
            raise BorrowManagerOnly(self.name)
        if config.origin_converter != self.converter:
            raise IncorrectValue(f"converter {config.origin_converter} is not served by {self.name}")
        adapter = FixedRatePoolAdapter(pool_adapter, config, self)
        adapter.last_accrual_block = await self.current_block()
        self._pool_adapters[pool_adapter] = adapter
        return adapter
