"""Venue registry, strategy ranking and the pool adapter registry."""
from __future__ import annotations

import hashlib
import logging
from dataclasses import replace
from typing import TYPE_CHECKING, Sequence

from ..controller import Controller
from ..errors import (
    ConverterError,
    ConverterNotFound,
    IncorrectValue,
    OnePlatformAdapterPerConverter,
    PlatformAdapterIsInUse,
    PlatformAdapterNotFound,
    PositionNotRegistered,
    WrongLengths,
    ZeroAddress,
    ZeroPrice,
)
from ..fixed_point import (
    REBALANCE_DENOMINATOR,
    calc_apr18,
    collateral_amount_to_fix,
    health_factor2_to_18,
)
from ..interfaces.platform_adapter import PlatformAdapter
from ..interfaces.pool_adapter import PoolAdapter
from ..models import (
    ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2,
    ENTRY_KIND_EXACT_COLLATERAL_IN_FOR_MAX_BORROW_OUT_0,
    ENTRY_KIND_EXACT_PROPORTION_1,
    ZERO_ADDRESS,
    BorrowStrategy,
    ConversionPlan,
    EntryData,
    PoolAdapterConfig,
    PoolAdapterState,
    is_zero_address,
)

if TYPE_CHECKING:
    from .debt_monitor import DebtMonitor

logger = logging.getLogger(__name__)

_KNOWN_KINDS = (
    ENTRY_KIND_EXACT_COLLATERAL_IN_FOR_MAX_BORROW_OUT_0,
    ENTRY_KIND_EXACT_PROPORTION_1,
    ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2,
)

PositionKey = tuple[str, str, str, str]


def _canonical_pair(asset_a: str, asset_b: str) -> tuple[str, str]:
    return (asset_a, asset_b) if asset_a < asset_b else (asset_b, asset_a)


class BorrowManager:
    """Knows every venue, the pairs it serves and the positions opened on it."""

    def __init__(self, controller: Controller) -> None:
        self._controller = controller
        self._debt_monitor: DebtMonitor | None = None
        # insertion order is registration order, used as the last tie-break
        self._platform_adapters: dict[str, PlatformAdapter] = {}
        self._converter_to_platform: dict[str, str] = {}
        self._pairs: dict[tuple[str, str], list[str]] = {}
        self._pool_adapters: dict[str, PoolAdapter] = {}
        self._active: dict[PositionKey, str] = {}
        self._nonce = 0

    def set_debt_monitor(self, debt_monitor: DebtMonitor) -> None:
        self._debt_monitor = debt_monitor

    @property
    def controller(self) -> Controller:
        return self._controller

    # ------------------------------------------------------------------
    # Platform adapters and asset pairs
    # ------------------------------------------------------------------

    def add_asset_pairs(
        self,
        platform_adapter: PlatformAdapter,
        left_assets: Sequence[str],
        right_assets: Sequence[str],
        caller: str,
    ) -> None:
        """Allow ``platform_adapter`` to be used for each ``(left[i], right[i])`` pair."""
        self._controller.require_governance(caller)
        if len(left_assets) != len(right_assets):
            raise WrongLengths(f"{len(left_assets)} != {len(right_assets)}")
        address = platform_adapter.address
        if is_zero_address(address):
            raise ZeroAddress("platform adapter")
        for left, right in zip(left_assets, right_assets):
            if is_zero_address(left) or is_zero_address(right):
                raise ZeroAddress("asset")

        if address not in self._platform_adapters:
            for converter in platform_adapter.converters:
                registered = self._converter_to_platform.get(converter)
                if registered is not None and registered != address:
                    raise OnePlatformAdapterPerConverter(converter)
            for converter in platform_adapter.converters:
                self._converter_to_platform[converter] = address
            self._platform_adapters[address] = platform_adapter
            platform_adapter.set_borrow_manager(self)
            logger.info("Platform adapter %s registered", address)

        for left, right in zip(left_assets, right_assets):
            adapters = self._pairs.setdefault(_canonical_pair(left, right), [])
            if address not in adapters:
                adapters.append(address)

    def remove_asset_pairs(
        self,
        platform_adapter: str,
        left_assets: Sequence[str],
        right_assets: Sequence[str],
        caller: str,
    ) -> None:
        """Forget pairs; the adapter itself is dropped once it serves no pair.

        Dropping an adapter is refused while any of its converters still has
        open positions.
        """
        self._controller.require_governance(caller)
        if len(left_assets) != len(right_assets):
            raise WrongLengths(f"{len(left_assets)} != {len(right_assets)}")
        adapter = self._platform_adapters.get(platform_adapter)
        if adapter is None:
            raise PlatformAdapterNotFound(platform_adapter)

        removed = {_canonical_pair(left, right) for left, right in zip(left_assets, right_assets)}
        remaining = {
            pair: [a for a in adapters if pair not in removed or a != platform_adapter]
            for pair, adapters in self._pairs.items()
        }
        still_used = any(platform_adapter in adapters for adapters in remaining.values())
        if not still_used and self._debt_monitor is not None:
            for converter in adapter.converters:
                if self._debt_monitor.is_converter_in_use(converter):
                    raise PlatformAdapterIsInUse(platform_adapter)

        self._pairs = {pair: adapters for pair, adapters in remaining.items() if adapters}
        if not still_used:
            for converter in adapter.converters:
                self._converter_to_platform.pop(converter, None)
            del self._platform_adapters[platform_adapter]
            logger.info("Platform adapter %s unregistered", platform_adapter)

    def get_platform_adapters(self, collateral_asset: str, borrow_asset: str) -> list[PlatformAdapter]:
        """Adapters registered for the pair, in registration order."""
        addresses = self._pairs.get(_canonical_pair(collateral_asset, borrow_asset), [])
        return [self._platform_adapters[a] for a in addresses]

    def get_platform_adapter(self, converter: str) -> PlatformAdapter:
        address = self._converter_to_platform.get(converter)
        if address is None:
            raise ConverterNotFound(converter)
        return self._platform_adapters[address]

    @property
    def platform_adapters(self) -> tuple[PlatformAdapter, ...]:
        return tuple(self._platform_adapters.values())

    def asset_pairs(self) -> dict[tuple[str, str], tuple[str, ...]]:
        return {pair: tuple(adapters) for pair, adapters in self._pairs.items()}

    def is_frozen(self, platform_adapter: PlatformAdapter) -> bool:
        return platform_adapter.frozen or self._controller.is_frozen(platform_adapter.address)

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    async def find_strategies(
        self,
        entry_data: EntryData | Sequence[int] | None,
        collateral_asset: str,
        amount_in: int,
        borrow_asset: str,
        count_blocks: int,
        user: str | None = None,
    ) -> list[BorrowStrategy]:
        """Rank every available venue for the conversion, best first.

        Venues where ``user`` already has an open position come first
        (lowest health factor first) with a plan that also repairs that
        position. The others follow by ascending apr, then larger amount to
        borrow, then registration order.
        """
        if is_zero_address(collateral_asset) or is_zero_address(borrow_asset):
            raise ZeroAddress("asset")
        if amount_in <= 0 or count_blocks <= 0:
            raise IncorrectValue("amount_in and count_blocks must be positive")
        entry = EntryData.decode(entry_data)
        if entry.kind not in _KNOWN_KINDS:
            raise IncorrectValue(f"unknown entry kind {entry.kind}")

        risk = self._controller.risk
        target_hf2 = risk.target_health_factor2_for(collateral_asset)
        existing_positions = await self._existing_positions(user, collateral_asset, borrow_asset)

        existing: list[BorrowStrategy] = []
        candidates: list[tuple[int, BorrowStrategy]] = []
        for index, adapter in enumerate(self.get_platform_adapters(collateral_asset, borrow_asset)):
            if self.is_frozen(adapter):
                logger.debug("Skipping frozen platform adapter %s", adapter.address)
                continue
            pool_adapter = next(
                (p for c, p in existing_positions.items() if c in adapter.converters), None
            )
            try:
                if pool_adapter is not None:
                    strategy = await self._plan_with_rebalancing(
                        adapter, pool_adapter, entry, collateral_asset, amount_in,
                        borrow_asset, count_blocks, target_hf2,
                    )
                else:
                    plan = await adapter.get_conversion_plan(
                        collateral_asset, amount_in, borrow_asset, count_blocks, entry, target_hf2
                    )
                    strategy = self._to_strategy(plan)
            except ZeroPrice:
                raise
            except ConverterError as e:
                logger.warning("Platform adapter %s skipped: %s", adapter.address, e)
                continue
            except Exception as e:
                logger.warning("Platform adapter %s failed to quote: %s", adapter.address, e)
                continue

            if strategy is None:
                continue
            if strategy.existing:
                existing.append(strategy)
            else:
                candidates.append((index, strategy))

        existing.sort(key=lambda s: s.health_factor18)
        candidates.sort(key=lambda item: (item[1].apr18, -item[1].amount_to_borrow, item[0]))
        ranked = existing + [s for _, s in candidates]
        if ranked:
            logger.info(
                "Ranked %d strategies for %s -> %s, best %s (apr18=%s)",
                len(ranked), collateral_asset, borrow_asset, ranked[0].converter, ranked[0].apr18,
            )
        return ranked

    def _to_strategy(
        self,
        plan: ConversionPlan,
        health_factor18: int = 0,
        existing: bool = False,
    ) -> BorrowStrategy | None:
        if not plan.is_available or plan.amount_to_borrow == 0 or plan.collateral_amount <= 0:
            return None
        apr18 = calc_apr18(
            plan.borrow_cost36,
            plan.supply_income36,
            plan.rewards_amount36,
            plan.amount_collateral_in_borrow_asset36,
            self._controller.risk.rewards_factor18,
        )
        return BorrowStrategy(
            plan=plan,
            converter=plan.converter,
            collateral_amount=plan.collateral_amount,
            amount_to_borrow=plan.amount_to_borrow,
            apr18=apr18,
            health_factor18=health_factor18,
            existing=existing,
        )

    async def _existing_positions(
        self, user: str | None, collateral_asset: str, borrow_asset: str
    ) -> dict[str, PoolAdapter]:
        """Open positions of ``user`` for the pair keyed by converter."""
        if user is None or is_zero_address(user) or self._debt_monitor is None:
            return {}
        positions: dict[str, PoolAdapter] = {}
        for address in self._debt_monitor.get_positions(user, collateral_asset, borrow_asset):
            pool_adapter = self._pool_adapters[address]
            positions.setdefault(pool_adapter.config().origin_converter, pool_adapter)
        return positions

    async def _plan_with_rebalancing(
        self,
        platform_adapter: PlatformAdapter,
        pool_adapter: PoolAdapter,
        entry: EntryData,
        collateral_asset: str,
        amount_in: int,
        borrow_asset: str,
        count_blocks: int,
        target_hf2: int,
    ) -> BorrowStrategy | None:
        """Quote a venue where the user already has a debt.

        The new collateral is shifted by the amount that brings the existing
        position to the target health factor, limited to
        ``rebalance_unhealthy`` (adding) or ``rebalance_too_healthy``
        (releasing) parts of 100_000.
        """
        status = await pool_adapter.get_status()
        health_factor18 = status.health_factor18
        fix = 0
        if status.opened and status.amount_to_pay > 0 and health_factor18 > 0:
            fix = collateral_amount_to_fix(
                status.collateral_amount, health_factor18, health_factor2_to_18(target_hf2)
            )

        if entry.kind == ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2:
            plan = await platform_adapter.get_conversion_plan(
                collateral_asset, amount_in, borrow_asset, count_blocks, entry, target_hf2
            )
            if not plan.is_available:
                return None
            fix = self._clamp_fix(fix, plan.collateral_amount)
        else:
            fix = self._clamp_fix(fix, amount_in)
            plan = await platform_adapter.get_conversion_plan(
                collateral_asset, amount_in - fix, borrow_asset, count_blocks, entry, target_hf2
            )
            if not plan.is_available:
                return None

        plan = replace(plan, collateral_amount=plan.collateral_amount + fix)
        logger.debug(
            "Existing position %s: hf18=%s, collateral fix %s",
            pool_adapter.address, health_factor18, fix,
        )
        return self._to_strategy(plan, health_factor18=health_factor18, existing=True)

    def _clamp_fix(self, fix: int, base_amount: int) -> int:
        risk = self._controller.risk
        if fix > 0:
            return min(fix, base_amount * risk.rebalance_unhealthy // REBALANCE_DENOMINATOR)
        if fix < 0:
            return max(fix, -(base_amount * risk.rebalance_too_healthy // REBALANCE_DENOMINATOR))
        return 0

    # ------------------------------------------------------------------
    # Pool adapters
    # ------------------------------------------------------------------

    async def register_pool_adapter(
        self, converter: str, user: str, collateral_asset: str, borrow_asset: str
    ) -> str:
        """Return the pool adapter for the tuple, creating it on first use."""
        for value, name in (
            (converter, "converter"),
            (user, "user"),
            (collateral_asset, "collateral asset"),
            (borrow_asset, "borrow asset"),
        ):
            if is_zero_address(value):
                raise ZeroAddress(name)
        key = (converter, user, collateral_asset, borrow_asset)
        existing = self._active.get(key)
        if existing is not None:
            return existing

        platform_adapter = self.get_platform_adapter(converter)
        address = self._new_address(key)
        pool_adapter = await platform_adapter.create_pool_adapter(
            address, PoolAdapterConfig(converter, user, collateral_asset, borrow_asset), self
        )
        self._pool_adapters[address] = pool_adapter
        self._active[key] = address
        logger.info("Pool adapter %s created for %s", address, key)
        return address

    def _new_address(self, key: PositionKey) -> str:
        # restored adapters keep their saved addresses, so the nonce may hit one
        while True:
            self._nonce += 1
            digest = hashlib.sha256(f"{':'.join(key)}:{self._nonce}".encode()).hexdigest()
            address = "0x" + digest[:40]
            if address not in self._pool_adapters:
                return address

    async def restore_pool_adapter(
        self, pool_adapter: str, config: PoolAdapterConfig, state: PoolAdapterState
    ) -> PoolAdapter:
        """Recreate a saved position under its old address.

        The venue serving ``config.origin_converter`` must be registered,
        otherwise ``ConverterNotFound`` is raised.
        """
        if pool_adapter in self._pool_adapters:
            raise IncorrectValue(f"pool adapter {pool_adapter} already exists")
        key = (config.origin_converter, config.user, config.collateral_asset, config.borrow_asset)
        platform_adapter = self.get_platform_adapter(config.origin_converter)
        adapter = await platform_adapter.create_pool_adapter(pool_adapter, config, self)
        adapter.restore_state(state)
        self._pool_adapters[pool_adapter] = adapter
        self._active[key] = pool_adapter
        logger.info("Pool adapter %s restored for %s", pool_adapter, key)
        return adapter

    def get_pool_adapter(
        self, converter: str, user: str, collateral_asset: str, borrow_asset: str
    ) -> str:
        """Active pool adapter for the tuple or ``ZERO_ADDRESS``."""
        return self._active.get((converter, user, collateral_asset, borrow_asset), ZERO_ADDRESS)

    def is_pool_adapter(self, pool_adapter: str) -> bool:
        return pool_adapter in self._pool_adapters

    def pool_adapter(self, pool_adapter: str) -> PoolAdapter:
        try:
            return self._pool_adapters[pool_adapter]
        except KeyError:
            raise PositionNotRegistered(pool_adapter) from None

    def mark_pool_adapter_as_dirty(self, pool_adapter: str) -> None:
        """Stop reusing ``pool_adapter``; the next borrow for its tuple gets a new one."""
        cfg = self.pool_adapter(pool_adapter).config()
        key = (cfg.origin_converter, cfg.user, cfg.collateral_asset, cfg.borrow_asset)
        if self._active.get(key) == pool_adapter:
            del self._active[key]
            logger.info("Pool adapter %s marked as dirty", pool_adapter)

    def unregister_pool_adapter(self, pool_adapter: str) -> None:
        """Forget a pool adapter that never held a position."""
        self.mark_pool_adapter_as_dirty(pool_adapter)
        del self._pool_adapters[pool_adapter]
