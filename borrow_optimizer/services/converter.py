"""User-facing entry point for quoting, borrowing and repaying."""
from __future__ import annotations

import asyncio
import logging
from typing import Sequence

from ..controller import Controller
from ..errors import (
    IncorrectValue,
    MigrationFailed,
    PositionNotRegistered,
    RepayToRebalanceNotAllowed,
    VenueUnavailable,
    WrongHealthFactor,
    ZeroAddress,
)
from ..fixed_point import (
    amounts_to_restore_health,
    calc_amount_to_repay,
    health_factor2_to_18,
)
from ..interfaces.chain import ChainClient
from ..interfaces.pool_adapter import PoolAdapter
from ..models import (
    ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2,
    NULL_PLAN,
    ZERO_ADDRESS,
    BorrowStrategies,
    ConversionPlan,
    EntryData,
    PositionStatus,
    RepayResult,
    is_zero_address,
)
from .borrow_manager import BorrowManager
from .debt_monitor import DebtMonitor

logger = logging.getLogger(__name__)


class Converter:
    """Composes the borrow manager and the debt monitor.

    Every state-changing operation runs under one lock, so two operations
    never interleave.
    """

    def __init__(
        self,
        controller: Controller,
        borrow_manager: BorrowManager,
        debt_monitor: DebtMonitor,
        chain: ChainClient,
    ) -> None:
        self._controller = controller
        self._borrow_manager = borrow_manager
        self._debt_monitor = debt_monitor
        self._chain = chain
        self._lock = asyncio.Lock()

    @property
    def controller(self) -> Controller:
        return self._controller

    @property
    def borrow_manager(self) -> BorrowManager:
        return self._borrow_manager

    @property
    def debt_monitor(self) -> DebtMonitor:
        return self._debt_monitor

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_conversion_plan(
        self,
        collateral_asset: str,
        amount_in: int,
        borrow_asset: str,
        count_blocks: int,
        entry_data: EntryData | Sequence[int] | None = None,
        user: str | None = None,
    ) -> ConversionPlan:
        """Best plan across venues, or ``NULL_PLAN`` when none is available."""
        strategies = await self._borrow_manager.find_strategies(
            entry_data, collateral_asset, amount_in, borrow_asset, count_blocks, user
        )
        return strategies[0].plan if strategies else NULL_PLAN

    async def find_borrow_strategies(
        self,
        entry_data: EntryData | Sequence[int] | None,
        collateral_asset: str,
        amount_in: int,
        borrow_asset: str,
        period_in_blocks: int,
        user: str | None = None,
    ) -> BorrowStrategies:
        strategies = await self._borrow_manager.find_strategies(
            entry_data, collateral_asset, amount_in, borrow_asset, period_in_blocks, user
        )
        return BorrowStrategies.from_strategies(strategies)

    async def quote_repay(
        self, user: str, collateral_asset: str, borrow_asset: str, amount_to_repay: int
    ) -> int:
        """Collateral that :meth:`repay` would return for ``amount_to_repay``."""
        if amount_to_repay <= 0:
            raise IncorrectValue("amount to repay must be positive")
        remaining = amount_to_repay
        collateral_out = 0
        for address in self._debt_monitor.get_positions(user, collateral_asset, borrow_asset):
            if remaining == 0:
                break
            pool_adapter = self._borrow_manager.pool_adapter(address)
            status = await pool_adapter.get_status()
            close = remaining >= status.amount_to_pay
            pay = min(remaining, self._full_repay_amount(status)) if close else remaining
            collateral_out += await pool_adapter.get_collateral_amount_to_return(pay, close)
            remaining -= min(pay, status.amount_to_pay)
        return collateral_out

    # ------------------------------------------------------------------
    # Borrow / repay
    # ------------------------------------------------------------------

    async def borrow(
        self,
        converter: str,
        collateral_asset: str,
        collateral_amount: int,
        borrow_asset: str,
        amount_to_borrow: int,
        receiver: str,
        user: str,
    ) -> str:
        """Open or extend the position of ``user`` on ``converter``.

        Returns the pool adapter address. The resulting health factor must
        not fall below the minimum.
        """
        if is_zero_address(receiver):
            raise ZeroAddress("receiver")
        if collateral_amount <= 0 or amount_to_borrow <= 0:
            raise IncorrectValue("collateral and borrow amounts must be positive")
        async with self._lock:
            return await self._borrow(
                converter, collateral_asset, collateral_amount, borrow_asset,
                amount_to_borrow, receiver, user,
            )

    async def _borrow(
        self,
        converter: str,
        collateral_asset: str,
        collateral_amount: int,
        borrow_asset: str,
        amount_to_borrow: int,
        receiver: str,
        user: str,
    ) -> str:
        platform_adapter = self._borrow_manager.get_platform_adapter(converter)
        if self._borrow_manager.is_frozen(platform_adapter):
            raise VenueUnavailable(f"{platform_adapter.address} is frozen")
        existed = not is_zero_address(
            self._borrow_manager.get_pool_adapter(converter, user, collateral_asset, borrow_asset)
        )
        address = await self._borrow_manager.register_pool_adapter(
            converter, user, collateral_asset, borrow_asset
        )
        pool_adapter = self._borrow_manager.pool_adapter(address)
        min_health_factor18 = health_factor2_to_18(self._controller.risk.min_health_factor2)
        try:
            borrowed = await pool_adapter.borrow(
                collateral_amount, amount_to_borrow, receiver, min_health_factor18
            )
        except Exception:
            if not existed:
                self._borrow_manager.unregister_pool_adapter(address)
            raise

        await self._debt_monitor.on_open_position(address)
        logger.info(
            "Borrowed %s of %s against %s of %s via %s (position %s)",
            borrowed, borrow_asset, collateral_amount, collateral_asset, converter, address,
        )
        return address

    def _full_repay_amount(self, status: PositionStatus) -> int:
        if status.debt_gap_required:
            return calc_amount_to_repay(status.amount_to_pay, self._controller.risk.debt_gap)
        return status.amount_to_pay

    async def _close_if_repaid(self, address: str, pool_adapter: PoolAdapter) -> bool:
        status = await pool_adapter.get_status()
        if status.opened:
            return False
        self._debt_monitor.on_close_position(address)
        return True

    async def repay(
        self,
        collateral_asset: str,
        borrow_asset: str,
        amount_to_repay: int,
        receiver: str,
        user: str,
    ) -> RepayResult:
        """Repay the user's positions for the pair in registry order.

        A position is closed once the remaining amount covers its debt; venues
        that require a debt gap are sent up to the debt plus the gap and keep
        only the debt. Whatever is not needed is returned as
        ``returned_borrow_amount_out``.
        """
        if amount_to_repay <= 0:
            raise IncorrectValue("amount to repay must be positive")
        if is_zero_address(receiver):
            raise ZeroAddress("receiver")
        async with self._lock:
            remaining = amount_to_repay
            collateral_out = 0
            for address in self._debt_monitor.get_positions(user, collateral_asset, borrow_asset):
                if remaining == 0:
                    break
                pool_adapter = self._borrow_manager.pool_adapter(address)
                status = await pool_adapter.update_status()
                close = remaining >= status.amount_to_pay
                pay = min(remaining, self._full_repay_amount(status)) if close else remaining
                collateral_out += await pool_adapter.repay(pay, receiver, close_position=close)
                remaining -= min(pay, status.amount_to_pay)
                await self._close_if_repaid(address, pool_adapter)
            logger.info(
                "Repaid %s of %s for %s, collateral returned %s",
                amount_to_repay - remaining, borrow_asset, user, collateral_out,
            )
            return RepayResult(collateral_out, remaining)

    async def repay_the_borrow(
        self, pool_adapter: str, close_position: bool, caller: str
    ) -> tuple[int, int]:
        """Governance path for a stuck position.

        With ``close_position`` the whole debt is repaid and the position is
        closed; otherwise only the debt above the target health factor is
        repaid. Returns (collateral returned, borrow asset repaid).
        """
        self._controller.require_governance(caller)
        if not self._debt_monitor.is_position_registered(pool_adapter):
            raise PositionNotRegistered(pool_adapter)
        async with self._lock:
            adapter = self._borrow_manager.pool_adapter(pool_adapter)
            cfg = adapter.config()
            status = await adapter.update_status()
            if close_position:
                collateral_out = await adapter.repay(
                    self._full_repay_amount(status), cfg.user, close_position=True
                )
                self._debt_monitor.on_close_position(pool_adapter)
                self._borrow_manager.mark_pool_adapter_as_dirty(pool_adapter)
                logger.warning("Position %s closed by governance", pool_adapter)
                return collateral_out, status.amount_to_pay

            target18 = health_factor2_to_18(
                self._controller.risk.target_health_factor2_for(cfg.collateral_asset)
            )
            amount_borrow, _ = amounts_to_restore_health(
                status.collateral_amount, status.amount_to_pay, status.health_factor18, target18
            )
            if amount_borrow == 0:
                return 0, 0
            await adapter.repay_to_rebalance(amount_borrow, is_collateral=False)
            logger.warning("Position %s partially repaid by governance", pool_adapter)
            return 0, amount_borrow

    # ------------------------------------------------------------------
    # Keeper actions
    # ------------------------------------------------------------------

    def _require_keeper_or_user(self, caller: str, user: str) -> None:
        if caller == user and not is_zero_address(user):
            return
        self._controller.require_keeper(caller)

    async def require_repay(
        self,
        amount_borrow_asset: int,
        amount_collateral_asset: int,
        pool_adapter: str,
        caller: str,
    ) -> int:
        """Bring an unhealthy position back to the target health factor.

        Collateral is added when ``amount_collateral_asset`` is positive,
        otherwise ``amount_borrow_asset`` of debt is repaid. A liquidated
        position is closed and its pool adapter retired. Returns the new
        health factor (``0`` for a closed position).
        """
        self._controller.require_keeper(caller)
        if not self._debt_monitor.is_position_registered(pool_adapter):
            raise PositionNotRegistered(pool_adapter)
        async with self._lock:
            adapter = self._borrow_manager.pool_adapter(pool_adapter)
            status = await adapter.update_status()
            if status.liquidated:
                self._debt_monitor.on_close_position(pool_adapter)
                self._borrow_manager.mark_pool_adapter_as_dirty(pool_adapter)
                logger.warning(
                    "Position %s was liquidated (%s collateral lost); closed",
                    pool_adapter, status.collateral_amount_liquidated,
                )
                return 0

            min_health_factor18 = health_factor2_to_18(self._controller.risk.min_health_factor2)
            if status.health_factor18 >= min_health_factor18:
                raise RepayToRebalanceNotAllowed(f"{pool_adapter} is healthy")

            if amount_collateral_asset > 0:
                health_factor18 = await adapter.repay_to_rebalance(
                    amount_collateral_asset, is_collateral=True
                )
            elif amount_borrow_asset > 0:
                health_factor18 = await adapter.repay_to_rebalance(
                    amount_borrow_asset, is_collateral=False
                )
            else:
                raise IncorrectValue("nothing to repay")

            if health_factor18 < status.health_factor18:
                raise WrongHealthFactor(f"rebalance lowered health factor of {pool_adapter}")
            logger.info(
                "Position %s rebalanced: hf18 %s -> %s",
                pool_adapter, status.health_factor18, health_factor18,
            )
            return health_factor18

    async def reconvert(self, pool_adapter: str, period_blocks: int, caller: str) -> str:
        """Move a position to the cheapest other venue.

        The new position takes over the old collateral and debt as they are;
        the old position must be able to release all of its collateral.
        It must reach the target health factor, or at least the health factor
        the old position had when that one was already below target. Only
        venues where the user has no open position are considered, so a
        failure after opening can close the new position completely.
        :class:`MigrationFailed` is raised with the old position untouched.
        """
        if not self._debt_monitor.is_position_registered(pool_adapter):
            raise PositionNotRegistered(pool_adapter)
        old = self._borrow_manager.pool_adapter(pool_adapter)
        cfg = old.config()
        self._require_keeper_or_user(caller, cfg.user)
        if period_blocks <= 0:
            raise IncorrectValue("period_blocks must be positive")

        async with self._lock:
            status = await old.update_status()
            if not status.opened or status.liquidated:
                raise MigrationFailed(f"{pool_adapter} is not an open position")
            debt = self._full_repay_amount(status)
            released = await old.get_collateral_amount_to_return(debt, close_position=True)
            if released != status.collateral_amount:
                raise MigrationFailed(
                    f"{pool_adapter} would release {released} of {status.collateral_amount} collateral"
                )

            strategies = await self._borrow_manager.find_strategies(
                EntryData(kind=ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2),
                cfg.collateral_asset,
                debt,
                cfg.borrow_asset,
                period_blocks,
            )
            best = next(
                (
                    s for s in strategies
                    if s.converter != cfg.origin_converter
                    and s.amount_to_borrow >= debt
                    and not self._debt_monitor.holds_position(
                        s.converter, cfg.user, cfg.collateral_asset, cfg.borrow_asset
                    )
                ),
                None,
            )
            if best is None:
                raise MigrationFailed(f"no venue can take over {pool_adapter}")

            block = await self._chain.get_block_number()
            target18 = health_factor2_to_18(
                self._controller.risk.target_health_factor2_for(cfg.collateral_asset)
            )
            min18 = health_factor2_to_18(self._controller.risk.min_health_factor2)
            required18 = max(min18, min(target18, status.health_factor18))
            existed = not is_zero_address(
                self._borrow_manager.get_pool_adapter(
                    best.converter, cfg.user, cfg.collateral_asset, cfg.borrow_asset
                )
            )
            new_address = ZERO_ADDRESS
            try:
                new_address = await self._borrow_manager.register_pool_adapter(
                    best.converter, cfg.user, cfg.collateral_asset, cfg.borrow_asset
                )
                new = self._borrow_manager.pool_adapter(new_address)
                await new.borrow(status.collateral_amount, debt, cfg.user, required18)
            except Exception as e:
                if not existed and not is_zero_address(new_address):
                    self._borrow_manager.unregister_pool_adapter(new_address)
                raise MigrationFailed(f"cannot open new position: {e}") from e

            try:
                await old.repay(debt, cfg.user, close_position=True)
            except Exception as e:
                await self._unwind(new_address, new, existed, cfg.user)
                raise MigrationFailed(str(e)) from e

            self._debt_monitor.on_close_position(pool_adapter)
            await self._debt_monitor.on_open_position(new_address, block)
            logger.info(
                "Position %s migrated from %s to %s (new position %s, apr18=%s)",
                pool_adapter, cfg.origin_converter, best.converter, new_address, best.apr18,
            )
            return new_address

    async def _unwind(
        self, address: str, adapter: PoolAdapter, existed: bool, receiver: str
    ) -> None:
        # the new position held nothing before the migration, so closing it undoes it
        try:
            status = await adapter.update_status()
            await adapter.repay(status.amount_to_pay, receiver, close_position=True)
        except Exception as e:
            logger.error("Failed to unwind position %s: %s", address, e)
            return
        if not existed:
            self._borrow_manager.unregister_pool_adapter(address)
