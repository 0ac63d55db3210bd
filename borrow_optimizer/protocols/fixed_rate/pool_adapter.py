"""A single position with simple per-block interest."""
from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ...errors import AmountTooBig, IncorrectValue, VenueUnavailable, WrongHealthFactor
from ...fixed_point import WAD, calc_health_factor18
from ...models import PoolAdapterConfig, PoolAdapterState, PositionStatus

if TYPE_CHECKING:
    from .platform_adapter import FixedRatePlatformAdapter

logger = logging.getLogger(__name__)


class FixedRatePoolAdapter:
    """Position of one user for one collateral/borrow pair on the venue.

    Debt grows by ``borrow_rate_per_block18`` per block, accrued lazily on
    every state change. A liquidation is simulated with
    :meth:`simulate_liquidation`.
    """

    def __init__(
        self, address: str, config: PoolAdapterConfig, venue: FixedRatePlatformAdapter
    ) -> None:
        self._address = address
        self._config = config
        self._venue = venue
        self.collateral_amount = 0
        self.debt = 0
        self.collateral_amount_liquidated = 0
        self.opened = False
        self.last_accrual_block = 0

    @property
    def address(self) -> str:
        return self._address

    @property
    def venue(self) -> FixedRatePlatformAdapter:
        return self._venue

    def config(self) -> PoolAdapterConfig:
        return self._config

    def export_state(self) -> PoolAdapterState:
        return PoolAdapterState(
            collateral_amount=self.collateral_amount,
            debt=self.debt,
            collateral_amount_liquidated=self.collateral_amount_liquidated,
            last_accrual_block=self.last_accrual_block,
        )

    def restore_state(self, state: PoolAdapterState) -> None:
        """Reopen a position saved by :meth:`export_state`, reserving venue capacity again."""
        if self.opened:
            raise IncorrectValue(f"position {self._address} is already open")
        cfg = self._config
        self.collateral_amount = state.collateral_amount
        self.debt = state.debt
        self.collateral_amount_liquidated = state.collateral_amount_liquidated
        self.last_accrual_block = state.last_accrual_block
        self.opened = True
        self._venue.on_borrow(cfg.collateral_asset, state.collateral_amount, cfg.borrow_asset, state.debt)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_active(self, allow_frozen: bool) -> None:
        if self._venue.paused:
            raise VenueUnavailable(f"{self._venue.name} is paused")
        if self._venue.frozen and not allow_frozen:
            raise VenueUnavailable(f"{self._venue.name} is frozen")

    def _debt_at(self, block: int) -> int:
        rate = self._venue.params(self._config.borrow_asset).borrow_rate_per_block18
        elapsed = max(0, block - self.last_accrual_block)
        return self.debt + self.debt * rate * elapsed // WAD

    async def _accrue(self) -> None:
        block = await self._venue.current_block()
        accrued = self._debt_at(block)
        if accrued != self.debt:
            self._venue.on_borrow(self._config.collateral_asset, 0, self._config.borrow_asset, accrued - self.debt)
        self.debt = accrued
        self.last_accrual_block = block

    async def _health_factor18(self, collateral_amount: int, debt: int) -> int:
        cfg = self._config
        price_collateral, price_borrow = await self._venue.prices(
            cfg.collateral_asset, cfg.borrow_asset
        )
        return calc_health_factor18(
            collateral_amount,
            debt,
            self._venue.params(cfg.collateral_asset).liquidation_threshold18,
            price_collateral,
            price_borrow,
            self._venue.decimals(cfg.collateral_asset),
            self._venue.decimals(cfg.borrow_asset),
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    async def get_status(self) -> PositionStatus:
        """Current state with interest accrued up to the current block (no writes)."""
        block = await self._venue.current_block()
        debt = self._debt_at(block)
        return PositionStatus(
            collateral_amount=self.collateral_amount,
            amount_to_pay=debt,
            health_factor18=await self._health_factor18(self.collateral_amount, debt),
            opened=self.opened,
            collateral_amount_liquidated=self.collateral_amount_liquidated,
            debt_gap_required=self._venue.debt_gap_required,
        )

    async def update_status(self) -> PositionStatus:
        await self._accrue()
        return await self.get_status()

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def borrow(
        self,
        collateral_amount: int,
        borrow_amount: int,
        receiver: str,
        min_health_factor18: int = WAD,
    ) -> int:
        """Supply ``collateral_amount`` and borrow ``borrow_amount`` to ``receiver``.

        Nothing changes when the resulting health factor would be below
        ``min_health_factor18``.
        """
        self._require_active(allow_frozen=False)
        if collateral_amount <= 0 or borrow_amount <= 0:
            raise IncorrectValue("collateral and borrow amounts must be positive")
        cfg = self._config
        if borrow_amount > self._venue.available_to_borrow(cfg.borrow_asset):
            raise AmountTooBig(f"not enough liquidity of {cfg.borrow_asset}")
        if collateral_amount > self._venue.available_to_supply(cfg.collateral_asset):
            raise AmountTooBig(f"supply cap of {cfg.collateral_asset} reached")

        await self._accrue()
        health_factor18 = await self._health_factor18(
            self.collateral_amount + collateral_amount, self.debt + borrow_amount
        )
        if health_factor18 < max(min_health_factor18, WAD):
            raise WrongHealthFactor(f"borrow would leave health factor {health_factor18}")

        self.collateral_amount += collateral_amount
        self.debt += borrow_amount
        self.opened = True
        self._venue.on_borrow(cfg.collateral_asset, collateral_amount, cfg.borrow_asset, borrow_amount)
        logger.debug(
            "Position %s borrowed %s %s to %s", self._address, borrow_amount, cfg.borrow_asset, receiver
        )
        return borrow_amount

    async def get_collateral_amount_to_return(
        self, amount_to_repay: int, close_position: bool
    ) -> int:
        status = await self.get_status()
        if close_position or amount_to_repay >= status.amount_to_pay:
            return status.collateral_amount
        if status.amount_to_pay == 0:
            return 0
        return status.collateral_amount * amount_to_repay // status.amount_to_pay

    async def repay(self, amount_to_repay: int, receiver: str, close_position: bool) -> int:
        """Repay debt, returning the released collateral.

        Collateral is released in proportion to the repaid debt, so a partial
        repay keeps the health factor. Paying the whole debt closes the
        position; any excess stays with the caller.
        """
        self._require_active(allow_frozen=True)
        if amount_to_repay <= 0:
            raise IncorrectValue("amount to repay must be positive")
        await self._accrue()
        cfg = self._config
        if close_position and amount_to_repay < self.debt:
            raise IncorrectValue(f"{amount_to_repay} does not cover debt {self.debt}")

        if amount_to_repay >= self.debt:
            repaid, collateral_out = self.debt, self.collateral_amount
        else:
            repaid = amount_to_repay
            collateral_out = self.collateral_amount * amount_to_repay // self.debt

        self.debt -= repaid
        self.collateral_amount -= collateral_out
        self._venue.on_repay(cfg.collateral_asset, collateral_out, cfg.borrow_asset, repaid)
        if self.debt == 0:
            self.opened = False
            if self.collateral_amount:
                # dust left by rounding goes back with the last repay
                collateral_out += self.collateral_amount
                self._venue.on_repay(cfg.collateral_asset, self.collateral_amount, cfg.borrow_asset, 0)
                self.collateral_amount = 0
        logger.debug(
            "Position %s repaid %s, returned %s collateral to %s",
            self._address, repaid, collateral_out, receiver,
        )
        return collateral_out

    async def repay_to_rebalance(self, amount: int, is_collateral: bool) -> int:
        """Add collateral or repay debt without closing; returns the new health factor."""
        self._require_active(allow_frozen=True)
        if amount <= 0:
            raise IncorrectValue("rebalance amount must be positive")
        await self._accrue()
        cfg = self._config
        if is_collateral:
            self.collateral_amount += amount
            self._venue.on_borrow(cfg.collateral_asset, amount, cfg.borrow_asset, 0)
        else:
            if amount >= self.debt:
                raise AmountTooBig("rebalance must not close the position")
            self.debt -= amount
            self._venue.on_repay(cfg.collateral_asset, 0, cfg.borrow_asset, amount)
        return await self._health_factor18(self.collateral_amount, self.debt)

    def simulate_liquidation(self, collateral_to_seize: int, debt_to_cover: int) -> None:
        """Seize collateral and cover debt the way a venue liquidator would."""
        seized = min(collateral_to_seize, self.collateral_amount)
        covered = min(debt_to_cover, self.debt)
        cfg = self._config
        self.collateral_amount -= seized
        self.collateral_amount_liquidated += seized
        self.debt -= covered
        self._venue.on_repay(cfg.collateral_asset, seized, cfg.borrow_asset, covered)
