"""Registry of open positions and the paginated scans over it."""
from __future__ import annotations

import logging

from ..controller import Controller
from ..errors import IncorrectValue, PositionNotRegistered
from ..fixed_point import amounts_to_restore_health, health_factor2_to_18, is_better_apr
from ..interfaces.chain import ChainClient
from ..models import BetterBorrowPage, EntryData, HealthCheckPage, UnhealthyPosition
from .borrow_manager import BorrowManager

logger = logging.getLogger(__name__)


class DebtMonitor:
    """Keeps every open pool adapter in an array with a stable index.

    Scans walk the array from ``start_index0`` and return the offset to
    resume from; ``0`` means the end of the registry was reached.
    """

    def __init__(
        self, controller: Controller, borrow_manager: BorrowManager, chain: ChainClient
    ) -> None:
        self._controller = controller
        self._borrow_manager = borrow_manager
        self._chain = chain
        self._positions: list[str] = []
        self._index: dict[str, int] = {}
        self._last_reconversion: dict[str, int] = {}
        borrow_manager.set_debt_monitor(self)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    async def on_open_position(self, pool_adapter: str, block: int | None = None) -> None:
        """Register a freshly opened position; re-registering is a no-op."""
        if pool_adapter in self._index:
            return
        self._borrow_manager.pool_adapter(pool_adapter)
        if block is None:
            block = await self._chain.get_block_number()
        self._index[pool_adapter] = len(self._positions)
        self._positions.append(pool_adapter)
        self._last_reconversion[pool_adapter] = block
        logger.info("Position %s registered at block %s", pool_adapter, block)

    def on_close_position(self, pool_adapter: str) -> None:
        """Remove a closed position, moving the last one into its slot."""
        index = self._index.pop(pool_adapter, None)
        if index is None:
            raise PositionNotRegistered(pool_adapter)
        last = self._positions.pop()
        if last != pool_adapter:
            self._positions[index] = last
            self._index[last] = index
        self._last_reconversion.pop(pool_adapter, None)
        logger.info("Position %s unregistered", pool_adapter)

    def is_position_registered(self, pool_adapter: str) -> bool:
        return pool_adapter in self._index

    def get_count_positions(self) -> int:
        return len(self._positions)

    @property
    def positions(self) -> tuple[str, ...]:
        return tuple(self._positions)

    def get_positions(self, user: str, collateral_asset: str, borrow_asset: str) -> list[str]:
        """Open positions of ``user`` for the pair, in registry order."""
        result = []
        for address in self._positions:
            cfg = self._borrow_manager.pool_adapter(address).config()
            if (cfg.user, cfg.collateral_asset, cfg.borrow_asset) == (
                user,
                collateral_asset,
                borrow_asset,
            ):
                result.append(address)
        return result

    def get_user_positions(self, user: str) -> list[str]:
        return [
            a for a in self._positions if self._borrow_manager.pool_adapter(a).config().user == user
        ]

    def is_converter_in_use(self, converter: str) -> bool:
        return any(
            self._borrow_manager.pool_adapter(a).config().origin_converter == converter
            for a in self._positions
        )

    def holds_position(
        self, converter: str, user: str, collateral_asset: str, borrow_asset: str
    ) -> bool:
        """True when ``user`` has an open position for the pair on ``converter``."""
        address = self._borrow_manager.get_pool_adapter(
            converter, user, collateral_asset, borrow_asset
        )
        return address in self._index

    def position_index(self, pool_adapter: str) -> int | None:
        return self._index.get(pool_adapter)

    def record_reconversion(self, pool_adapter: str, block: int) -> None:
        if pool_adapter not in self._index:
            raise PositionNotRegistered(pool_adapter)
        self._last_reconversion[pool_adapter] = block

    def last_reconversion_block(self, pool_adapter: str) -> int:
        return self._last_reconversion.get(pool_adapter, 0)

    # ------------------------------------------------------------------
    # Scans
    # ------------------------------------------------------------------

    @staticmethod
    def _check_page_args(start_index0: int, max_count_to_check: int, max_count_to_return: int) -> None:
        if start_index0 < 0 or max_count_to_check <= 0 or max_count_to_return <= 0:
            raise IncorrectValue("page arguments")

    async def check_health(
        self, start_index0: int, max_count_to_check: int, max_count_to_return: int
    ) -> HealthCheckPage:
        """Find positions below the minimum health factor.

        Each one is returned with the borrow asset to repay, or alternatively
        the collateral to add, that brings it to the target health factor.
        Liquidated positions are returned with zero amounts.
        """
        self._check_page_args(start_index0, max_count_to_check, max_count_to_return)
        risk = self._controller.risk
        min_health_factor18 = health_factor2_to_18(risk.min_health_factor2)
        count = len(self._positions)

        found: list[UnhealthyPosition] = []
        index = start_index0
        end = min(count, start_index0 + max_count_to_check)
        while index < end and len(found) < max_count_to_return:
            address = self._positions[index]
            index += 1
            pool_adapter = self._borrow_manager.pool_adapter(address)
            status = await pool_adapter.get_status()
            if status.liquidated:
                logger.warning("Position %s was liquidated", address)
                found.append(UnhealthyPosition(address, 0, 0))
                continue
            if status.health_factor18 >= min_health_factor18:
                continue
            target18 = health_factor2_to_18(
                risk.target_health_factor2_for(pool_adapter.config().collateral_asset)
            )
            amount_borrow, amount_collateral = amounts_to_restore_health(
                status.collateral_amount, status.amount_to_pay, status.health_factor18, target18
            )
            logger.info(
                "Position %s unhealthy: hf18=%s, repay %s or add %s collateral",
                address, status.health_factor18, amount_borrow, amount_collateral,
            )
            found.append(UnhealthyPosition(address, amount_borrow, amount_collateral))

        next_index0 = 0 if index >= count else index
        return HealthCheckPage(tuple(found), next_index0)

    async def check_better_borrow_exists(
        self,
        start_index0: int,
        max_count_to_check: int,
        max_count_to_return: int,
        period_blocks: int,
    ) -> BetterBorrowPage:
        """Find positions another venue would carry noticeably cheaper.

        A position is flagged when the best other venue where its user has no
        open position beats its current venue's apr by more than
        ``threshold_apr`` percent and at
        least ``max(threshold_count_blocks, period_blocks)`` blocks passed
        since it was opened or last reconverted.
        """
        self._check_page_args(start_index0, max_count_to_check, max_count_to_return)
        if period_blocks <= 0:
            raise IncorrectValue("period_blocks must be positive")
        risk = self._controller.risk
        block = await self._chain.get_block_number()
        min_elapsed = max(risk.threshold_count_blocks, period_blocks)
        count = len(self._positions)

        flagged: list[str] = []
        index = start_index0
        end = min(count, start_index0 + max_count_to_check)
        while index < end and len(flagged) < max_count_to_return:
            address = self._positions[index]
            index += 1
            if block - self._last_reconversion.get(address, 0) < min_elapsed:
                continue
            pool_adapter = self._borrow_manager.pool_adapter(address)
            cfg = pool_adapter.config()
            status = await pool_adapter.get_status()
            if not status.opened or status.liquidated or status.collateral_amount == 0:
                continue

            strategies = await self._borrow_manager.find_strategies(
                EntryData(),
                cfg.collateral_asset,
                status.collateral_amount,
                cfg.borrow_asset,
                period_blocks,
            )
            current = next((s for s in strategies if s.converter == cfg.origin_converter), None)
            # a position is only moved onto a venue where its user holds nothing yet
            best = next(
                (
                    s for s in strategies
                    if s.converter != cfg.origin_converter
                    and not self.holds_position(
                        s.converter, cfg.user, cfg.collateral_asset, cfg.borrow_asset
                    )
                ),
                None,
            )
            if current is None or best is None:
                continue
            if is_better_apr(current.apr18, best.apr18, risk.threshold_apr, risk.apr_tolerance18):
                logger.info(
                    "Position %s: %s apr18=%s beats current %s apr18=%s",
                    address, best.converter, best.apr18, cfg.origin_converter, current.apr18,
                )
                flagged.append(address)

        next_index0 = 0 if index >= count else index
        return BetterBorrowPage(tuple(flagged), next_index0)
