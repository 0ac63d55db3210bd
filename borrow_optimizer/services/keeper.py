"""Periodic supervision of open positions."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Sequence

from ..config import KeeperConfig
from ..errors import ConverterError, WrongLengths
from ..interfaces.notifier import Notifier
from ..models import HealthCheckPage, KeeperReport
from .converter import Converter

logger = logging.getLogger(__name__)


class Keeper:
    """Repairs unhealthy positions and migrates the ones a cheaper venue would carry.

    The health scan resumes from the persisted ``next_index_to_check0``
    between calls. Runs are serialized, so duplicate triggers only repeat a
    scan.
    """

    def __init__(
        self,
        converter: Converter,
        config: KeeperConfig,
        notifiers: Sequence[Notifier] = (),
    ) -> None:
        self._converter = converter
        self._config = config
        self._notifiers: list[Notifier] = list(notifiers)
        self._next_index_to_check0 = 0
        self._run_lock = asyncio.Lock()

    @property
    def address(self) -> str:
        return self._config.address

    @property
    def next_index_to_check0(self) -> int:
        return self._next_index_to_check0

    @next_index_to_check0.setter
    def next_index_to_check0(self, value: int) -> None:
        self._next_index_to_check0 = value

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _send_log(self, message: str, silent: bool = True) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    def _build_report_message(self, report: KeeperReport) -> str:
        lines = [f"🛠 Keeper run · {report.checked_pages} health pages checked", ""]
        if report.rebalanced:
            lines.append(f"Rebalanced: {', '.join(report.rebalanced)}")
        if report.closed_liquidated:
            lines.append(f"Closed after liquidation: {', '.join(report.closed_liquidated)}")
        if report.failed_rebalances:
            lines.append(f"Rebalance failed: {', '.join(report.failed_rebalances)}")
        if report.migrated:
            lines.append(f"Migrated: {', '.join(report.migrated)}")
        if report.failed_migrations:
            lines.append(f"Migration failed: {', '.join(report.failed_migrations)}")
        lines += ["", f"{self._now_str()} UTC"]
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Health: checker / fix_health
    # ------------------------------------------------------------------

    async def checker(self) -> tuple[bool, HealthCheckPage]:
        """Scan one page from the persisted index.

        ``can_exec`` is true when :meth:`fix_health` has something to do:
        unhealthy positions were found or the index has to move.
        """
        page = await self._converter.debt_monitor.check_health(
            self._next_index_to_check0,
            self._config.max_count_to_check,
            self._config.max_count_to_return,
        )
        can_exec = bool(page.positions) or page.next_index_to_check0 != self._next_index_to_check0
        return can_exec, page

    async def fix_health(
        self,
        next_index_to_check0: int,
        pool_adapters: Sequence[str],
        amounts_borrow_asset: Sequence[int],
        amounts_collateral_asset: Sequence[int],
        caller: str,
    ) -> tuple[list[str], list[str], list[str]]:
        """Ask the converter to repair each position; return (fixed, failed, closed).

        Liquidated positions are closed by the converter and reported in
        ``closed``. A failure does not stop the loop; the position stays
        unhealthy and is found again by the next scan.

        Closing a position moves the last one of the registry into its slot.
        When that slot lies before ``next_index_to_check0`` the stored index
        goes back to it, so the moved position is still checked.
        """
        self._converter.controller.require_keeper(caller)
        if not (len(pool_adapters) == len(amounts_borrow_asset) == len(amounts_collateral_asset)):
            raise WrongLengths("pool adapters and amounts")

        debt_monitor = self._converter.debt_monitor
        fixed: list[str] = []
        failed: list[str] = []
        closed: list[str] = []
        vacated: list[int] = []
        for pool_adapter, amount_borrow, amount_collateral in zip(
            pool_adapters, amounts_borrow_asset, amounts_collateral_asset
        ):
            index = debt_monitor.position_index(pool_adapter)
            try:
                await self._converter.require_repay(
                    amount_borrow, amount_collateral, pool_adapter, caller
                )
            except ConverterError as e:
                logger.warning("Cannot fix health of %s: %s", pool_adapter, e)
                failed.append(pool_adapter)
                continue
            except Exception as e:
                logger.error("Unexpected error fixing %s: %s", pool_adapter, e)
                failed.append(pool_adapter)
                continue
            if debt_monitor.is_position_registered(pool_adapter):
                fixed.append(pool_adapter)
            else:
                closed.append(pool_adapter)
                if index is not None:
                    vacated.append(index)

        moved = [i for i in vacated if i < debt_monitor.get_count_positions()]
        if next_index_to_check0 != 0 and moved:
            next_index_to_check0 = min(next_index_to_check0, min(moved))
        self._next_index_to_check0 = next_index_to_check0
        return fixed, failed, closed

    # ------------------------------------------------------------------
    # Core workflows
    # ------------------------------------------------------------------

    async def run_once(self) -> KeeperReport:
        """Health scan and repair, then better-rate scan and migration."""
        async with self._run_lock:
            report = await self._run()

        if report.failed_rebalances or report.failed_migrations:
            await self._send_alert(
                self._build_report_message(report), subject="⚠️ Keeper: action failed"
            )
        elif not report.is_noop:
            await self._send_log(self._build_report_message(report))
        return report

    async def _run(self) -> KeeperReport:
        rebalanced: list[str] = []
        failed_rebalances: list[str] = []
        closed_liquidated: list[str] = []
        pages = 0

        while True:
            can_exec, page = await self.checker()
            pages += 1
            if can_exec:
                fixed, failed, closed = await self.fix_health(
                    page.next_index_to_check0,
                    page.pool_adapters,
                    page.amounts_borrow_asset,
                    page.amounts_collateral_asset,
                    self.address,
                )
                rebalanced += fixed
                failed_rebalances += failed
                closed_liquidated += closed
            if page.next_index_to_check0 == 0:
                break

        debt_monitor = self._converter.debt_monitor
        flagged: list[str] = []
        start = 0
        while True:
            better = await debt_monitor.check_better_borrow_exists(
                start,
                self._config.max_count_to_check,
                self._config.max_count_to_return,
                self._config.period_blocks,
            )
            flagged += better.pool_adapters
            start = better.next_index_to_check0
            if start == 0:
                break

        migrated: list[str] = []
        failed_migrations: list[str] = []
        for pool_adapter in flagged:
            try:
                new_pool_adapter = await self._converter.reconvert(
                    pool_adapter, self._config.period_blocks, self.address
                )
                migrated.append(pool_adapter)
                logger.info("Position %s migrated to %s", pool_adapter, new_pool_adapter)
            except ConverterError as e:
                logger.warning("Cannot migrate %s: %s", pool_adapter, e)
                failed_migrations.append(pool_adapter)

        report = KeeperReport(
            checked_pages=pages,
            rebalanced=tuple(rebalanced),
            failed_rebalances=tuple(failed_rebalances),
            migrated=tuple(migrated),
            failed_migrations=tuple(failed_migrations),
            closed_liquidated=tuple(closed_liquidated),
            details={"positions": debt_monitor.get_count_positions()},
        )
        logger.info(
            "Keeper run done: %d rebalanced, %d closed, %d migrated, %d failures",
            len(report.rebalanced),
            len(report.closed_liquidated),
            len(report.migrated),
            len(report.failed_rebalances) + len(report.failed_migrations),
        )
        return report

    async def run_continuous(self, check_interval_minutes: int | None = None) -> None:
        """Run the keeper loop forever."""
        interval = check_interval_minutes or self._config.check_interval_minutes
        logger.info("Starting keeper (running every %d minutes)", interval)

        while True:
            try:
                await self.run_once()
                await asyncio.sleep(interval * 60)
            except Exception as e:
                logger.error("Error in keeper loop: %s", e)
                await asyncio.sleep(60)
