"""Pool adapter protocol — one open position on a lending venue."""
from __future__ import annotations

from typing import Protocol

from ..models import PoolAdapterConfig, PoolAdapterState, PositionStatus


class PoolAdapter(Protocol):
    """Abstract interface for a single position.

    Operations on a paused or frozen venue raise ``VenueUnavailable``; a zero
    price raises ``ZeroPrice``.
    """

    @property
    def address(self) -> str: ...

    def config(self) -> PoolAdapterConfig: ...

    def export_state(self) -> PoolAdapterState: ...

    def restore_state(self, state: PoolAdapterState) -> None: ...

    async def get_status(self) -> PositionStatus: ...

    async def update_status(self) -> PositionStatus: ...

    async def borrow(
        self,
        collateral_amount: int,
        borrow_amount: int,
        receiver: str,
        min_health_factor18: int = ...,
    ) -> int: ...

    async def repay(self, amount_to_repay: int, receiver: str, close_position: bool) -> int: ...

    async def repay_to_rebalance(self, amount: int, is_collateral: bool) -> int: ...

    async def get_collateral_amount_to_return(
        self, amount_to_repay: int, close_position: bool
    ) -> int: ...
