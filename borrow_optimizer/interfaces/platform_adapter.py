"""Platform adapter protocol — one lending venue."""
from __future__ import annotations

from typing import Protocol

from ..models import ConversionPlan, EntryData, PoolAdapterConfig
from .pool_adapter import PoolAdapter


class PlatformAdapter(Protocol):
    """Abstract interface for quoting and opening positions on a lending venue.

    A venue that is frozen, paused or does not support the pair returns
    ``NULL_PLAN`` from :meth:`get_conversion_plan` instead of raising.
    """

    @property
    def address(self) -> str: ...

    @property
    def converters(self) -> tuple[str, ...]: ...

    @property
    def frozen(self) -> bool: ...

    def set_frozen(self, frozen: bool) -> None: ...

    def set_borrow_manager(self, borrow_manager: object) -> None: ...

    async def get_conversion_plan(
        self,
        collateral_asset: str,
        amount_in: int,
        borrow_asset: str,
        count_blocks: int,
        entry_data: EntryData,
        health_factor2: int,
    ) -> ConversionPlan: ...

    async def create_pool_adapter(
        self, pool_adapter: str, config: PoolAdapterConfig, caller: object
    ) -> PoolAdapter:
        """Create the adapter for a new position; only the bound borrow manager may call."""
        ...
