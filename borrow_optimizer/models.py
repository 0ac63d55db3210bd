"""Data models for plans, positions, scans and keeper reports. All frozen."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Sequence

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ENTRY_KIND_EXACT_COLLATERAL_IN_FOR_MAX_BORROW_OUT_0 = 0
ENTRY_KIND_EXACT_PROPORTION_1 = 1
ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2 = 2


def is_zero_address(address: str | None) -> bool:
    """True for ``None``, empty strings and the all-zero address."""
    return not address or address == ZERO_ADDRESS


@dataclass(frozen=True)
class EntryData:
    """Directive telling how to split a source amount.

    ``kind`` 0 uses the whole amount as collateral, ``kind`` 1 keeps a part of
    it so that kept:borrowed is ``part_x:part_y`` in USD, ``kind`` 2 treats the
    amount as the exact amount to borrow.
    """

    kind: int = ENTRY_KIND_EXACT_COLLATERAL_IN_FOR_MAX_BORROW_OUT_0
    part_x: int = 0
    part_y: int = 0

    @classmethod
    def decode(cls, raw: EntryData | Sequence[int] | None) -> EntryData:
        """Build entry data from a tagged tuple: ``()``, ``(0,)``, ``(1, x, y)``, ``(2,)``."""
        if isinstance(raw, EntryData):
            return raw
        if not raw:
            return cls()
        values = [int(v) for v in raw]
        kind = values[0]
        if kind == ENTRY_KIND_EXACT_PROPORTION_1:
            part_x = values[1] if len(values) > 1 else 0
            part_y = values[2] if len(values) > 2 else 0
            return cls(kind=kind, part_x=part_x, part_y=part_y)
        return cls(kind=kind)

    def encode(self) -> tuple[int, ...]:
        if self.kind == ENTRY_KIND_EXACT_PROPORTION_1:
            return (self.kind, self.part_x, self.part_y)
        return (self.kind,)


@dataclass(frozen=True)
class ConversionPlan:
    """A quote from one lending venue.

    Amounts are in native token decimals; cost, income and rewards are
    36-decimal values in terms of the borrow asset over the quoted period.
    """

    converter: str = ZERO_ADDRESS
    collateral_amount: int = 0
    amount_to_borrow: int = 0
    max_amount_to_borrow: int = 0
    max_amount_to_supply: int = 0
    ltv18: int = 0
    liquidation_threshold18: int = 0
    borrow_cost36: int = 0
    supply_income36: int = 0
    rewards_amount36: int = 0
    amount_collateral_in_borrow_asset36: int = 0

    @property
    def is_available(self) -> bool:
        return not is_zero_address(self.converter)


NULL_PLAN = ConversionPlan()


@dataclass(frozen=True)
class PoolAdapterConfig:
    """Identity of a single position: one converter x user x asset pair."""

    origin_converter: str
    user: str
    collateral_asset: str
    borrow_asset: str


@dataclass(frozen=True)
class PoolAdapterState:
    """Venue-side amounts of a position, enough to rebuild it after a restart."""

    collateral_amount: int = 0
    debt: int = 0
    collateral_amount_liquidated: int = 0
    last_accrual_block: int = 0


@dataclass(frozen=True)
class PositionStatus:
    """Current state of a position as reported by its pool adapter."""

    collateral_amount: int
    amount_to_pay: int
    health_factor18: int
    opened: bool
    collateral_amount_liquidated: int = 0
    debt_gap_required: bool = False

    @property
    def liquidated(self) -> bool:
        return self.collateral_amount_liquidated > 0


@dataclass(frozen=True)
class BorrowStrategy:
    """A ranked candidate for a conversion."""

    converter: str
    collateral_amount: int
    amount_to_borrow: int
    apr18: int
    health_factor18: int = 0
    existing: bool = False
    plan: ConversionPlan = field(default=NULL_PLAN, compare=False, repr=False)


@dataclass(frozen=True)
class BorrowStrategies:
    """Parallel arrays of ranked strategies, best first."""

    converters: tuple[str, ...] = ()
    collateral_amounts_out: tuple[int, ...] = ()
    amount_to_borrows_out: tuple[int, ...] = ()
    aprs18: tuple[int, ...] = ()

    @classmethod
    def from_strategies(cls, strategies: Sequence[BorrowStrategy]) -> BorrowStrategies:
        return cls(
            converters=tuple(s.converter for s in strategies),
            collateral_amounts_out=tuple(s.collateral_amount for s in strategies),
            amount_to_borrows_out=tuple(s.amount_to_borrow for s in strategies),
            aprs18=tuple(s.apr18 for s in strategies),
        )

    def __len__(self) -> int:
        return len(self.converters)


@dataclass(frozen=True)
class UnhealthyPosition:
    """A position below the minimum health factor and what fixes it."""

    pool_adapter: str
    amount_borrow_asset: int
    amount_collateral_asset: int


@dataclass(frozen=True)
class HealthCheckPage:
    positions: tuple[UnhealthyPosition, ...] = ()
    next_index_to_check0: int = 0

    @property
    def pool_adapters(self) -> tuple[str, ...]:
        return tuple(p.pool_adapter for p in self.positions)

    @property
    def amounts_borrow_asset(self) -> tuple[int, ...]:
        return tuple(p.amount_borrow_asset for p in self.positions)

    @property
    def amounts_collateral_asset(self) -> tuple[int, ...]:
        return tuple(p.amount_collateral_asset for p in self.positions)


@dataclass(frozen=True)
class BetterBorrowPage:
    pool_adapters: tuple[str, ...] = ()
    next_index_to_check0: int = 0


@dataclass(frozen=True)
class RepayResult:
    collateral_amount_out: int
    returned_borrow_amount_out: int


@dataclass(frozen=True)
class KeeperReport:
    """Outcome of a single keeper invocation."""

    checked_pages: int = 0
    rebalanced: tuple[str, ...] = ()
    failed_rebalances: tuple[str, ...] = ()
    migrated: tuple[str, ...] = ()
    failed_migrations: tuple[str, ...] = ()
    closed_liquidated: tuple[str, ...] = ()
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def is_noop(self) -> bool:
        return not (
            self.rebalanced
            or self.failed_rebalances
            or self.migrated
            or self.failed_migrations
            or self.closed_liquidated
        )
