"""How a source amount is split between collateral and borrow.

All functions are pure integer math. Prices are 18-decimal values in a common
unit; ``rc10pow_dec`` / ``rb10pow_dec`` are ``10**decimals`` of the
collateral and borrow assets.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from .errors import DivisionByZero, IncorrectValue, ZeroValueNotAllowed
from .models import (
    ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2,
    ENTRY_KIND_EXACT_COLLATERAL_IN_FOR_MAX_BORROW_OUT_0,
    ENTRY_KIND_EXACT_PROPORTION_1,
    EntryData,
)

_WAD = 10**18


@dataclass(frozen=True)
class PricesAndDecimals:
    price_collateral: int
    price_borrow: int
    rc10pow_dec: int
    rb10pow_dec: int

    @classmethod
    def from_decimals(
        cls,
        price_collateral: int,
        price_borrow: int,
        collateral_decimals: int,
        borrow_decimals: int,
    ) -> PricesAndDecimals:
        return cls(
            price_collateral=price_collateral,
            price_borrow=price_borrow,
            rc10pow_dec=10**collateral_decimals,
            rb10pow_dec=10**borrow_decimals,
        )


def _check_denominators(health_factor18: int, liquidation_threshold18: int, pd: PricesAndDecimals) -> None:
    if health_factor18 == 0:
        raise DivisionByZero("health factor")
    if liquidation_threshold18 == 0:
        raise DivisionByZero("liquidation threshold")
    if pd.price_collateral == 0 or pd.price_borrow == 0:
        raise DivisionByZero("price")
    if pd.rc10pow_dec == 0 or pd.rb10pow_dec == 0:
        raise DivisionByZero("decimals")


def get_entry_kind(entry_data: EntryData | Sequence[int] | None) -> int:
    """Kind tag of ``entry_data``; empty data means kind 0.

    Unknown kinds are returned as they are.
    """
    return EntryData.decode(entry_data).kind


def exact_collateral_in_for_max_borrow_out(
    collateral_amount: int,
    health_factor18: int,
    liquidation_threshold18: int,
    pd: PricesAndDecimals,
) -> int:
    """Kind 0: the whole amount is collateral, borrow as much as the target allows."""
    _check_denominators(health_factor18, liquidation_threshold18, pd)
    return (
        _WAD * collateral_amount // health_factor18
        * liquidation_threshold18
        * pd.price_collateral // pd.price_borrow
        * pd.rb10pow_dec // _WAD // pd.rc10pow_dec
    )


def exact_borrow_out_for_min_collateral_in(
    borrow_amount: int,
    health_factor18: int,
    liquidation_threshold18: int,
    pd: PricesAndDecimals,
) -> int:
    """Kind 2: minimal collateral that keeps ``borrow_amount`` at the target health factor."""
    _check_denominators(health_factor18, liquidation_threshold18, pd)
    return (
        borrow_amount * health_factor18 * pd.rc10pow_dec * pd.price_borrow
        // liquidation_threshold18 // pd.price_collateral // pd.rb10pow_dec
    )


def get_collateral_amount_to_convert(
    entry_data: EntryData | Sequence[int] | None,
    collateral_amount: int,
    health_factor18: int,
    liquidation_threshold18: int,
) -> int:
    """Part of ``collateral_amount`` to be used as collateral for kind 1.

    The rest is kept, so that kept value : borrowed value == x : y (USD).
    Other kinds use the whole amount.
    """
    entry = EntryData.decode(entry_data)
    if entry.kind != ENTRY_KIND_EXACT_PROPORTION_1:
        return collateral_amount
    x, y = entry.part_x, entry.part_y
    if x == 0 or y == 0:
        raise ZeroValueNotAllowed("proportion parts")
    if health_factor18 == 0:
        raise DivisionByZero("health factor")
    return (
        _WAD * collateral_amount * y
        // (_WAD * y + x * liquidation_threshold18 * _WAD // health_factor18)
    )


def exact_proportion(
    collateral_amount: int,
    health_factor18: int,
    liquidation_threshold18: int,
    pd: PricesAndDecimals,
    entry_data: EntryData | Sequence[int] | None,
) -> tuple[int, int]:
    """Kind 1: return (collateral used, amount to borrow)."""
    _check_denominators(health_factor18, liquidation_threshold18, pd)
    collateral = get_collateral_amount_to_convert(
        entry_data, collateral_amount, health_factor18, liquidation_threshold18
    )
    borrow = exact_collateral_in_for_max_borrow_out(
        collateral, health_factor18, liquidation_threshold18, pd
    )
    return collateral, borrow


def evaluate(
    entry_data: EntryData | Sequence[int] | None,
    amount_in: int,
    health_factor18: int,
    liquidation_threshold18: int,
    pd: PricesAndDecimals,
) -> tuple[int, int]:
    """Split ``amount_in`` according to ``entry_data``.

    Returns (collateral amount, amount to borrow). For kind 2 ``amount_in`` is
    the amount to borrow.
    """
    entry = EntryData.decode(entry_data)
    if entry.kind == ENTRY_KIND_EXACT_COLLATERAL_IN_FOR_MAX_BORROW_OUT_0:
        return amount_in, exact_collateral_in_for_max_borrow_out(
            amount_in, health_factor18, liquidation_threshold18, pd
        )
    if entry.kind == ENTRY_KIND_EXACT_PROPORTION_1:
        return exact_proportion(amount_in, health_factor18, liquidation_threshold18, pd, entry)
    if entry.kind == ENTRY_KIND_EXACT_BORROW_OUT_FOR_MIN_COLLATERAL_IN_2:
        collateral = exact_borrow_out_for_min_collateral_in(
            amount_in, health_factor18, liquidation_threshold18, pd
        )
        return collateral, amount_in
    raise IncorrectValue(f"unknown entry kind {entry.kind}")


def round_trip_error(
    collateral_amount: int,
    health_factor18: int,
    liquidation_threshold18: int,
    pd: PricesAndDecimals,
) -> int:
    """Collateral lost by kind 0 followed by kind 2.

    Floor division in both directions means the result never exceeds the
    input; the loss is bounded by the collateral worth of one smallest unit of
    the borrow asset plus one unit per intermediate division.
    """
    borrow = exact_collateral_in_for_max_borrow_out(
        collateral_amount, health_factor18, liquidation_threshold18, pd
    )
    back = exact_borrow_out_for_min_collateral_in(
        borrow, health_factor18, liquidation_threshold18, pd
    )
    return collateral_amount - back
