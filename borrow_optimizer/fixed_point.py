"""Fixed-point helpers shared by ranking, health checks and venues. No I/O.

Conventions:
    * prices are 18-decimal integers in a common unit (USD),
    * health factors are 2-decimal in configuration (``150`` = 1.5) and
      18-decimal in calculations,
    * borrow cost, supply income and rewards are 36-decimal values in terms
      of the borrow asset.
"""
from __future__ import annotations

from .errors import DivisionByZero, ZeroPrice

WAD = 10**18
RAY36 = 10**36
MAX_UINT = 2**256 - 1
HEALTH_FACTOR_INFINITE = MAX_UINT
DEBT_GAP_DENOMINATOR = 100_000
REBALANCE_DENOMINATOR = 100_000


def health_factor2_to_18(health_factor2: int) -> int:
    return health_factor2 * 10**16


def value18(amount: int, price18: int, decimals: int) -> int:
    """Value of ``amount`` tokens in the common unit, 18 decimals."""
    return amount * price18 // 10**decimals


def amount_in_borrow_asset36(
    collateral_amount: int,
    price_collateral18: int,
    price_borrow18: int,
    collateral_decimals: int,
) -> int:
    """Convert a collateral amount to borrow-asset units with 36 decimals."""
    if price_borrow18 == 0 or price_collateral18 == 0:
        raise ZeroPrice("collateral or borrow asset")
    return collateral_amount * price_collateral18 * RAY36 // (
        price_borrow18 * 10**collateral_decimals
    )


def calc_apr18(
    borrow_cost36: int,
    supply_income36: int,
    rewards_amount36: int,
    amount_collateral_in_borrow_asset36: int,
    rewards_factor18: int,
) -> int:
    """Net cost of a plan relative to the collateral, 18 decimals.

    apr = (cost - income - rewards * rewardsFactor) / collateralInBorrowAsset

    Can be negative when income and rewards exceed the borrow cost.
    """
    if amount_collateral_in_borrow_asset36 == 0:
        raise DivisionByZero("amount of collateral in borrow asset")
    rewards36 = rewards_amount36 * rewards_factor18 // WAD
    net36 = borrow_cost36 - supply_income36 - rewards36
    # floor division of negatives rounds away from zero; keep it symmetric
    if net36 < 0:
        return -((-net36) * WAD // amount_collateral_in_borrow_asset36)
    return net36 * WAD // amount_collateral_in_borrow_asset36


def calc_health_factor18(
    collateral_amount: int,
    debt_amount: int,
    liquidation_threshold18: int,
    price_collateral18: int,
    price_borrow18: int,
    collateral_decimals: int,
    borrow_decimals: int,
) -> int:
    """health_factor = liquidationThreshold * collateralValue / debtValue."""
    if price_collateral18 == 0 or price_borrow18 == 0:
        raise ZeroPrice("collateral or borrow asset")
    if debt_amount == 0:
        return HEALTH_FACTOR_INFINITE
    collateral_value = value18(collateral_amount, price_collateral18, collateral_decimals)
    debt_value = value18(debt_amount, price_borrow18, borrow_decimals)
    if debt_value == 0:
        return HEALTH_FACTOR_INFINITE
    return liquidation_threshold18 * collateral_value // debt_value


def amounts_to_restore_health(
    collateral_amount: int,
    amount_to_pay: int,
    health_factor18: int,
    target_health_factor18: int,
) -> tuple[int, int]:
    """Return (borrow asset to repay, collateral to add) to reach the target.

    Either one alone restores the target health factor.
    """
    if target_health_factor18 == 0 or health_factor18 == 0:
        raise DivisionByZero("health factor")
    if health_factor18 >= target_health_factor18:
        return 0, 0
    amount_borrow_asset = (
        amount_to_pay * (target_health_factor18 - health_factor18) // target_health_factor18
    )
    amount_collateral_asset = (
        collateral_amount * (target_health_factor18 - health_factor18) // health_factor18
    )
    return amount_borrow_asset, amount_collateral_asset


def collateral_amount_to_fix(
    collateral_amount: int,
    health_factor18: int,
    target_health_factor18: int,
) -> int:
    """Collateral (signed) that brings an existing position to the target.

    Positive when more collateral is required, negative when the position is
    healthier than needed and some collateral can back a new borrow.
    """
    if health_factor18 == 0:
        raise DivisionByZero("health factor")
    if health_factor18 == HEALTH_FACTOR_INFINITE:
        return 0
    return collateral_amount * target_health_factor18 // health_factor18 - collateral_amount


def calc_amount_to_repay(amount_to_pay: int, debt_gap: int, percent: int = 100) -> int:
    """Debt plus ``percent`` of the debt gap (per 100_000 of the debt)."""
    return amount_to_pay * (debt_gap * percent // 100 + DEBT_GAP_DENOMINATOR) // DEBT_GAP_DENOMINATOR


def is_better_apr(
    current_apr18: int,
    candidate_apr18: int,
    threshold_apr: int,
    tolerance18: int = 0,
) -> bool:
    """True if ``candidate`` beats ``current`` by more than ``threshold_apr`` percent.

    Differences not exceeding ``tolerance18`` are treated as equal rates.
    """
    improvement = current_apr18 - candidate_apr18
    if improvement <= tolerance18:
        return False
    return improvement * 100 > threshold_apr * abs(current_apr18)
