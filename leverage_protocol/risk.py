"""
risk.py - Solvency and interest-rate calculations

Pure functions over integers scaled by PRECISION:

    health_ratio = current_value * PRECISION / total_debt
    liquidatable = health_ratio < liquidation_threshold

    borrow rate (per 360 blocks), kinked at optimal_utilization:
        u <= kink: base + slope * u / kink
        u >  kink: base + slope + jump_slope * (u - kink) / (PRECISION - kink)

There is a single binary threshold: a position is either liquidatable or
not. No warning tier exists.
"""

from __future__ import annotations
from typing import Any

from .core import (
    PRECISION, MAX_HEALTH_RATIO,
    ProtocolView,
    mul_div,
)


def health_ratio(current_value: int, total_debt: int) -> int:
    """
    Collateral coverage of a debt, scaled by PRECISION.

    Returns MAX_HEALTH_RATIO when there is no debt, so a debt-free position
    can never be liquidatable.
    """
    if current_value < 0 or total_debt < 0:
        raise ValueError("value and debt must be non-negative")
    if total_debt == 0:
        return MAX_HEALTH_RATIO
    return mul_div(current_value, PRECISION, total_debt)


def is_liquidatable(ratio: int, threshold: int) -> bool:
    """True iff the health ratio is strictly below the threshold."""
    return ratio < threshold


def utilization_rate(total_borrowed: int, total_lp_stakes: int) -> int:
    """
    Borrowed share of LP capital, clamped to [0, PRECISION].

    An empty pool with outstanding debt counts as fully utilized.
    """
    if total_borrowed <= 0:
        return 0
    if total_lp_stakes <= 0:
        return PRECISION
    return min(mul_div(total_borrowed, PRECISION, total_lp_stakes), PRECISION)


def asset_utilization(view: ProtocolView, asset: int) -> int:
    """
    Utilization of an asset pool's borrowing against the LP capital backing it.

    Borrowing draws on the shared LP pool, not on the pool's own
    collateral: at 2x leverage a position borrows as much as it posts,
    so a per-pool bound of total_borrowed <= total_collateral *
    max_utilization_rate would reject every position above 1.9x. The
    bound is carried by LP stakes instead. Opening a position and
    withdrawing liquidity both require

        total_borrowed * PRECISION <= total_lp_stakes * max_utilization_rate

    which caps every pool's share of that borrowing as well. Only a
    bad-debt write-down of LP stakes can push past it, and then new
    borrowing and withdrawals stay blocked until it recovers.
    """
    pool = view.get_asset_pool(asset)
    return utilization_rate(pool.total_borrowed, view.aggregates.total_lp_stakes)


def dynamic_borrow_rate_per_360(utilization: int, config: Any) -> int:
    """
    Borrow rate per 360 blocks at a given utilization.

    Monotonically non-decreasing in utilization. Out-of-range input is
    clamped to [0, PRECISION].

    Args:
        utilization: Borrowed / LP stakes, scaled by PRECISION
        config: Object exposing borrowing_fee_rate, borrow_rate_slope,
            borrow_rate_jump_slope and optimal_utilization

    Returns:
        Rate scaled by PRECISION
    """
    u = max(0, min(utilization, PRECISION))
    kink = config.optimal_utilization
    rate = config.borrowing_fee_rate

    if u <= kink:
        return rate + mul_div(config.borrow_rate_slope, u, kink)

    rate += config.borrow_rate_slope
    return rate + mul_div(config.borrow_rate_jump_slope, u - kink, PRECISION - kink)


def current_borrow_rate(view: ProtocolView, asset: int) -> int:
    """Borrow rate applying to positions in an asset right now."""
    return dynamic_borrow_rate_per_360(asset_utilization(view, asset), view.config)
