"""
distribution.py - Fee splitting and the LP reward accumulator

Every fee event is split three ways by its category's FeeSplit:

    lp share        -> acc_lp_fees_per_share += lp * PRECISION / total_lp_shares
    liquidator share -> liquidator_reward_pool (or paid directly by the caller)
    protocol share  -> protocol_fees and buyback_pool

LPs are never iterated. Each LP keeps a checkpoint of the accumulator and
its claimable amount is

    shares * (acc - checkpoint) / PRECISION + pending_fees

The checkpoint moves on every deposit, withdrawal and claim (settle_lp).
"""

from __future__ import annotations
from dataclasses import dataclass, replace
import logging

from .config import FeeCategory, FeeSplit
from .core import (
    PRECISION,
    LiquidityProvider, ProtocolView,
    checked_add, mul_div,
)

logger = logging.getLogger(__name__)


_CATEGORY_TOTALS = {
    FeeCategory.TRADING: 'total_trading_fees',
    FeeCategory.BORROWING: 'total_borrowing_fees',
    FeeCategory.LIQUIDATION: 'total_liquidation_fees',
}


@dataclass(frozen=True, slots=True)
class FeeAllocation:
    """Result of splitting one fee. The three parts sum to the fee exactly."""
    lp_amount: int
    liquidator_amount: int
    protocol_amount: int

    @property
    def total(self) -> int:
        return self.lp_amount + self.liquidator_amount + self.protocol_amount


def split_fee(amount: int, split: FeeSplit) -> FeeAllocation:
    """
    Split a fee by a FeeSplit.

    LP and liquidator shares are rounded down; the protocol takes the
    rounding remainder.
    """
    if amount < 0:
        raise ValueError(f"fee amount cannot be negative, got {amount}")
    lp_amount = mul_div(amount, split.lp_share, PRECISION)
    liquidator_amount = mul_div(amount, split.liquidator_share, PRECISION)
    return FeeAllocation(
        lp_amount=lp_amount,
        liquidator_amount=liquidator_amount,
        protocol_amount=amount - lp_amount - liquidator_amount,
    )


def pending_lp_fees(view: ProtocolView, address: str) -> int:
    """Fees claimable by an LP right now."""
    lp = view.get_liquidity_provider(address)
    accrued = mul_div(lp.shares, view.aggregates.acc_lp_fees_per_share - lp.fee_checkpoint, PRECISION)
    return checked_add(lp.pending_fees, accrued)


def settle_lp(ledger, address: str) -> LiquidityProvider:
    """Move an LP's accrued fees into pending_fees and checkpoint the accumulator."""
    lp = ledger.get_liquidity_provider(address)
    lp = replace(
        lp,
        pending_fees=pending_lp_fees(ledger, address),
        fee_checkpoint=ledger.aggregates.acc_lp_fees_per_share,
    )
    ledger.set_liquidity_provider(address, lp)
    return lp


def distribute_fee(
    ledger,
    category: FeeCategory,
    amount: int,
    pay_liquidator_directly: bool = False,
) -> FeeAllocation:
    """
    Book a fee already held in the protocol wallet.

    Args:
        ledger: ProtocolLedger
        category: Fee category selecting the split
        amount: Fee in wei
        pay_liquidator_directly: If True the liquidator share is left for the
            caller to transfer; otherwise it accumulates in the liquidator
            reward pool

    Returns:
        The FeeAllocation applied
    """
    category = FeeCategory(category)
    allocation = split_fee(amount, ledger.config.fee_split(category))
    if amount == 0:
        return allocation

    agg = ledger.aggregates
    changes = {_CATEGORY_TOTALS[category]: checked_add(getattr(agg, _CATEGORY_TOTALS[category]), amount)}

    protocol_amount = allocation.protocol_amount
    lp_amount = allocation.lp_amount
    if lp_amount and agg.total_lp_shares == 0:
        # Nobody to credit; the LP share falls to the protocol.
        protocol_amount += lp_amount
        lp_amount = 0
    if lp_amount:
        increment = mul_div(lp_amount, PRECISION, agg.total_lp_shares)
        credited = mul_div(increment, agg.total_lp_shares, PRECISION)
        changes['acc_lp_fees_per_share'] = checked_add(agg.acc_lp_fees_per_share, increment)
        changes['total_pending_lp_fees'] = checked_add(agg.total_pending_lp_fees, credited)
        # accumulator dust
        protocol_amount += lp_amount - credited

    if allocation.liquidator_amount and not pay_liquidator_directly:
        changes['liquidator_reward_pool'] = checked_add(
            agg.liquidator_reward_pool, allocation.liquidator_amount)

    if protocol_amount:
        changes['protocol_fees'] = checked_add(agg.protocol_fees, protocol_amount)
        changes['buyback_pool'] = checked_add(agg.buyback_pool, protocol_amount)

    ledger.update_aggregates(**changes)
    logger.debug("Distributed %s fee %d: lp=%d liquidator=%d protocol=%d",
                 category.value, amount, allocation.lp_amount,
                 allocation.liquidator_amount, allocation.protocol_amount)
    return allocation
