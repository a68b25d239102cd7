"""
fees.py - Lazy borrowing-fee accrual and trading fees

Borrowing fees are never pushed block by block. They are computed on
demand from the stored checkpoint:

    accrued = accrued_fees + borrowed * rate(util) * elapsed / (PRECISION * 360)

where rate(util) is re-evaluated from the owning asset pool at call time.
The computation is idempotent: calling it twice in the same block returns
the same value. settle_accrued_fees() writes the result back and moves the
checkpoint to the current block.
"""

from __future__ import annotations
from dataclasses import replace
import logging

from .core import (
    PRECISION, RATE_PERIOD_BLOCKS,
    Position, ProtocolView,
    checked_add, checked_mul, mul_div,
)
from .risk import current_borrow_rate

logger = logging.getLogger(__name__)


def calculate_accrued_fees(
    stored_fees: int,
    borrowed: int,
    rate_per_360: int,
    elapsed_blocks: int,
) -> int:
    """
    Accrued borrowing fees after `elapsed_blocks` at a fixed rate.

    Pure function. Non-positive elapsed time or zero principal returns the
    stored amount unchanged.
    """
    if elapsed_blocks <= 0 or borrowed == 0 or rate_per_360 == 0:
        return stored_fees
    interest = mul_div(checked_mul(borrowed, rate_per_360), elapsed_blocks,
                       PRECISION * RATE_PERIOD_BLOCKS)
    return checked_add(stored_fees, interest)


def compute_accrued_fees(view: ProtocolView, user: str, asset: int) -> int:
    """Accrued fees of a position as of the view's current block (0 if inactive)."""
    position = view.get_position(user, asset)
    if not position.is_active:
        return 0
    rate = current_borrow_rate(view, asset)
    elapsed = view.current_block - position.last_update_block
    return calculate_accrued_fees(position.accrued_fees, position.borrowed, rate, elapsed)


def compute_total_debt(view: ProtocolView, user: str, asset: int) -> int:
    """Principal plus accrued fees."""
    position = view.get_position(user, asset)
    return checked_add(position.borrowed, compute_accrued_fees(view, user, asset))


def settle_accrued_fees(ledger, user: str, asset: int) -> Position:
    """
    Checkpoint a position's accrued fees at the current block.

    The newly accrued amount is added to the protocol-wide
    accrued_borrowing_fees aggregate, whose checkpoint moves to the
    current block. Returns the updated position. Inactive positions are
    returned unchanged.
    """
    position = ledger.get_position(user, asset)
    if not position.is_active:
        return position
    accrued = compute_accrued_fees(ledger, user, asset)
    if accrued != position.accrued_fees:
        logger.debug("Settled fees for %s/%d: %d -> %d",
                     user, asset, position.accrued_fees, accrued)
    agg = ledger.aggregates
    ledger.update_aggregates(
        accrued_borrowing_fees=checked_add(agg.accrued_borrowing_fees, accrued - position.accrued_fees),
        last_accrued_borrowing_fees_update=ledger.current_block,
    )
    position = replace(position, accrued_fees=accrued, last_update_block=ledger.current_block)
    ledger.set_position(user, asset, position)
    return position


def compute_protocol_accrued_fees(ledger) -> int:
    """
    Borrowing fees accrued across all open positions as of the current block.

    The stored aggregate covers fees up to each position's last checkpoint;
    this adds what has accrued since, without writing anything back.
    """
    agg = ledger.aggregates
    pending = sum(
        compute_accrued_fees(ledger, user, asset) - position.accrued_fees
        for (user, asset), position in ledger.active_positions()
    )
    return checked_add(agg.accrued_borrowing_fees, pending)


def calculate_trading_fee(notional: int, fee_rate: int, discount: int = 0) -> int:
    """
    Trading fee on a notional amount after a tier discount.

    fee = notional * fee_rate / PRECISION * (PRECISION - discount) / PRECISION
    """
    gross = mul_div(notional, fee_rate, PRECISION)
    return mul_div(gross, PRECISION - discount, PRECISION)
