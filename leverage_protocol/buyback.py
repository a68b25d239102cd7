"""
buyback.py - Protocol buybacks funded by the protocol fee share

The buyback pool accumulates the protocol share of every fee. At most once
per buyback_interval_blocks, and only while the pool exceeds
buyback_execution_threshold, a buyback_rate fraction of the pool is staked
into the protocol asset through the protocol validator.
"""

from __future__ import annotations
import logging

from .core import (
    PRECISION, PROTOCOL_WALLET, EXTERNAL_WALLET,
    ProtocolEvent, ProtocolView,
    BuybackConditionsNotMet, StakeFailed,
    checked_add, checked_sub, mul_div, rao_to_wei, wei_to_rao,
)
from .services import StakeService

logger = logging.getLogger(__name__)


def calculate_buyback_amount(buyback_pool: int, buyback_rate: int) -> int:
    return mul_div(buyback_pool, buyback_rate, PRECISION)


def can_execute_buyback(view: ProtocolView) -> bool:
    agg = view.aggregates
    config = view.config
    if agg.buyback_pool <= config.buyback_execution_threshold:
        return False
    last = agg.last_buyback_block
    return last is None or view.current_block - last >= config.buyback_interval_blocks


def execute_buyback(ledger, stake_service: StakeService, caller: str) -> int:
    """
    Spend part of the buyback pool on the protocol asset.

    Returns:
        Amount spent in wei (whole RAO)

    Raises:
        BuybackConditionsNotMet: if the interval has not elapsed or the
            pool is at or below the execution threshold
        StakeFailed: if the stake service returns nothing
    """
    if not can_execute_buyback(ledger):
        agg = ledger.aggregates
        raise BuybackConditionsNotMet(
            f"pool {agg.buyback_pool}, last buyback at {agg.last_buyback_block}, "
            f"block {ledger.current_block}"
        )

    config = ledger.config
    agg = ledger.aggregates
    amount_rao = wei_to_rao(calculate_buyback_amount(agg.buyback_pool, config.buyback_rate))
    amount = rao_to_wei(amount_rao)
    if amount_rao == 0:
        raise BuybackConditionsNotMet("buyback amount rounds to zero")

    bought = stake_service.deposit(config.protocol_validator, amount_rao, config.protocol_asset_id)
    if bought == 0:
        raise StakeFailed(f"buyback stake of {amount_rao} RAO returned nothing")
    ledger.transfer(PROTOCOL_WALLET, EXTERNAL_WALLET, amount)

    ledger.update_aggregates(
        buyback_pool=checked_sub(agg.buyback_pool, amount),
        protocol_fees=checked_sub(agg.protocol_fees, amount),
        total_used_for_buybacks=checked_add(agg.total_used_for_buybacks, amount),
        total_asset_bought=checked_add(agg.total_asset_bought, bought),
        last_buyback_block=ledger.current_block,
    )
    ledger.emit(ProtocolEvent("BuybackExecuted", ledger.current_block, {
        'caller': caller, 'amount': amount, 'asset_bought': bought,
    }))
    logger.info("Buyback of %d bought %d units of asset %d", amount, bought, config.protocol_asset_id)
    return amount
