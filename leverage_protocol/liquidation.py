"""
liquidation.py - Solvency checks, the payout waterfall and liquidation requests

Liquidating a position runs, as one atomic unit:

    1. Eligible-check    active position holding asset
    2. Price-simulate    quote the whole holding (non-committing)
    3. Debt-settle       checkpoint accrued fees, health < threshold
    4. Unstake           redeem the holding; the REALIZED amount is used below
    5. Waterfall         debt first, then liquidation fee, then owner refund
    6. Ledger-clear      zero the position, update pools and aggregates
    7. Absorb            shortfall against protocol fees, then LP stakes
    8. Emit              LiquidationRecord

Waterfall (pure, calculate_liquidation_waterfall):

    debt_repaid = min(proceeds, total_debt)
    remainder   = proceeds - debt_repaid
    fee         = min(remainder * liquidation_fee_rate / PRECISION, remainder)
    returned    = remainder - fee

    debt_repaid + fee + returned == proceeds, always.

The quote only decides eligibility. Proceeds may differ from it and the
payout follows the proceeds.
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from hashlib import sha256
from typing import List, Sequence
import logging

import numpy as np

from .config import FeeCategory, FeeSplit
from .core import (
    PRECISION, PROTOCOL_WALLET, EXTERNAL_WALLET, LIQUIDATION_REQUEST_WINDOW_BLOCKS,
    LiquidationRecord, LiquidationRequest, ProtocolView, EMPTY_POSITION,
    ArrayLengthMismatch, CollateralReturnFailed, DuplicateRequest, InvalidValue,
    LiquiFeeTransferFailed, NoAlpha, NotLiquidatable, PositionInactive,
    PositionNotFound, RequestExpired, RequestNotFound, UnstakeFailed,
    checked_add, checked_sub, mul_div, rao_to_wei,
)
from .distribution import distribute_fee, split_fee
from .fees import compute_accrued_fees, settle_accrued_fees
from .liquidity import absorb_bad_debt, refresh_circuit_breaker
from .risk import health_ratio, is_liquidatable
from .services import PriceService, StakeService

logger = logging.getLogger(__name__)


# ============================================================================
# PURE CALCULATIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class LiquidationWaterfall:
    """Allocation of realized liquidation proceeds."""
    proceeds: int
    debt_repaid: int
    liquidation_fee: int
    lp_share: int
    liquidator_share: int
    protocol_share: int
    returned_to_user: int
    shortfall: int


def calculate_liquidation_waterfall(
    proceeds: int,
    total_debt: int,
    liquidation_fee_rate: int,
    split: FeeSplit,
) -> LiquidationWaterfall:
    """
    Allocate proceeds to debt, liquidation fee and the position owner.

    Args:
        proceeds: Realized proceeds in wei
        total_debt: Principal plus accrued fees in wei
        liquidation_fee_rate: Fee rate on the remainder, scaled by PRECISION
        split: Liquidation fee split

    Returns:
        LiquidationWaterfall; shortfall is the uncovered debt (bad debt)
    """
    if proceeds < 0 or total_debt < 0:
        raise ValueError("proceeds and debt must be non-negative")
    debt_repaid = min(proceeds, total_debt)
    remainder = proceeds - debt_repaid
    fee = min(mul_div(remainder, liquidation_fee_rate, PRECISION), remainder)
    allocation = split_fee(fee, split)
    return LiquidationWaterfall(
        proceeds=proceeds,
        debt_repaid=debt_repaid,
        liquidation_fee=fee,
        lp_share=allocation.lp_amount,
        liquidator_share=allocation.liquidator_amount,
        protocol_share=allocation.protocol_amount,
        returned_to_user=remainder - fee,
        shortfall=total_debt - debt_repaid,
    )


@dataclass(frozen=True, slots=True)
class PositionHealth:
    current_value: int
    total_debt: int
    health_ratio: int
    is_liquidatable: bool


def compute_position_health(
    view: ProtocolView,
    price_service: PriceService,
    user: str,
    asset: int,
) -> PositionHealth:
    """
    Health of a position at the view's current block, from a live quote.

    Raises:
        PositionInactive: if there is no active position
        InvalidValue: if the quote is zero
    """
    position = view.get_position(user, asset)
    if not position.is_active:
        raise PositionInactive(f"{user} has no position in asset {asset}")
    quote = price_service.quote(asset, position.asset_amount)
    if quote <= 0:
        raise InvalidValue(f"zero quote for {position.asset_amount} units of asset {asset}")
    value = rao_to_wei(quote)
    debt = checked_add(position.borrowed, compute_accrued_fees(view, user, asset))
    ratio = health_ratio(value, debt)
    return PositionHealth(
        current_value=value,
        total_debt=debt,
        health_ratio=ratio,
        is_liquidatable=is_liquidatable(ratio, view.config.liquidation_threshold),
    )


def scan_liquidatable(
    view: ProtocolView,
    price_service: PriceService,
    users: Sequence[str],
    assets: Sequence[int],
) -> List[int]:
    """
    Indices of (users[i], assets[i]) pairs that are liquidatable now.

    Pure read. Pairs without an active position, or that cannot be quoted,
    are not liquidatable.

    Raises:
        ArrayLengthMismatch: if users and assets differ in length
    """
    if len(users) != len(assets):
        raise ArrayLengthMismatch(f"{len(users)} users vs {len(assets)} assets")

    # Object arrays keep Python ints; wei amounts overflow int64.
    values = np.zeros(len(users), dtype=object)
    debts = np.zeros(len(users), dtype=object)
    for i, (user, asset) in enumerate(zip(users, assets)):
        position = view.get_position(user, asset)
        if not position.is_active or position.asset_amount == 0:
            continue
        values[i] = rao_to_wei(price_service.quote(asset, position.asset_amount))
        debts[i] = position.borrowed + compute_accrued_fees(view, user, asset)

    # value * P / debt < threshold, cross-multiplied to stay in exact ints
    threshold = view.config.liquidation_threshold
    mask = (values > 0) & (debts > 0) & (values * PRECISION < debts * threshold)
    return np.flatnonzero(mask.astype(bool)).tolist()


def make_request_id(requester: str, user: str, asset: int, block: int) -> str:
    return sha256(f"{requester}|{user}|{asset}|{block}".encode("utf-8")).hexdigest()


# ============================================================================
# LIQUIDATION REQUESTS
# ============================================================================

def create_liquidation_request(
    ledger,
    requester: str,
    user: str,
    asset: int,
    justification_ref: str = "",
    content_hash: str = "",
) -> LiquidationRequest:
    """
    Record a reviewable liquidation request with a 360-block deadline.

    Raises:
        PositionNotFound: if the position is inactive
        DuplicateRequest: if the same requester already asked in this block
    """
    position = ledger.get_position(user, asset)
    if not position.is_active:
        raise PositionNotFound(f"{user} has no position in asset {asset}")

    block = ledger.current_block
    request_id = make_request_id(requester, user, asset, block)
    if request_id in ledger.liquidation_requests:
        raise DuplicateRequest(f"request {request_id} already exists")

    request = LiquidationRequest(
        request_id=request_id,
        requester=requester,
        user=user,
        asset=asset,
        request_block=block,
        deadline=block + LIQUIDATION_REQUEST_WINDOW_BLOCKS,
        justification_ref=justification_ref,
        content_hash=content_hash,
        collateral_snapshot=position.collateral,
        borrowed_snapshot=position.borrowed,
        asset_amount_snapshot=position.asset_amount,
    )
    ledger.set_liquidation_request(request)
    ledger.emit(request)
    return request


def get_liquidation_request(ledger, request_id: str) -> LiquidationRequest:
    """
    Look up a request, checking its deadline.

    Processed requests are returned regardless of age.

    Raises:
        RequestNotFound: if no such request exists
        RequestExpired: if the deadline has passed and it was never processed
    """
    request = ledger.liquidation_requests.get(request_id)
    if request is None:
        raise RequestNotFound(f"no liquidation request {request_id}")
    if not request.is_processed and request.is_expired(ledger.current_block):
        raise RequestExpired(f"request {request_id} expired at block {request.deadline}")
    return request


def _mark_requests_processed(ledger, user: str, asset: int) -> int:
    block = ledger.current_block
    marked = 0
    for request in list(ledger.liquidation_requests.values()):
        if (request.user == user and request.asset == asset
                and not request.is_processed and not request.is_expired(block)):
            ledger.set_liquidation_request(replace(request, is_processed=True))
            marked += 1
    return marked


# ============================================================================
# LIQUIDATION
# ============================================================================

def liquidate_position(
    ledger,
    price_service: PriceService,
    stake_service: StakeService,
    liquidator: str,
    user: str,
    asset: int,
    justification_ref: str = "",
    content_hash: str = "",
) -> LiquidationRecord:
    """
    Liquidate an unhealthy position.

    Debt is repaid principal first, then accrued fees (booked as borrowing
    fees). Uncovered debt is recorded in total_bad_debt and absorbed by
    protocol fees first, then by a pro-rata write-down of LP stakes. The liquidator
    receives its share of the liquidation fee plus the accumulated
    liquidator reward pool.

    Raises:
        PositionInactive, NoAlpha, InvalidValue, NotLiquidatable,
        UnstakeFailed, LiquiFeeTransferFailed, CollateralReturnFailed
    """
    position = ledger.get_position(user, asset)
    if not position.is_active:
        raise PositionInactive(f"{user} has no position in asset {asset}")
    if position.asset_amount == 0:
        raise NoAlpha(f"{user} position in asset {asset} holds no asset")

    quote = price_service.quote(asset, position.asset_amount)
    if quote <= 0:
        raise InvalidValue(f"zero quote for {position.asset_amount} units of asset {asset}")

    position = settle_accrued_fees(ledger, user, asset)
    total_debt = checked_add(position.borrowed, position.accrued_fees)
    ratio = health_ratio(rao_to_wei(quote), total_debt)
    config = ledger.config
    if not is_liquidatable(ratio, config.liquidation_threshold):
        raise NotLiquidatable(
            f"health {ratio} not below threshold {config.liquidation_threshold}"
        )

    validator = position.validator_ref or config.protocol_validator
    proceeds_rao = stake_service.redeem(validator, position.asset_amount, asset)
    if proceeds_rao == 0:
        raise UnstakeFailed(f"redeeming {position.asset_amount} units of asset {asset} returned nothing")
    proceeds = rao_to_wei(proceeds_rao)
    ledger.transfer(EXTERNAL_WALLET, PROTOCOL_WALLET, proceeds)

    waterfall = calculate_liquidation_waterfall(
        proceeds, total_debt, config.liquidation_fee_rate, config.liquidation_fee_split)
    principal_repaid = min(waterfall.debt_repaid, position.borrowed)
    fees_repaid = waterfall.debt_repaid - principal_repaid

    ledger.set_position(user, asset, EMPTY_POSITION)
    agg = ledger.aggregates
    pool = ledger.get_asset_pool(asset)
    ledger.set_asset_pool(asset, replace(
        pool,
        total_collateral=checked_sub(pool.total_collateral, position.collateral),
        total_borrowed=checked_sub(pool.total_borrowed, position.borrowed),
    ))
    ledger.update_aggregates(
        total_collateral=checked_sub(agg.total_collateral, position.collateral),
        total_borrowed=checked_sub(agg.total_borrowed, position.borrowed),
        total_liquidations=agg.total_liquidations + 1,
        total_liquidation_value=checked_add(agg.total_liquidation_value, proceeds),
        total_bad_debt=checked_add(agg.total_bad_debt, waterfall.shortfall),
        accrued_borrowing_fees=checked_sub(agg.accrued_borrowing_fees, position.accrued_fees),
    )
    ledger.adjust_user_stats(user, collateral=-position.collateral, borrowed=-position.borrowed)

    distribute_fee(ledger, FeeCategory.BORROWING, fees_repaid)
    distribute_fee(ledger, FeeCategory.LIQUIDATION, waterfall.liquidation_fee,
                   pay_liquidator_directly=True)
    absorb_bad_debt(ledger, waterfall.shortfall)

    reward_pool = ledger.aggregates.liquidator_reward_pool
    if reward_pool:
        ledger.update_aggregates(liquidator_reward_pool=0)
    ledger.transfer(PROTOCOL_WALLET, liquidator, waterfall.liquidator_share + reward_pool,
                    error=LiquiFeeTransferFailed)
    ledger.transfer(PROTOCOL_WALLET, user, waterfall.returned_to_user,
                    error=CollateralReturnFailed)

    _mark_requests_processed(ledger, user, asset)
    refresh_circuit_breaker(ledger)

    record = LiquidationRecord(
        user=user,
        liquidator=liquidator,
        asset=asset,
        realized_value=proceeds,
        fee_amount=waterfall.liquidation_fee,
        liquidator_share=waterfall.liquidator_share,
        justification_ref=justification_ref,
        content_hash=content_hash,
        block=ledger.current_block,
    )
    ledger.emit(record)
    if waterfall.shortfall:
        logger.warning("Liquidation of %s/%d left bad debt %d", user, asset, waterfall.shortfall)
    return record
