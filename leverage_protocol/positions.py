"""
positions.py - Opening, closing and topping up leveraged positions

A position borrows LP capital against posted collateral:

    borrowed = collateral * (leverage - PRECISION) / PRECISION
    notional = collateral + borrowed

The notional, less the trading fee, is staked into the asset through the
stake service. Closing redeems the asset (fully or a fraction), repays the
principal and accrued borrowing fees, and pays the remainder to the user.

Every operation here mutates the ledger it is given and is expected to run
inside ProtocolLedger.atomic().
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Optional
import logging

from .config import FeeCategory
from .core import (
    PRECISION, PROTOCOL_WALLET, EXTERNAL_WALLET,
    Position, ProtocolEvent, EMPTY_POSITION,
    CircuitBreakerActive, InsufficientLiquidity, InsufficientProceeds,
    InvalidAlphaPrice, InvalidLeverage, InvalidValue, LeverageTooHigh,
    LiquidityBelowThreshold, NoAlpha, PositionAlreadyActive, PositionInactive,
    SlippageExceeded, StakeFailed, UnstakeFailed, UserCooldownActive,
    checked_add, checked_sub, mul_div,
    rao_to_wei, wei_to_rao,
)
from .distribution import distribute_fee
from .fees import calculate_trading_fee, settle_accrued_fees
from .liquidity import refresh_circuit_breaker
from .services import PriceService, StakeService
from .tiers import fee_discount_for, max_leverage_for

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class CloseResult:
    """Settlement of a (partial) close."""
    proceeds: int
    trading_fee: int
    principal_repaid: int
    fees_repaid: int
    payout: int
    fraction: int


def calculate_borrowed(collateral: int, leverage: int) -> int:
    return mul_div(collateral, leverage - PRECISION, PRECISION)


def calculate_leverage(collateral: int, borrowed: int) -> int:
    if collateral == 0:
        return 0
    return mul_div(collateral + borrowed, PRECISION, collateral)


def check_user_cooldown(ledger, address: str) -> None:
    last = ledger.last_user_action_block.get(address)
    cooldown = ledger.config.user_action_cooldown_blocks
    if last is not None and ledger.current_block - last < cooldown:
        raise UserCooldownActive(
            f"{address} acted at block {last}; next action allowed at {last + cooldown}"
        )


def _stake(ledger, stake_service: StakeService, validator_ref: str, asset: int,
           amount: int, min_asset_out: int) -> int:
    """Send `amount` wei from the protocol wallet into the asset; returns units received."""
    amount_rao = wei_to_rao(amount)
    if amount_rao == 0:
        raise InvalidValue(f"stake amount {amount} is below one RAO")
    received = stake_service.deposit(validator_ref, amount_rao, asset)
    if received == 0:
        raise StakeFailed(f"stake of {amount_rao} RAO into asset {asset} returned nothing")
    if received < min_asset_out:
        raise SlippageExceeded(f"received {received} asset units, wanted at least {min_asset_out}")
    ledger.transfer(PROTOCOL_WALLET, EXTERNAL_WALLET, rao_to_wei(amount_rao))
    return received


def open_position(
    ledger,
    price_service: PriceService,
    stake_service: StakeService,
    user: str,
    asset: int,
    collateral: int,
    leverage: int,
    validator_ref: Optional[str] = None,
    min_asset_out: int = 0,
) -> Position:
    """
    Open a leveraged position.

    Args:
        ledger: ProtocolLedger
        price_service: Source of the entry spot price
        stake_service: Stakes the notional into the asset
        user: Position owner; pays `collateral` from their balance
        asset: Asset id
        collateral: Posted collateral in wei
        leverage: Target leverage scaled by PRECISION (1x to the tier cap)
        validator_ref: Stake routing hint (defaults to the protocol validator)
        min_asset_out: Slippage floor on asset units received

    Returns:
        The new Position

    Raises:
        UserCooldownActive, InvalidValue, PositionAlreadyActive,
        InvalidLeverage, LeverageTooHigh,
        CircuitBreakerActive: if the position borrows while the breaker is on
        LiquidityBelowThreshold, InsufficientLiquidity, InvalidAlphaPrice,
        StakeFailed, SlippageExceeded, InsufficientFunds
    """
    config = ledger.config
    check_user_cooldown(ledger, user)
    if collateral <= 0:
        raise InvalidValue(f"collateral must be positive, got {collateral}")
    if ledger.get_position(user, asset).is_active:
        raise PositionAlreadyActive(f"{user} already has a position in asset {asset}")
    if leverage < PRECISION:
        raise InvalidLeverage(f"leverage {leverage} below 1x")
    cap = max_leverage_for(ledger, user)
    if leverage > cap:
        raise LeverageTooHigh(f"leverage {leverage} above cap {cap}")

    agg = ledger.aggregates
    borrowed = calculate_borrowed(collateral, leverage)
    if borrowed:
        if ledger.liquidity_circuit_breaker:
            raise CircuitBreakerActive("new borrowing paused by the liquidity circuit breaker")
        if agg.total_lp_stakes < config.min_liquidity_threshold:
            raise LiquidityBelowThreshold(
                f"pool {agg.total_lp_stakes} below minimum {config.min_liquidity_threshold}"
            )
        new_borrowed = agg.total_borrowed + borrowed
        if new_borrowed * PRECISION > agg.total_lp_stakes * config.max_utilization_rate:
            raise InsufficientLiquidity(
                f"borrowing {borrowed} would exceed max utilization of {agg.total_lp_stakes}"
            )

    price = price_service.spot_price(asset)
    if price <= 0:
        raise InvalidAlphaPrice(f"no price for asset {asset}")

    notional = checked_add(collateral, borrowed)
    fee = calculate_trading_fee(notional, config.trading_fee_rate, fee_discount_for(ledger, user))

    ledger.transfer(user, PROTOCOL_WALLET, collateral)
    validator = validator_ref or config.protocol_validator
    received = _stake(ledger, stake_service, validator, asset, notional - fee, min_asset_out)

    position = Position(
        collateral=collateral,
        borrowed=borrowed,
        asset_amount=received,
        leverage=leverage,
        entry_price=price,
        last_update_block=ledger.current_block,
        accrued_fees=0,
        is_active=True,
        validator_ref=validator,
    )
    ledger.set_position(user, asset, position)

    pool = ledger.get_asset_pool(asset)
    ledger.set_asset_pool(asset, replace(
        pool,
        total_collateral=checked_add(pool.total_collateral, collateral),
        total_borrowed=checked_add(pool.total_borrowed, borrowed),
    ))
    ledger.update_aggregates(
        total_collateral=checked_add(agg.total_collateral, collateral),
        total_borrowed=checked_add(agg.total_borrowed, borrowed),
        total_volume=checked_add(agg.total_volume, notional),
        total_trades=agg.total_trades + 1,
    )
    ledger.adjust_user_stats(user, collateral=collateral, borrowed=borrowed, volume=notional)
    distribute_fee(ledger, FeeCategory.TRADING, fee)

    ledger.mark_user_action(user)
    refresh_circuit_breaker(ledger)
    ledger.emit(ProtocolEvent("PositionOpened", ledger.current_block, {
        'user': user, 'asset': asset, 'collateral': collateral, 'borrowed': borrowed,
        'leverage': leverage, 'asset_amount': received, 'trading_fee': fee,
    }))
    return position


def close_position(
    ledger,
    price_service: PriceService,
    stake_service: StakeService,
    user: str,
    asset: int,
    close_fraction: int = PRECISION,
    min_proceeds: int = 0,
) -> CloseResult:
    """
    Close all or part of a position.

    The redeemed fraction of the asset repays the same fraction of principal
    and accrued fees; the trading fee comes out of the proceeds first.

    Raises:
        PositionInactive, NoAlpha, UserCooldownActive, InvalidValue,
        UnstakeFailed, SlippageExceeded, InsufficientProceeds, TransferFailed
    """
    position = ledger.get_position(user, asset)
    if not position.is_active:
        raise PositionInactive(f"{user} has no position in asset {asset}")
    if position.asset_amount == 0:
        raise NoAlpha(f"{user} position in asset {asset} holds no asset")
    if not 0 < close_fraction <= PRECISION:
        raise InvalidValue(f"close fraction {close_fraction} not in (0, {PRECISION}]")
    check_user_cooldown(ledger, user)

    position = settle_accrued_fees(ledger, user, asset)
    full = close_fraction == PRECISION

    def portion(value: int) -> int:
        return value if full else mul_div(value, close_fraction, PRECISION)

    asset_out = portion(position.asset_amount)
    if asset_out == 0:
        raise InvalidValue("close fraction redeems no asset")

    validator = position.validator_ref or ledger.config.protocol_validator
    proceeds_rao = stake_service.redeem(validator, asset_out, asset)
    if proceeds_rao == 0:
        raise UnstakeFailed(f"redeeming {asset_out} units of asset {asset} returned nothing")
    proceeds = rao_to_wei(proceeds_rao)
    ledger.transfer(EXTERNAL_WALLET, PROTOCOL_WALLET, proceeds)
    if proceeds < min_proceeds:
        raise SlippageExceeded(f"proceeds {proceeds} below minimum {min_proceeds}")

    fee = calculate_trading_fee(proceeds, ledger.config.trading_fee_rate, fee_discount_for(ledger, user))
    principal = portion(position.borrowed)
    interest = portion(position.accrued_fees)
    debt = principal + interest
    if proceeds - fee < debt:
        raise InsufficientProceeds(
            f"proceeds {proceeds} less fee {fee} do not cover debt {debt}"
        )
    payout = proceeds - fee - debt
    collateral_out = portion(position.collateral)

    if full:
        updated = EMPTY_POSITION
    else:
        collateral = position.collateral - collateral_out
        borrowed = position.borrowed - principal
        updated = replace(
            position,
            collateral=collateral,
            borrowed=borrowed,
            asset_amount=position.asset_amount - asset_out,
            accrued_fees=position.accrued_fees - interest,
            leverage=calculate_leverage(collateral, borrowed),
        )
    ledger.set_position(user, asset, updated)

    agg = ledger.aggregates
    pool = ledger.get_asset_pool(asset)
    ledger.set_asset_pool(asset, replace(
        pool,
        total_collateral=checked_sub(pool.total_collateral, collateral_out),
        total_borrowed=checked_sub(pool.total_borrowed, principal),
    ))
    ledger.update_aggregates(
        total_collateral=checked_sub(agg.total_collateral, collateral_out),
        total_borrowed=checked_sub(agg.total_borrowed, principal),
        total_volume=checked_add(agg.total_volume, proceeds),
        total_trades=agg.total_trades + 1,
        accrued_borrowing_fees=checked_sub(agg.accrued_borrowing_fees, interest),
    )
    ledger.adjust_user_stats(user, collateral=-collateral_out, borrowed=-principal, volume=proceeds)
    distribute_fee(ledger, FeeCategory.BORROWING, interest)
    distribute_fee(ledger, FeeCategory.TRADING, fee)

    ledger.transfer(PROTOCOL_WALLET, user, payout)
    ledger.mark_user_action(user)
    refresh_circuit_breaker(ledger)
    ledger.emit(ProtocolEvent("PositionClosed", ledger.current_block, {
        'user': user, 'asset': asset, 'fraction': close_fraction, 'proceeds': proceeds,
        'principal_repaid': principal, 'fees_repaid': interest, 'payout': payout,
    }))
    return CloseResult(
        proceeds=proceeds,
        trading_fee=fee,
        principal_repaid=principal,
        fees_repaid=interest,
        payout=payout,
        fraction=close_fraction,
    )


def add_collateral(
    ledger,
    stake_service: StakeService,
    user: str,
    asset: int,
    amount: int,
    min_asset_out: int = 0,
) -> Position:
    """
    Post extra collateral to an open position, lowering its leverage.

    The amount is staked into the asset alongside the opening notional.

    Raises:
        PositionInactive, InvalidValue, UserCooldownActive, StakeFailed,
        SlippageExceeded, InsufficientFunds
    """
    position = ledger.get_position(user, asset)
    if not position.is_active:
        raise PositionInactive(f"{user} has no position in asset {asset}")
    if amount <= 0:
        raise InvalidValue(f"collateral must be positive, got {amount}")
    check_user_cooldown(ledger, user)

    position = settle_accrued_fees(ledger, user, asset)
    ledger.transfer(user, PROTOCOL_WALLET, amount)
    validator = position.validator_ref or ledger.config.protocol_validator
    received = _stake(ledger, stake_service, validator, asset, amount, min_asset_out)

    collateral = checked_add(position.collateral, amount)
    position = replace(
        position,
        collateral=collateral,
        asset_amount=checked_add(position.asset_amount, received),
        leverage=calculate_leverage(collateral, position.borrowed),
    )
    ledger.set_position(user, asset, position)

    agg = ledger.aggregates
    pool = ledger.get_asset_pool(asset)
    ledger.set_asset_pool(asset, replace(pool, total_collateral=checked_add(pool.total_collateral, amount)))
    ledger.update_aggregates(total_collateral=checked_add(agg.total_collateral, amount))
    ledger.adjust_user_stats(user, collateral=amount)

    ledger.mark_user_action(user)
    ledger.emit(ProtocolEvent("CollateralAdded", ledger.current_block, {
        'user': user, 'asset': asset, 'amount': amount, 'asset_amount': received,
        'leverage': position.leverage,
    }))
    return position
