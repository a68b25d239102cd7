"""
liquidity.py - LP deposits, withdrawals, fee claims, the circuit breaker and bad debt

Pool value is the total LP stake. Deposits mint shares in proportion to
the pool (1:1 for the first deposit); withdrawals burn them in the same
proportion. Every deposit, withdrawal and claim checkpoints the LP's fee
accumulator first, so share changes never re-price already earned fees.

Guardrails on withdrawal:
    - circuit breaker active         -> CircuitBreakerActive
    - borrowed > remaining * max_util -> UtilizationExceeded
    - 0 < remaining < min threshold   -> LiquidityBelowThreshold

Liquidation shortfalls are absorbed by protocol fees first and then by a
pro-rata write-down of LP stakes (absorb_bad_debt). Rounding left in the LP
fee pool once the last share is burned goes to the protocol
(sweep_lp_fee_dust).
"""

from __future__ import annotations
from dataclasses import replace
from typing import Tuple
import logging

from .core import (
    PRECISION, PROTOCOL_WALLET,
    LiquidityProvider, ProtocolEvent,
    CircuitBreakerActive, InvalidValue, LiquidityBelowThreshold,
    LpCooldownActive, LpMinDeposit, NotLiquidityProvider, UtilizationExceeded,
    checked_add, checked_sub, mul_div, mul_div_up,
)
from .distribution import settle_lp

logger = logging.getLogger(__name__)


def calculate_shares_to_mint(amount: int, total_shares: int, total_stakes: int) -> int:
    if total_shares == 0 or total_stakes == 0:
        return amount
    return mul_div(amount, total_shares, total_stakes)


def calculate_shares_to_burn(amount: int, total_shares: int, total_stakes: int) -> int:
    if total_stakes == 0:
        return 0
    return mul_div(amount, total_shares, total_stakes)


def check_lp_cooldown(ledger, address: str) -> None:
    last = ledger.last_lp_action_block.get(address)
    cooldown = ledger.config.lp_action_cooldown_blocks
    if last is not None and ledger.current_block - last < cooldown:
        raise LpCooldownActive(
            f"{address} acted at block {last}; next action allowed at {last + cooldown}"
        )


def refresh_circuit_breaker(ledger) -> bool:
    """
    Re-evaluate the liquidity circuit breaker.

    Trips when free liquidity (stakes - borrowed) falls below
    liquidity_buffer_ratio of LP stakes and resets once it recovers.
    """
    agg = ledger.aggregates
    stakes = agg.total_lp_stakes
    if stakes == 0:
        active = False
    else:
        free = max(stakes - agg.total_borrowed, 0)
        active = free * PRECISION < stakes * ledger.config.liquidity_buffer_ratio
    ledger.set_circuit_breaker(active)
    return active


def add_liquidity(ledger, provider: str, amount: int) -> LiquidityProvider:
    """
    Deposit native funds into the LP pool.

    Raises:
        LpMinDeposit: if amount < min_lp_deposit
        LpCooldownActive: if the provider acted too recently
        InsufficientFunds: if the provider cannot cover amount
    """
    config = ledger.config
    if amount <= 0 or amount < config.min_lp_deposit:
        raise LpMinDeposit(f"deposit {amount} below minimum {config.min_lp_deposit}")
    check_lp_cooldown(ledger, provider)

    lp = settle_lp(ledger, provider)
    ledger.transfer(provider, PROTOCOL_WALLET, amount)

    agg = ledger.aggregates
    minted = calculate_shares_to_mint(amount, agg.total_lp_shares, agg.total_lp_stakes)
    if minted == 0:
        raise LpMinDeposit(f"deposit {amount} mints no shares")

    lp = replace(
        lp,
        stake=checked_add(lp.stake, amount),
        shares=checked_add(lp.shares, minted),
        is_active=True,
    )
    ledger.set_liquidity_provider(provider, lp)
    ledger.update_aggregates(
        total_lp_stakes=checked_add(agg.total_lp_stakes, amount),
        total_lp_shares=checked_add(agg.total_lp_shares, minted),
    )
    ledger.mark_lp_action(provider)
    refresh_circuit_breaker(ledger)
    ledger.emit(ProtocolEvent("LiquidityAdded", ledger.current_block, {
        'provider': provider, 'amount': amount, 'shares': minted,
    }))
    return lp


def remove_liquidity(ledger, provider: str, amount: int) -> LiquidityProvider:
    """
    Withdraw stake from the LP pool.

    Withdrawing the full stake deactivates the LP; unclaimed fees stay
    claimable.

    Raises:
        NotLiquidityProvider: if provider has no active stake
        InvalidValue: if amount is not in (0, stake]
        CircuitBreakerActive, LpCooldownActive, UtilizationExceeded,
        LiquidityBelowThreshold: guardrails
        TransferFailed: if the provider rejects the payment
    """
    lp = ledger.get_liquidity_provider(provider)
    if not lp.is_active:
        raise NotLiquidityProvider(f"{provider} has no active liquidity")
    if amount <= 0 or amount > lp.stake:
        raise InvalidValue(f"withdrawal {amount} not in (0, {lp.stake}]")
    if ledger.liquidity_circuit_breaker:
        raise CircuitBreakerActive("withdrawals paused by the liquidity circuit breaker")
    check_lp_cooldown(ledger, provider)

    config = ledger.config
    agg = ledger.aggregates
    remaining = agg.total_lp_stakes - amount
    if agg.total_borrowed * PRECISION > remaining * config.max_utilization_rate:
        raise UtilizationExceeded(
            f"borrowed {agg.total_borrowed} exceeds max utilization of remaining {remaining}"
        )
    if 0 < remaining < config.min_liquidity_threshold:
        raise LiquidityBelowThreshold(
            f"remaining pool {remaining} below minimum {config.min_liquidity_threshold}"
        )

    lp = settle_lp(ledger, provider)
    if amount == lp.stake:
        burned = lp.shares
    else:
        burned = min(calculate_shares_to_burn(amount, agg.total_lp_shares, agg.total_lp_stakes),
                     lp.shares - 1)

    stake = lp.stake - amount
    lp = replace(
        lp,
        stake=stake,
        shares=lp.shares - burned,
        is_active=stake > 0,
        fee_checkpoint=lp.fee_checkpoint if stake > 0 else 0,
    )
    ledger.set_liquidity_provider(provider, lp)
    ledger.update_aggregates(
        total_lp_stakes=checked_sub(agg.total_lp_stakes, amount),
        total_lp_shares=checked_sub(agg.total_lp_shares, burned),
    )
    ledger.transfer(PROTOCOL_WALLET, provider, amount)
    ledger.mark_lp_action(provider)
    refresh_circuit_breaker(ledger)
    sweep_lp_fee_dust(ledger)
    ledger.emit(ProtocolEvent("LiquidityRemoved", ledger.current_block, {
        'provider': provider, 'amount': amount, 'shares': burned,
    }))
    return lp


def claim_lp_fees(ledger, provider: str) -> int:
    """
    Pay out an LP's settled and accrued fees.

    Raises:
        InvalidValue: if nothing is claimable
        TransferFailed: if the provider rejects the payment
    """
    lp = settle_lp(ledger, provider)
    amount = lp.pending_fees
    if amount == 0:
        raise InvalidValue(f"{provider} has no fees to claim")

    ledger.set_liquidity_provider(provider, replace(lp, pending_fees=0))
    agg = ledger.aggregates
    ledger.update_aggregates(total_pending_lp_fees=max(agg.total_pending_lp_fees - amount, 0))
    ledger.transfer(PROTOCOL_WALLET, provider, amount)
    sweep_lp_fee_dust(ledger)
    ledger.emit(ProtocolEvent("LpFeesClaimed", ledger.current_block, {
        'provider': provider, 'amount': amount,
    }))
    logger.debug("LP %s claimed %d", provider, amount)
    return amount


def sweep_lp_fee_dust(ledger) -> int:
    """
    Move unclaimable LP fee rounding to the protocol once no shares remain.

    Each LP's accrual is floored separately, so total_pending_lp_fees can
    exceed what the LPs can claim. With no shares outstanding every LP is
    settled and the difference is exact.
    """
    agg = ledger.aggregates
    if agg.total_lp_shares:
        return 0
    owed = sum(lp.pending_fees for lp in ledger.liquidity_providers.values())
    dust = agg.total_pending_lp_fees - owed
    if dust <= 0:
        return 0
    ledger.update_aggregates(
        total_pending_lp_fees=owed,
        protocol_fees=checked_add(agg.protocol_fees, dust),
        buyback_pool=checked_add(agg.buyback_pool, dust),
    )
    logger.debug("Swept %d of LP fee rounding to the protocol", dust)
    return dust


def absorb_bad_debt(ledger, shortfall: int) -> Tuple[int, int]:
    """
    Write a liquidation shortfall off against the claims on the protocol wallet.

    Protocol fees absorb it first. Whatever remains writes down LP stakes
    in proportion to stake; shares are left alone, so each share is worth
    less. An LP whose stake is wiped out loses its shares but keeps its
    unclaimed fees.

    Returns:
        (absorbed by protocol fees, written off LP stakes)
    """
    if shortfall <= 0:
        return 0, 0
    agg = ledger.aggregates
    from_protocol = min(shortfall, agg.protocol_fees)
    protocol_fees = agg.protocol_fees - from_protocol
    ledger.update_aggregates(
        protocol_fees=protocol_fees,
        buyback_pool=min(max(agg.buyback_pool - from_protocol, 0), protocol_fees),
        bad_debt_absorbed_by_protocol=checked_add(agg.bad_debt_absorbed_by_protocol, from_protocol),
    )

    loss = min(shortfall - from_protocol, ledger.aggregates.total_lp_stakes)
    written_off = 0
    if loss:
        total_stakes = ledger.aggregates.total_lp_stakes
        burned = 0
        for address in sorted(ledger.liquidity_providers):
            lp = ledger.get_liquidity_provider(address)
            if not lp.is_active:
                continue
            cut = min(mul_div_up(loss, lp.stake, total_stakes), lp.stake)
            stake = lp.stake - cut
            if stake == 0:
                lp = settle_lp(ledger, address)
                burned += lp.shares
                lp = replace(lp, stake=0, shares=0, is_active=False, fee_checkpoint=0)
            else:
                lp = replace(lp, stake=stake)
            ledger.set_liquidity_provider(address, lp)
            written_off += cut

        agg = ledger.aggregates
        # rounding up can cut a few wei more than the loss; the protocol keeps them
        excess = written_off - loss
        ledger.update_aggregates(
            total_lp_stakes=checked_sub(agg.total_lp_stakes, written_off),
            total_lp_shares=checked_sub(agg.total_lp_shares, burned),
            protocol_fees=checked_add(agg.protocol_fees, excess),
            buyback_pool=checked_add(agg.buyback_pool, excess),
            bad_debt_absorbed_by_lps=checked_add(agg.bad_debt_absorbed_by_lps, loss),
        )
        sweep_lp_fee_dust(ledger)

    unabsorbed = shortfall - from_protocol - loss
    if unabsorbed:
        logger.warning("Bad debt of %d exceeds protocol fees and LP stakes", unabsorbed)
    logger.info("Absorbed bad debt %d: protocol %d, LP stakes %d",
                shortfall, from_protocol, loss)
    return from_protocol, loss
