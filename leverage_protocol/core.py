"""
Core types and pure functions for the leverage protocol engine.

This module provides the foundational data structures and protocols:
1. Protocols: ProtocolView for read-only access to canonical state
2. Immutable records: Position, LiquidityProvider, AssetPool, LiquidationRequest
3. Exceptions: ProtocolError and the error-kind hierarchy
4. Fixed-point helpers: checked integer arithmetic and RAO/wei scaling

All records are frozen dataclasses. State changes create new instances with
dataclasses.replace(), so the ledger can snapshot and restore cheaply.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable


# ============================================================================
# CONSTANTS
# ============================================================================

# Fixed-point scale for every rate, ratio and leverage value (1e9 = 1.0x).
PRECISION = 1_000_000_000

# Native amounts are wei (1e18 per coin); the stake and price services speak RAO (1e9 per coin).
WEI_PER_RAO = 1_000_000_000

# Interest rates are quoted per this many blocks.
RATE_PERIOD_BLOCKS = 360

# Liquidation review requests go stale this many blocks after submission.
LIQUIDATION_REQUEST_WINDOW_BLOCKS = 360

# Native integer width (uint256).
UINT256_MAX = 2 ** 256 - 1

# Health ratio reported for positions without debt.
MAX_HEALTH_RATIO = UINT256_MAX

# Reserved wallet holding pooled protocol funds.
PROTOCOL_WALLET = "protocol"

# Reserved wallet standing in for value outside the ledger (stake service, funding).
# Exempt from balance checks.
EXTERNAL_WALLET = "external"

# Function-permission ids.
OP_OPEN_POSITION = 0
OP_CLOSE_POSITION = 1
OP_ADD_COLLATERAL = 2


# ============================================================================
# EXCEPTIONS
# ============================================================================

class ProtocolError(Exception):
    """
    Base exception for all protocol errors.

    `retryable` tells callers whether resubmitting later can succeed
    (cooldown, circuit breaker, pause) or whether the request will never
    succeed as submitted.
    """
    retryable = False


class StateError(ProtocolError):
    """The addressed record is missing, inactive, or in the wrong state."""
    pass


class SettlementError(ProtocolError):
    """A transfer, stake or unstake failed to settle."""
    pass


class GuardrailError(ProtocolError):
    """A risk or configuration guardrail was violated."""
    pass


class PermissionDenied(ProtocolError):
    """The caller or the operation is not permitted."""
    pass


class ArithmeticSafetyError(ProtocolError):
    """Integer arithmetic left the native uint256 range."""
    pass


# --- state validity ---------------------------------------------------------

class PositionInactive(StateError):
    """Raised when liquidating a position that is not active."""
    pass


class NoAlpha(StateError):
    """Raised when a position holds no asset to liquidate."""
    pass


class NotLiquidatable(StateError):
    """Raised when the health ratio is not below the liquidation threshold."""
    pass


class PositionNotFound(StateError):
    """Raised when an operation targets an inactive or missing position."""
    pass


class PositionAlreadyActive(StateError):
    """Raised when opening a position over an active one."""
    pass


class NotLiquidityProvider(StateError):
    """Raised when an address without an active LP record withdraws or claims."""
    pass


class RequestNotFound(StateError):
    """Raised when a liquidation request id is unknown."""
    pass


class RequestExpired(StateError):
    """Raised when a liquidation request is past its deadline."""
    pass


class DuplicateRequest(StateError):
    """Raised when the same requester files twice for a position in one block."""
    pass


class InsufficientProceeds(StateError):
    """Raised when closing a position whose proceeds cannot cover its debt."""
    pass


# --- value / settlement -----------------------------------------------------

class InvalidValue(SettlementError):
    """Raised when an amount or a simulated quote is zero or out of range."""
    pass


class InvalidAlphaPrice(SettlementError):
    """Raised when the price service reports a zero or failed spot price."""
    pass


class StakeFailed(SettlementError):
    """Raised when the stake service returns nothing for a deposit."""
    pass


class UnstakeFailed(SettlementError):
    """Raised when the stake service returns no proceeds for a redemption."""
    pass


class TransferFailed(SettlementError):
    """Raised when a native transfer cannot be delivered."""
    pass


class LiquiFeeTransferFailed(TransferFailed):
    """Raised when the liquidator's fee share cannot be delivered."""
    pass


class CollateralReturnFailed(TransferFailed):
    """Raised when the surplus cannot be returned to the position owner."""
    pass


class InsufficientFunds(SettlementError):
    """Raised when a wallet cannot cover a transfer."""
    pass


class SlippageExceeded(SettlementError):
    """Raised when the stake service delivers less asset than the caller accepts."""
    pass


# --- guardrails -------------------------------------------------------------

class UtilizationExceeded(GuardrailError):
    """Raised when an operation would push utilization above the maximum."""
    pass


class InsufficientLiquidity(GuardrailError):
    """Raised when the pool cannot fund the requested borrow."""
    pass


class LiquidityBelowThreshold(GuardrailError):
    """Raised when the pool is, or would be left, below the minimum size."""
    pass


class CircuitBreakerActive(GuardrailError):
    """Raised while the liquidity circuit breaker is tripped."""
    retryable = True


class UserCooldownActive(GuardrailError):
    """Raised when a user repeats a position action inside the cooldown."""
    retryable = True


class LpCooldownActive(GuardrailError):
    """Raised when an LP repeats a liquidity action inside the cooldown."""
    retryable = True


class LeverageTooHigh(GuardrailError):
    """Raised when leverage exceeds the caller's tier cap or the protocol cap."""
    pass


class InvalidLeverage(GuardrailError):
    """Raised when leverage is below 1x."""
    pass


class LpMinDeposit(GuardrailError):
    """Raised when a liquidity deposit is below the minimum."""
    pass


class DistributionInvalid(GuardrailError):
    """Raised when a fee split does not sum to PRECISION."""
    pass


class TierConfigInvalid(GuardrailError):
    """Raised when tier ladders are not strictly ascending."""
    pass


class ConfigInvalid(GuardrailError):
    """Raised when a configuration value is out of range."""
    pass


class BuybackConditionsNotMet(GuardrailError):
    """Raised when the buyback interval or threshold is not satisfied."""
    retryable = True


class ArrayLengthMismatch(GuardrailError):
    """Raised when parallel input arrays differ in length."""
    pass


# --- permissions ------------------------------------------------------------

class ProtocolPaused(PermissionDenied):
    """Raised for user operations while the protocol is paused."""
    retryable = True


class FunctionNotPermitted(PermissionDenied):
    """Raised when the function-permission flag for an operation is off."""
    pass


class NotOwner(PermissionDenied):
    """Raised when a non-owner updates the configuration."""
    pass


# --- arithmetic -------------------------------------------------------------

class ArithmeticOverflow(ArithmeticSafetyError):
    """Raised when a result exceeds uint256."""
    pass


class ArithmeticUnderflow(ArithmeticSafetyError):
    """Raised when a result drops below zero."""
    pass


# ============================================================================
# CHECKED FIXED-POINT ARITHMETIC
# ============================================================================

def checked_add(a: int, b: int) -> int:
    """Add with overflow checking."""
    result = a + b
    if result > UINT256_MAX:
        raise ArithmeticOverflow(f"addition overflow: {a} + {b}")
    if result < 0:
        raise ArithmeticUnderflow(f"addition underflow: {a} + {b}")
    return result


def checked_sub(a: int, b: int) -> int:
    """Subtract with underflow checking."""
    result = a - b
    if result < 0:
        raise ArithmeticUnderflow(f"subtraction underflow: {a} - {b}")
    return result


def checked_mul(a: int, b: int) -> int:
    """Multiply with overflow checking."""
    result = a * b
    if result > UINT256_MAX:
        raise ArithmeticOverflow(f"multiplication overflow: {a} * {b}")
    if result < 0:
        raise ArithmeticUnderflow(f"multiplication underflow: {a} * {b}")
    return result


def mul_div(a: int, b: int, denominator: int) -> int:
    """
    Compute floor(a * b / denominator) with the intermediate product checked.

    Raises:
        ArithmeticOverflow: if a * b exceeds uint256
        ZeroDivisionError: if denominator is zero
    """
    if denominator == 0:
        raise ZeroDivisionError("mul_div by zero")
    return checked_mul(a, b) // denominator


def mul_div_up(a: int, b: int, denominator: int) -> int:
    """Like mul_div() but rounds up."""
    if denominator == 0:
        raise ZeroDivisionError("mul_div_up by zero")
    product = checked_mul(a, b)
    return -(-product // denominator)


def rao_to_wei(amount_rao: int) -> int:
    """Convert an amount reported by the stake/price service (RAO) to native wei."""
    return checked_mul(amount_rao, WEI_PER_RAO)


def wei_to_rao(amount_wei: int) -> int:
    """Convert native wei to RAO for the stake/price service. Dust below 1 RAO is dropped."""
    return amount_wei // WEI_PER_RAO


# ============================================================================
# RECORDS
# ============================================================================

PositionKey = Tuple[str, int]


@dataclass(frozen=True, slots=True)
class Position:
    """
    A leveraged position keyed by (user, asset_id).

    Attributes:
        collateral: Native amount posted by the user
        borrowed: Native principal borrowed from the LP pool
        asset_amount: Asset units held through the stake service (RAO)
        leverage: (collateral + borrowed) / collateral, scaled by PRECISION
        entry_price: Spot price at open (RAO per asset unit, as quoted)
        last_update_block: Block at which accrued_fees was last settled
        accrued_fees: Borrowing fees settled but not yet paid
        is_active: False once closed or liquidated (all numbers are then zero)
        validator_ref: Stake routing hint recorded at open
    """
    collateral: int = 0
    borrowed: int = 0
    asset_amount: int = 0
    leverage: int = 0
    entry_price: int = 0
    last_update_block: int = 0
    accrued_fees: int = 0
    is_active: bool = False
    validator_ref: Optional[str] = None

    def __post_init__(self):
        if not self.is_active and any((
            self.collateral, self.borrowed, self.asset_amount, self.leverage,
            self.entry_price, self.last_update_block, self.accrued_fees,
        )):
            raise ValueError("Inactive position must have all numeric fields zero")


EMPTY_POSITION = Position()


@dataclass(frozen=True, slots=True)
class LiquidityProvider:
    """
    An LP's stake in the pool.

    `fee_checkpoint` is the accumulator value at the last settlement;
    `pending_fees` holds fees settled into the record but not yet claimed.
    """
    stake: int = 0
    shares: int = 0
    is_active: bool = False
    fee_checkpoint: int = 0
    pending_fees: int = 0

    def __post_init__(self):
        if (self.shares == 0) != (self.stake == 0):
            raise ValueError(
                f"LP shares and stake must be zero together, got shares={self.shares} stake={self.stake}"
            )


@dataclass(frozen=True, slots=True)
class AssetPool:
    """Per-asset totals of collateral and borrowed principal in open positions."""
    total_collateral: int = 0
    total_borrowed: int = 0


@dataclass(frozen=True, slots=True)
class LiquidationRequest:
    """
    Advisory liquidation-review request.

    Never deleted; readers must compare `deadline` with the current block
    before acting on it.
    """
    request_id: str
    requester: str
    user: str
    asset: int
    request_block: int
    deadline: int
    justification_ref: str
    content_hash: str
    is_processed: bool = False
    collateral_snapshot: int = 0
    borrowed_snapshot: int = 0
    asset_amount_snapshot: int = 0

    def is_expired(self, current_block: int) -> bool:
        return current_block > self.deadline


@dataclass(frozen=True, slots=True)
class ProtocolAggregates:
    """Protocol-wide totals. Replaced as a whole on every update."""
    total_collateral: int = 0
    total_borrowed: int = 0
    total_volume: int = 0
    total_trades: int = 0
    protocol_fees: int = 0
    buyback_pool: int = 0
    acc_lp_fees_per_share: int = 0
    total_lp_stakes: int = 0
    total_lp_shares: int = 0
    total_pending_lp_fees: int = 0
    liquidator_reward_pool: int = 0
    total_trading_fees: int = 0
    total_borrowing_fees: int = 0
    total_liquidation_fees: int = 0
    total_liquidations: int = 0
    total_liquidation_value: int = 0
    total_bad_debt: int = 0
    bad_debt_absorbed_by_protocol: int = 0
    bad_debt_absorbed_by_lps: int = 0
    accrued_borrowing_fees: int = 0
    last_accrued_borrowing_fees_update: int = 0
    last_buyback_block: Optional[int] = None
    total_used_for_buybacks: int = 0
    total_asset_bought: int = 0


@dataclass(frozen=True, slots=True)
class UserStats:
    """Per-address totals across all of a user's positions."""
    collateral: int = 0
    borrowed: int = 0
    volume: int = 0


@dataclass(frozen=True, slots=True)
class ProtocolEvent:
    """Event emitted inside an atomic unit; kept only if the unit commits."""
    name: str
    block: int
    data: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class LiquidationRecord:
    """Emitted for every successful liquidation."""
    user: str
    liquidator: str
    asset: int
    realized_value: int
    fee_amount: int
    liquidator_share: int
    justification_ref: str
    content_hash: str
    block: int


@dataclass(frozen=True, slots=True)
class OperationRecord:
    """
    Audit record of one committed atomic unit.

    Attributes:
        sequence: Monotonic sequence number within the ledger
        block: Block at which the unit committed
        name: Operation name (e.g., "open_position")
        caller: Address that triggered the operation
        events: Events emitted by the unit, in order
    """
    sequence: int
    block: int
    name: str
    caller: str
    events: Tuple[Any, ...] = ()


# ============================================================================
# PROTOCOLS
# ============================================================================

@runtime_checkable
class ProtocolView(Protocol):
    """
    Read-only interface to canonical protocol state.

    Pure calculation functions and the batch scanner accept a ProtocolView
    to declare that they never mutate state. ProtocolLedger implements it.
    """

    @property
    def current_block(self) -> int:
        ...

    @property
    def config(self) -> Any:
        ...

    @property
    def aggregates(self) -> ProtocolAggregates:
        ...

    def get_position(self, user: str, asset: int) -> Position:
        ...

    def get_asset_pool(self, asset: int) -> AssetPool:
        ...

    def get_liquidity_provider(self, address: str) -> LiquidityProvider:
        ...

    def get_user_stats(self, address: str) -> UserStats:
        ...
