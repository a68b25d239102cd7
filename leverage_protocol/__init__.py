"""
leverage_protocol - Leveraged trading protocol engine

Users post collateral and borrow LP capital to hold a leveraged stake in a
yield-bearing asset. LPs earn a pro-rata share of trading, borrowing and
liquidation fees.

Usage:
    from leverage_protocol import (
        ProtocolLedger, ProtocolEngine, ProtocolConfig,
        StaticPriceService, InMemoryStakeService, COIN, PRECISION,
    )

    prices = StaticPriceService({1: 2 * PRECISION})
    stakes = InMemoryStakeService(prices)
    ledger = ProtocolLedger("main", ProtocolConfig())
    engine = ProtocolEngine(ledger, prices, stakes)

    ledger.fund("lp", 100 * COIN)
    ledger.fund("alice", 10 * COIN)
    engine.add_liquidity("lp", 100 * COIN)
    engine.open_position("alice", asset=1, collateral=COIN, leverage=2 * PRECISION)
"""

# Core types
from .core import (
    ProtocolView,
    Position,
    LiquidityProvider,
    AssetPool,
    LiquidationRequest,
    ProtocolAggregates,
    UserStats,
    ProtocolEvent,
    LiquidationRecord,
    OperationRecord,
    PositionKey,
    EMPTY_POSITION,
    PRECISION,
    WEI_PER_RAO,
    RATE_PERIOD_BLOCKS,
    LIQUIDATION_REQUEST_WINDOW_BLOCKS,
    UINT256_MAX,
    MAX_HEALTH_RATIO,
    PROTOCOL_WALLET,
    EXTERNAL_WALLET,
    OP_OPEN_POSITION,
    OP_CLOSE_POSITION,
    OP_ADD_COLLATERAL,
    checked_add,
    checked_sub,
    checked_mul,
    mul_div,
    mul_div_up,
    rao_to_wei,
    wei_to_rao,
)

# Errors
from .core import (
    ProtocolError,
    StateError,
    SettlementError,
    GuardrailError,
    PermissionDenied,
    ArithmeticSafetyError,
    PositionInactive,
    NoAlpha,
    NotLiquidatable,
    PositionNotFound,
    PositionAlreadyActive,
    NotLiquidityProvider,
    RequestNotFound,
    RequestExpired,
    DuplicateRequest,
    InsufficientProceeds,
    InvalidValue,
    InvalidAlphaPrice,
    StakeFailed,
    UnstakeFailed,
    TransferFailed,
    LiquiFeeTransferFailed,
    CollateralReturnFailed,
    InsufficientFunds,
    SlippageExceeded,
    UtilizationExceeded,
    InsufficientLiquidity,
    LiquidityBelowThreshold,
    CircuitBreakerActive,
    UserCooldownActive,
    LpCooldownActive,
    LeverageTooHigh,
    InvalidLeverage,
    LpMinDeposit,
    DistributionInvalid,
    TierConfigInvalid,
    ConfigInvalid,
    BuybackConditionsNotMet,
    ArrayLengthMismatch,
    ProtocolPaused,
    FunctionNotPermitted,
    NotOwner,
    ArithmeticOverflow,
    ArithmeticUnderflow,
)

# Configuration
from .config import (
    COIN,
    NUM_TIERS,
    FeeCategory,
    FeeSplit,
    TierSchedule,
    DEFAULT_TIERS,
    ProtocolConfig,
    load_config,
)

# External services
from .services import (
    PRICE_SCALE,
    PriceService,
    StakeService,
    Transactional,
    StaticPriceService,
    InMemoryStakeService,
)

# Ledger
from .ledger import ProtocolLedger

# Risk and fees
from .risk import (
    health_ratio,
    is_liquidatable,
    utilization_rate,
    asset_utilization,
    dynamic_borrow_rate_per_360,
    current_borrow_rate,
)
from .fees import (
    calculate_accrued_fees,
    compute_accrued_fees,
    compute_total_debt,
    settle_accrued_fees,
    compute_protocol_accrued_fees,
    calculate_trading_fee,
)
from .tiers import (
    tier_for_metric,
    get_user_tier,
    fee_discount_for,
    max_leverage_for,
)
from .distribution import (
    FeeAllocation,
    split_fee,
    distribute_fee,
    pending_lp_fees,
    settle_lp,
)

# Operations
from .positions import (
    CloseResult,
    open_position,
    close_position,
    add_collateral,
    calculate_borrowed,
    calculate_leverage,
)
from .liquidity import (
    add_liquidity,
    remove_liquidity,
    claim_lp_fees,
    refresh_circuit_breaker,
    calculate_shares_to_mint,
    calculate_shares_to_burn,
    sweep_lp_fee_dust,
    absorb_bad_debt,
)
from .liquidation import (
    LiquidationWaterfall,
    PositionHealth,
    calculate_liquidation_waterfall,
    compute_position_health,
    scan_liquidatable,
    liquidate_position,
    create_liquidation_request,
    get_liquidation_request,
)
from .buyback import (
    calculate_buyback_amount,
    can_execute_buyback,
    execute_buyback,
)

# Engine
from .engine import ProtocolEngine


__all__ = [
    # Core types
    'ProtocolView', 'Position', 'LiquidityProvider', 'AssetPool',
    'LiquidationRequest', 'ProtocolAggregates', 'UserStats', 'ProtocolEvent',
    'LiquidationRecord', 'OperationRecord', 'PositionKey', 'EMPTY_POSITION',
    'PRECISION', 'WEI_PER_RAO', 'RATE_PERIOD_BLOCKS', 'LIQUIDATION_REQUEST_WINDOW_BLOCKS',
    'UINT256_MAX', 'MAX_HEALTH_RATIO', 'PROTOCOL_WALLET', 'EXTERNAL_WALLET',
    'OP_OPEN_POSITION', 'OP_CLOSE_POSITION', 'OP_ADD_COLLATERAL',
    'checked_add', 'checked_sub', 'checked_mul', 'mul_div', 'mul_div_up',
    'rao_to_wei', 'wei_to_rao',
    # Errors
    'ProtocolError', 'StateError', 'SettlementError', 'GuardrailError',
    'PermissionDenied', 'ArithmeticSafetyError',
    'PositionInactive', 'NoAlpha', 'NotLiquidatable', 'PositionNotFound',
    'PositionAlreadyActive', 'NotLiquidityProvider', 'RequestNotFound',
    'RequestExpired', 'DuplicateRequest', 'InsufficientProceeds',
    'InvalidValue', 'InvalidAlphaPrice', 'StakeFailed', 'UnstakeFailed',
    'TransferFailed', 'LiquiFeeTransferFailed', 'CollateralReturnFailed',
    'InsufficientFunds', 'SlippageExceeded',
    'UtilizationExceeded', 'InsufficientLiquidity', 'LiquidityBelowThreshold',
    'CircuitBreakerActive', 'UserCooldownActive', 'LpCooldownActive',
    'LeverageTooHigh', 'InvalidLeverage', 'LpMinDeposit', 'DistributionInvalid',
    'TierConfigInvalid', 'ConfigInvalid', 'BuybackConditionsNotMet',
    'ArrayLengthMismatch', 'ProtocolPaused', 'FunctionNotPermitted', 'NotOwner',
    'ArithmeticOverflow', 'ArithmeticUnderflow',
    # Configuration
    'COIN', 'NUM_TIERS', 'FeeCategory', 'FeeSplit', 'TierSchedule',
    'DEFAULT_TIERS', 'ProtocolConfig', 'load_config',
    # Services
    'PRICE_SCALE', 'PriceService', 'StakeService', 'Transactional',
    'StaticPriceService', 'InMemoryStakeService',
    # Ledger
    'ProtocolLedger',
    # Risk and fees
    'health_ratio', 'is_liquidatable', 'utilization_rate', 'asset_utilization',
    'dynamic_borrow_rate_per_360', 'current_borrow_rate',
    'calculate_accrued_fees', 'compute_accrued_fees', 'compute_total_debt',
    'settle_accrued_fees', 'compute_protocol_accrued_fees', 'calculate_trading_fee',
    'tier_for_metric', 'get_user_tier', 'fee_discount_for', 'max_leverage_for',
    'FeeAllocation', 'split_fee', 'distribute_fee', 'pending_lp_fees', 'settle_lp',
    # Operations
    'CloseResult', 'open_position', 'close_position', 'add_collateral',
    'calculate_borrowed', 'calculate_leverage',
    'add_liquidity', 'remove_liquidity', 'claim_lp_fees', 'refresh_circuit_breaker',
    'calculate_shares_to_mint', 'calculate_shares_to_burn',
    'sweep_lp_fee_dust', 'absorb_bad_debt',
    'LiquidationWaterfall', 'PositionHealth', 'calculate_liquidation_waterfall',
    'compute_position_health', 'scan_liquidatable', 'liquidate_position',
    'create_liquidation_request', 'get_liquidation_request',
    'calculate_buyback_amount', 'can_execute_buyback', 'execute_buyback',
    # Engine
    'ProtocolEngine',
]

__version__ = '1.0.0'
