"""
fake_view.py - Test helpers for ProtocolView

Provides a minimal ProtocolView implementation for testing the pure
calculation functions without a full ProtocolLedger, the wallet names used
across the suite, and make_engine() for building a funded engine.
"""

from __future__ import annotations
from typing import Dict, Optional

from leverage_protocol import (
    COIN, PRECISION, EMPTY_POSITION,
    AssetPool, LiquidityProvider, Position, ProtocolAggregates, UserStats,
    ProtocolConfig, ProtocolEngine, ProtocolLedger,
    StaticPriceService, InMemoryStakeService,
)


# Asset traded in tests. At price PRECISION one asset unit is worth one RAO.
ASSET = 1

LP = "lp"
ALICE = "alice"
BOB = "bob"
LIQUIDATOR = "keeper"


def make_engine(config=None, lp_deposit=500 * COIN, redeem_discount=0):
    """Build an engine with funded wallets and an optional seeded LP pool."""
    config = config or ProtocolConfig(user_action_cooldown_blocks=0, lp_action_cooldown_blocks=0)
    prices = StaticPriceService({0: PRECISION, ASSET: PRECISION})
    stakes = InMemoryStakeService(prices, redeem_discount=redeem_discount)
    ledger = ProtocolLedger("test", config)
    ledger.fund(LP, 1_000 * COIN)
    ledger.fund(ALICE, 100 * COIN)
    ledger.fund(BOB, 100 * COIN)
    engine = ProtocolEngine(ledger, prices, stakes)
    if lp_deposit:
        engine.add_liquidity(LP, lp_deposit)
    return engine


class FakeView:
    """
    Minimal ProtocolView implementation for testing.

    Example:
        view = FakeView(
            positions={('alice', 1): Position(collateral=..., is_active=True, ...)},
            pools={1: AssetPool(total_borrowed=10 * COIN)},
            aggregates=ProtocolAggregates(total_lp_stakes=100 * COIN),
            block=360,
        )
    """

    def __init__(
        self,
        positions: Optional[Dict[tuple, Position]] = None,
        pools: Optional[Dict[int, AssetPool]] = None,
        aggregates: Optional[ProtocolAggregates] = None,
        config: Optional[ProtocolConfig] = None,
        block: int = 0,
        lps: Optional[Dict[str, LiquidityProvider]] = None,
        stats: Optional[Dict[str, UserStats]] = None,
    ):
        self._positions = positions or {}
        self._pools = pools or {}
        self._aggregates = aggregates or ProtocolAggregates()
        self._config = config or ProtocolConfig()
        self._block = block
        self._lps = lps or {}
        self._stats = stats or {}

    @property
    def current_block(self) -> int:
        return self._block

    @property
    def config(self) -> ProtocolConfig:
        return self._config

    @property
    def aggregates(self) -> ProtocolAggregates:
        return self._aggregates

    def get_position(self, user: str, asset: int) -> Position:
        return self._positions.get((user, asset), EMPTY_POSITION)

    def get_asset_pool(self, asset: int) -> AssetPool:
        return self._pools.get(asset, AssetPool())

    def get_liquidity_provider(self, address: str) -> LiquidityProvider:
        return self._lps.get(address, LiquidityProvider())

    def get_user_stats(self, address: str) -> UserStats:
        return self._stats.get(address, UserStats())


class ZeroQuotePriceService:
    """Price service that quotes everything at zero."""

    def quote(self, asset: int, amount: int) -> int:
        return 0

    def spot_price(self, asset: int) -> int:
        return 0
