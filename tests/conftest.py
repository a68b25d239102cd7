"""
conftest.py - Shared pytest fixtures for protocol tests

Provides common fixtures used across unit, conformance and functional tests:
- Config with cooldowns disabled
- Price and stake services (1 RAO per asset unit)
- Funded ledger, engine, and an engine with a seeded LP pool
"""

import pytest

from leverage_protocol import (
    COIN, PRECISION,
    ProtocolConfig, ProtocolLedger, ProtocolEngine,
    StaticPriceService, InMemoryStakeService,
)

from tests.fake_view import FakeView, ASSET, LP, ALICE, BOB


@pytest.fixture
def config():
    return ProtocolConfig(user_action_cooldown_blocks=0, lp_action_cooldown_blocks=0)


@pytest.fixture
def prices():
    return StaticPriceService({0: PRECISION, ASSET: PRECISION})


@pytest.fixture
def stakes(prices):
    return InMemoryStakeService(prices)


@pytest.fixture
def ledger(config):
    ledger = ProtocolLedger("test", config)
    ledger.fund(LP, 1_000 * COIN)
    ledger.fund(ALICE, 100 * COIN)
    ledger.fund(BOB, 100 * COIN)
    return ledger


@pytest.fixture
def engine(ledger, prices, stakes):
    return ProtocolEngine(ledger, prices, stakes)


@pytest.fixture
def seeded_engine(engine):
    """Engine with 500 COIN of LP liquidity."""
    engine.add_liquidity(LP, 500 * COIN)
    return engine


@pytest.fixture
def empty_view():
    return FakeView()
