"""
test_buyback.py - Unit tests for protocol buybacks

After alice opens 10 COIN at 2x the buyback pool holds the protocol share
of the 0.06 COIN trading fee: 0.024 COIN.
"""

import pytest

from leverage_protocol import (
    COIN, PRECISION,
    ProtocolAggregates, ProtocolConfig,
    calculate_buyback_amount, can_execute_buyback,
    BuybackConditionsNotMet, StakeFailed,
)
from tests.fake_view import FakeView, make_engine, ALICE, ASSET


POOL = 24_000_000_000_000_000


def buyback_engine():
    config = ProtocolConfig(
        user_action_cooldown_blocks=0,
        lp_action_cooldown_blocks=0,
        buyback_execution_threshold=COIN // 100,
    )
    engine = make_engine(config)
    engine.open_position(ALICE, ASSET, 10 * COIN, 2 * PRECISION)
    return engine


class TestCanExecute:

    def test_amount(self):
        assert calculate_buyback_amount(POOL, 500_000_000) == POOL // 2

    def test_pool_must_exceed_threshold(self):
        config = ProtocolConfig(buyback_execution_threshold=COIN)
        assert not can_execute_buyback(FakeView(aggregates=ProtocolAggregates(buyback_pool=COIN), config=config))
        assert can_execute_buyback(FakeView(aggregates=ProtocolAggregates(buyback_pool=COIN + 1), config=config))

    def test_interval(self):
        aggregates = ProtocolAggregates(buyback_pool=2 * COIN, last_buyback_block=100)
        assert not can_execute_buyback(FakeView(aggregates=aggregates, block=7_299))
        assert can_execute_buyback(FakeView(aggregates=aggregates, block=7_300))


class TestExecuteBuyback:

    def test_execute(self):
        engine = buyback_engine()
        assert engine.aggregates.buyback_pool == POOL

        spent = engine.execute_buyback(ALICE)
        assert spent == POOL // 2

        agg = engine.aggregates
        assert agg.buyback_pool == POOL // 2
        assert agg.total_used_for_buybacks == POOL // 2
        assert agg.total_asset_bought == 12_000_000
        assert agg.last_buyback_block == 0
        config = engine.config
        assert engine.stake_service.staked(config.protocol_validator, config.protocol_asset_id) == 12_000_000

    def test_once_per_interval(self):
        engine = buyback_engine()
        engine.execute_buyback(ALICE)
        with pytest.raises(BuybackConditionsNotMet) as exc_info:
            engine.execute_buyback(ALICE)
        assert exc_info.value.retryable

        engine.ledger.advance_block(7_200)
        assert engine.execute_buyback(ALICE) == POOL // 4

    def test_pool_too_small(self):
        engine = make_engine()
        engine.open_position(ALICE, ASSET, 10 * COIN, 2 * PRECISION)
        with pytest.raises(BuybackConditionsNotMet):
            engine.execute_buyback(ALICE)

    def test_stake_failure_rolls_back(self):
        engine = buyback_engine()
        engine.stake_service.fail_deposits = True
        with pytest.raises(StakeFailed):
            engine.execute_buyback(ALICE)
        assert engine.aggregates.buyback_pool == POOL
        assert engine.aggregates.last_buyback_block is None
