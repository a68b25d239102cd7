"""
test_liquidation.py - Unit tests for the liquidation engine

Tests:
- Pure waterfall: worked example, bad debt, zero remainder
- Position health and batch scan over a FakeView
- Liquidation requests: creation, duplicates, expiry, processing
- liquidate_position(): eligibility, payouts, bad-debt absorption, failures
  and rollback

Liquidation scenario: alice opens 10 COIN at 2x (19_940_000_000 units),
then the price drops to 0.54. Quote = 10.7676 COIN against 10 COIN debt
(health 1.07676 < 1.1).

    remainder  = 0.7676 COIN
    fee        = 0.015352 COIN (liquidator 0.007676, protocol 0.007676)
    returned   = 0.752248 COIN
"""

import pytest

from leverage_protocol import (
    COIN, PRECISION, MAX_HEALTH_RATIO, PROTOCOL_WALLET,
    FeeSplit, Position, ProtocolConfig, LiquidationRecord,
    calculate_liquidation_waterfall, compute_position_health, scan_liquidatable,
    StaticPriceService,
    ArrayLengthMismatch, CollateralReturnFailed, DuplicateRequest, InvalidValue,
    LiquiFeeTransferFailed, NoAlpha, NotLiquidatable, PositionInactive,
    PositionNotFound, RequestExpired, RequestNotFound, UnstakeFailed,
)
from tests.fake_view import FakeView, ZeroQuotePriceService, make_engine, ALICE, BOB, ASSET, LIQUIDATOR, LP


LIQUIDATION_SPLIT = FeeSplit(0, 500_000_000, 500_000_000)
CRASH_PRICE = 540_000_000
PROCEEDS = 10_767_600_000_000_000_000


def open_and_crash(engine, price=CRASH_PRICE):
    engine.open_position(ALICE, ASSET, 10 * COIN, 2 * PRECISION)
    engine.price_service.update_price(ASSET, price)


# ============================================================================
# WATERFALL
# ============================================================================

class TestWaterfall:

    def test_worked_example(self):
        w = calculate_liquidation_waterfall(45 * COIN, 40 * COIN, 20_000_000, LIQUIDATION_SPLIT)
        assert w.debt_repaid == 40 * COIN
        assert w.liquidation_fee == COIN // 10
        assert w.liquidator_share == COIN // 20
        assert w.protocol_share == COIN // 20
        assert w.lp_share == 0
        assert w.returned_to_user == 4_900_000_000_000_000_000
        assert w.shortfall == 0

    def test_conservation(self):
        w = calculate_liquidation_waterfall(45 * COIN, 40 * COIN, 20_000_000, LIQUIDATION_SPLIT)
        assert w.debt_repaid + w.liquidation_fee + w.returned_to_user == w.proceeds

    def test_proceeds_below_debt(self):
        w = calculate_liquidation_waterfall(30 * COIN, 40 * COIN, 20_000_000, LIQUIDATION_SPLIT)
        assert w.debt_repaid == 30 * COIN
        assert w.liquidation_fee == 0
        assert w.returned_to_user == 0
        assert w.shortfall == 10 * COIN

    def test_full_fee_rate_capped_at_remainder(self):
        w = calculate_liquidation_waterfall(45 * COIN, 40 * COIN, PRECISION, LIQUIDATION_SPLIT)
        assert w.liquidation_fee == 5 * COIN
        assert w.returned_to_user == 0

    def test_negative_rejected(self):
        with pytest.raises(ValueError):
            calculate_liquidation_waterfall(-1, 0, 0, LIQUIDATION_SPLIT)


# ============================================================================
# HEALTH AND SCAN
# ============================================================================

def active(asset_amount, borrowed):
    return Position(
        collateral=COIN, borrowed=borrowed, asset_amount=asset_amount,
        leverage=2 * PRECISION, entry_price=PRECISION, is_active=True,
    )


class TestHealthAndScan:

    def setup_method(self):
        self.prices = StaticPriceService({ASSET: PRECISION})
        self.view = FakeView(positions={
            ('u0', ASSET): active(20 * 10 ** 9, 10 * COIN),    # health 2.0
            ('u1', ASSET): active(10_500_000_000, 10 * COIN),  # health 1.05
            ('u3', ASSET): active(5 * 10 ** 9, 10 * COIN),     # health 0.5
            ('u4', ASSET): active(5 * 10 ** 9, 0),             # no debt
        })

    def test_position_health(self):
        health = compute_position_health(self.view, self.prices, 'u1', ASSET)
        assert health.current_value == 10_500_000_000_000_000_000
        assert health.total_debt == 10 * COIN
        assert health.health_ratio == 1_050_000_000
        assert health.is_liquidatable

    def test_zero_debt_health(self):
        health = compute_position_health(self.view, self.prices, 'u4', ASSET)
        assert health.health_ratio == MAX_HEALTH_RATIO
        assert not health.is_liquidatable

    def test_health_inactive(self):
        with pytest.raises(PositionInactive):
            compute_position_health(self.view, self.prices, 'u2', ASSET)

    def test_health_zero_quote(self):
        with pytest.raises(InvalidValue):
            compute_position_health(self.view, ZeroQuotePriceService(), 'u1', ASSET)

    def test_scan(self):
        users = ['u0', 'u1', 'u2', 'u3', 'u4']
        assert scan_liquidatable(self.view, self.prices, users, [ASSET] * 5) == [1, 3]

    def test_scan_repeats_and_order(self):
        users = ['u3', 'u0', 'u1', 'u3', 'u4']
        assert scan_liquidatable(self.view, self.prices, users, [ASSET] * 5) == [0, 2, 3]

    def test_scan_matches_position_health(self):
        users = ['u0', 'u1', 'u3', 'u4']
        flagged = scan_liquidatable(self.view, self.prices, users, [ASSET] * 4)
        expected = [i for i, user in enumerate(users)
                    if compute_position_health(self.view, self.prices, user, ASSET).is_liquidatable]
        assert flagged == expected

    def test_scan_amounts_beyond_int64(self):
        whale = 10 ** 12 * COIN
        view = FakeView(positions={
            ('w0', ASSET): active(whale // 10 ** 9, 2 * whale),
            ('w1', ASSET): active(2 * whale // 10 ** 9, whale),
        })
        assert scan_liquidatable(view, self.prices, ['w0', 'w1'], [ASSET, ASSET]) == [0]

    def test_scan_empty(self):
        assert scan_liquidatable(self.view, self.prices, [], []) == []

    def test_scan_unquotable_is_skipped(self):
        assert scan_liquidatable(self.view, ZeroQuotePriceService(), ['u1', 'u3'], [ASSET, ASSET]) == []

    def test_scan_length_mismatch(self):
        with pytest.raises(ArrayLengthMismatch):
            scan_liquidatable(self.view, self.prices, ['u0', 'u1'], [ASSET])

    def test_scan_respects_threshold(self):
        view = FakeView(
            positions={('u1', ASSET): active(10_500_000_000, 10 * COIN)},
            config=ProtocolConfig(liquidation_threshold=PRECISION),
        )
        assert scan_liquidatable(view, self.prices, ['u1'], [ASSET]) == []


# ============================================================================
# REQUESTS
# ============================================================================

class TestLiquidationRequests:

    def test_create_and_get(self, seeded_engine):
        seeded_engine.open_position(ALICE, ASSET, 10 * COIN, 2 * PRECISION)
        request = seeded_engine.create_liquidation_request(BOB, ALICE, ASSET, "ipfs://why", "0xabc")

        assert request.deadline == 360
        assert request.borrowed_snapshot == 10 * COIN
        assert not request.is_processed
        assert seeded_engine.get_liquidation_request(request.request_id) == request

    def test_no_position(self, seeded_engine):
        with pytest.raises(PositionNotFound):
            seeded_engine.create_liquidation_request(BOB, ALICE, ASSET)

    def test_duplicate_in_same_block(self, seeded_engine):
        seeded_engine.open_position(ALICE, ASSET, 10 * COIN, 2 * PRECISION)
        seeded_engine.create_liquidation_request(BOB, ALICE, ASSET)
        with pytest.raises(DuplicateRequest):
            seeded_engine.create_liquidation_request(BOB, ALICE, ASSET)

    def test_unknown(self, seeded_engine):
        with pytest.raises(RequestNotFound):
            seeded_engine.get_liquidation_request("missing")

    def test_expiry(self, seeded_engine):
        seeded_engine.open_position(ALICE, ASSET, 10 * COIN, 2 * PRECISION)
        request = seeded_engine.create_liquidation_request(BOB, ALICE, ASSET)
        seeded_engine.ledger.advance_block(360)
        seeded_engine.get_liquidation_request(request.request_id)
        seeded_engine.ledger.advance_block(1)
        with pytest.raises(RequestExpired):
            seeded_engine.get_liquidation_request(request.request_id)

    def test_liquidation_marks_processed(self, seeded_engine):
        open_and_crash(seeded_engine)
        request = seeded_engine.create_liquidation_request(BOB, ALICE, ASSET)
        seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

        processed = seeded_engine.get_liquidation_request(request.request_id)
        assert processed.is_processed
        seeded_engine.ledger.advance_block(1_000)
        assert seeded_engine.get_liquidation_request(request.request_id).is_processed


# ============================================================================
# LIQUIDATE
# ============================================================================

class TestLiquidatePosition:

    def test_payouts(self, seeded_engine):
        engine = seeded_engine
        open_and_crash(engine)
        record = engine.liquidate_position(LIQUIDATOR, ALICE, ASSET, "ref", "hash")

        assert isinstance(record, LiquidationRecord)
        assert record.realized_value == PROCEEDS
        assert record.fee_amount == 15_352_000_000_000_000
        assert record.liquidator_share == 7_676_000_000_000_000
        assert engine.ledger.get_balance(LIQUIDATOR) == 7_676_000_000_000_000
        assert engine.ledger.get_balance(ALICE) == 90 * COIN + 752_248_000_000_000_000

    def test_clears_position(self, seeded_engine):
        engine = seeded_engine
        open_and_crash(engine)
        engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

        assert not engine.get_position(ALICE, ASSET).is_active
        agg = engine.aggregates
        assert agg.total_borrowed == 0
        assert agg.total_collateral == 0
        assert agg.total_liquidations == 1
        assert agg.total_liquidation_value == PROCEEDS
        assert agg.total_liquidation_fees == 15_352_000_000_000_000
        assert agg.total_bad_debt == 0
        assert engine.ledger.verify_invariants()['valid']

    def test_event_emitted(self, seeded_engine):
        open_and_crash(seeded_engine)
        seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)
        last = seeded_engine.ledger.operation_log[-1]
        assert last.name == "liquidate_position"
        assert isinstance(last.events[-1], LiquidationRecord)

    def test_bad_debt(self, seeded_engine):
        engine = seeded_engine
        open_and_crash(engine, price=PRECISION // 2)
        engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

        # proceeds 9.97 against 10 debt
        agg = engine.aggregates
        assert agg.total_bad_debt == 30_000_000_000_000_000
        assert engine.ledger.get_balance(ALICE) == 90 * COIN
        # the 0.024 protocol share of the open fee goes first, LPs cover the rest
        assert agg.bad_debt_absorbed_by_protocol == 24_000_000_000_000_000
        assert agg.bad_debt_absorbed_by_lps == 6_000_000_000_000_000
        assert agg.protocol_fees == 0
        assert agg.buyback_pool == 0
        assert agg.total_lp_stakes == 500 * COIN - 6_000_000_000_000_000
        assert agg.total_lp_shares == 500 * COIN
        assert engine.ledger.verify_invariants()['valid']

    def test_lp_exits_in_full_after_bad_debt(self, seeded_engine):
        engine = seeded_engine
        open_and_crash(engine, price=PRECISION // 2)
        engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

        stake = engine.get_liquidity_provider(LP).stake
        engine.remove_liquidity(LP, stake)
        claimed = engine.claim_lp_fees(LP)

        assert claimed == 36_000_000_000_000_000
        assert engine.ledger.get_balance(PROTOCOL_WALLET) == 0
        assert engine.aggregates.total_pending_lp_fees == 0
        assert engine.ledger.verify_invariants()['valid']

    def test_every_lp_exits_after_bad_debt(self, seeded_engine):
        engine = seeded_engine
        engine.add_liquidity(BOB, 50 * COIN)
        open_and_crash(engine, price=PRECISION // 2)
        engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

        bob_stake = engine.get_liquidity_provider(BOB).stake
        lp_stake = engine.get_liquidity_provider(LP).stake
        assert bob_stake < 50 * COIN and lp_stake < 500 * COIN
        for provider, stake in ((BOB, bob_stake), (LP, lp_stake)):
            engine.remove_liquidity(provider, stake)
            engine.claim_lp_fees(provider)

        agg = engine.aggregates
        assert agg.total_lp_stakes == 0
        assert agg.total_pending_lp_fees == 0
        # only protocol-owned rounding is left in the wallet
        assert engine.ledger.get_balance(PROTOCOL_WALLET) == agg.protocol_fees
        assert agg.bad_debt_absorbed_by_protocol + agg.bad_debt_absorbed_by_lps == agg.total_bad_debt
        assert engine.ledger.verify_invariants()['valid']

    def test_realized_proceeds_drive_payout(self):
        engine = make_engine(redeem_discount=10_000_000)
        open_and_crash(engine)
        record = engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)
        # 1% execution slippage below the quote
        assert record.realized_value == PROCEEDS - PROCEEDS // 100

    def test_healthy_position(self, seeded_engine):
        seeded_engine.open_position(ALICE, ASSET, 10 * COIN, 2 * PRECISION)
        with pytest.raises(NotLiquidatable):
            seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

    def test_inactive(self, seeded_engine):
        with pytest.raises(PositionInactive):
            seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

    def test_zero_quote(self, seeded_engine):
        open_and_crash(seeded_engine, price=0)
        with pytest.raises(InvalidValue):
            seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

    def test_unstake_failure(self, seeded_engine):
        open_and_crash(seeded_engine)
        seeded_engine.stake_service.fail_redemptions = True
        with pytest.raises(UnstakeFailed):
            seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)

    def test_liquidator_rejects_fee(self, seeded_engine):
        open_and_crash(seeded_engine)
        seeded_engine.ledger.set_accepts_payments(LIQUIDATOR, False)
        with pytest.raises(LiquiFeeTransferFailed):
            seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)
        assert seeded_engine.get_position(ALICE, ASSET).is_active

    def test_owner_rejects_refund(self, seeded_engine):
        open_and_crash(seeded_engine)
        seeded_engine.ledger.set_accepts_payments(ALICE, False)
        with pytest.raises(CollateralReturnFailed):
            seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)
        assert seeded_engine.aggregates.total_liquidations == 0

    def test_accrued_fees_count_as_debt(self, seeded_engine):
        engine = seeded_engine
        open_and_crash(engine)
        engine.ledger.advance_block(360)
        engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)
        assert engine.aggregates.total_borrowing_fees == 525_000_000_000_000
        assert engine.aggregates.accrued_borrowing_fees == 0

    def test_no_asset_held(self, seeded_engine):
        seeded_engine.ledger.set_position(ALICE, ASSET, Position(collateral=COIN, borrowed=COIN, is_active=True))
        with pytest.raises(NoAlpha):
            seeded_engine.liquidate_position(LIQUIDATOR, ALICE, ASSET)
