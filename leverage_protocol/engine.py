"""
engine.py - External operation surface

ProtocolEngine binds a ProtocolLedger to its price and stake services and
exposes every state-changing operation as one atomic unit:

    engine = ProtocolEngine(ledger, prices, stakes)
    engine.add_liquidity("lp", 100 * COIN)
    engine.open_position("alice", asset=1, collateral=COIN, leverage=3 * PRECISION)

Before entering the unit each operation checks the pause flag and, where
the operation has one, its function-permission flag. Services that support
snapshot/restore are rolled back together with the ledger.
"""

from __future__ import annotations
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence
import logging

from . import buyback, liquidation, liquidity, positions
from .config import FeeCategory, FeeSplit, ProtocolConfig, TierSchedule
from .core import (
    PRECISION,
    OP_OPEN_POSITION, OP_CLOSE_POSITION, OP_ADD_COLLATERAL,
    AssetPool, LiquidationRecord, LiquidationRequest, LiquidityProvider,
    Position, ProtocolAggregates, UserStats,
    FunctionNotPermitted, NotOwner, ProtocolPaused,
)
from .distribution import pending_lp_fees
from .fees import compute_accrued_fees, compute_protocol_accrued_fees
from .ledger import ProtocolLedger
from .services import PriceService, StakeService, Transactional
from .tiers import get_user_tier

logger = logging.getLogger(__name__)


class ProtocolEngine:
    """
    Serialized, atomic operations over one ledger.

    Attributes:
        ledger: The owned ProtocolLedger
        price_service: Quotes and spot prices
        stake_service: Stake deposits and redemptions
    """

    def __init__(
        self,
        ledger: ProtocolLedger,
        price_service: PriceService,
        stake_service: StakeService,
    ):
        self.ledger = ledger
        self.price_service = price_service
        self.stake_service = stake_service
        self._participants: List[Transactional] = []
        for service in (price_service, stake_service):
            if isinstance(service, Transactional) and service not in self._participants:
                self._participants.append(service)

    @contextmanager
    def _operation(self, name: str, caller: str, operation_id: Optional[int] = None) -> Iterator[ProtocolLedger]:
        config = self.ledger.config
        if config.paused:
            raise ProtocolPaused(f"{name} rejected: protocol is paused")
        if operation_id is not None and not config.is_permitted(operation_id):
            raise FunctionNotPermitted(f"{name} (id {operation_id}) is disabled")
        with self.ledger.atomic(name, caller, self._participants) as ledger:
            yield ledger

    # ========================================================================
    # POSITIONS
    # ========================================================================

    def open_position(
        self,
        user: str,
        asset: int,
        collateral: int,
        leverage: int,
        validator_ref: Optional[str] = None,
        min_asset_out: int = 0,
    ) -> Position:
        with self._operation("open_position", user, OP_OPEN_POSITION) as ledger:
            return positions.open_position(
                ledger, self.price_service, self.stake_service,
                user, asset, collateral, leverage, validator_ref, min_asset_out,
            )

    def close_position(
        self,
        user: str,
        asset: int,
        close_fraction: int = PRECISION,
        min_proceeds: int = 0,
    ) -> positions.CloseResult:
        with self._operation("close_position", user, OP_CLOSE_POSITION) as ledger:
            return positions.close_position(
                ledger, self.price_service, self.stake_service,
                user, asset, close_fraction, min_proceeds,
            )

    def add_collateral(self, user: str, asset: int, amount: int, min_asset_out: int = 0) -> Position:
        with self._operation("add_collateral", user, OP_ADD_COLLATERAL) as ledger:
            return positions.add_collateral(ledger, self.stake_service, user, asset, amount, min_asset_out)

    # ========================================================================
    # LIQUIDITY
    # ========================================================================

    def add_liquidity(self, provider: str, amount: int) -> LiquidityProvider:
        with self._operation("add_liquidity", provider) as ledger:
            return liquidity.add_liquidity(ledger, provider, amount)

    def remove_liquidity(self, provider: str, amount: int) -> LiquidityProvider:
        with self._operation("remove_liquidity", provider) as ledger:
            return liquidity.remove_liquidity(ledger, provider, amount)

    def claim_lp_fees(self, provider: str) -> int:
        with self._operation("claim_lp_fees", provider) as ledger:
            return liquidity.claim_lp_fees(ledger, provider)

    # ========================================================================
    # LIQUIDATION
    # ========================================================================

    def liquidate_position(
        self,
        liquidator: str,
        user: str,
        asset: int,
        justification_ref: str = "",
        content_hash: str = "",
    ) -> LiquidationRecord:
        with self._operation("liquidate_position", liquidator) as ledger:
            return liquidation.liquidate_position(
                ledger, self.price_service, self.stake_service,
                liquidator, user, asset, justification_ref, content_hash,
            )

    def create_liquidation_request(
        self,
        requester: str,
        user: str,
        asset: int,
        justification_ref: str = "",
        content_hash: str = "",
    ) -> LiquidationRequest:
        with self._operation("create_liquidation_request", requester) as ledger:
            return liquidation.create_liquidation_request(
                ledger, requester, user, asset, justification_ref, content_hash,
            )

    def get_liquidation_request(self, request_id: str) -> LiquidationRequest:
        return liquidation.get_liquidation_request(self.ledger, request_id)

    def scan_liquidatable(self, users: Sequence[str], assets: Sequence[int]) -> List[int]:
        return liquidation.scan_liquidatable(self.ledger, self.price_service, users, assets)

    def position_health(self, user: str, asset: int) -> liquidation.PositionHealth:
        return liquidation.compute_position_health(self.ledger, self.price_service, user, asset)

    # ========================================================================
    # BUYBACK & ADMIN
    # ========================================================================

    def execute_buyback(self, caller: str) -> int:
        with self._operation("execute_buyback", caller) as ledger:
            return buyback.execute_buyback(ledger, self.stake_service, caller)

    def update_config(self, caller: str, **changes: Any) -> ProtocolConfig:
        """
        Replace config fields (owner only). Allowed while paused.

        Raises:
            NotOwner: if caller is not the configured owner
            ConfigInvalid, DistributionInvalid, TierConfigInvalid: on bad values
        """
        if caller != self.ledger.config.owner:
            raise NotOwner(f"{caller} is not the protocol owner")
        with self.ledger.atomic("update_config", caller, self._participants) as ledger:
            config = ledger.config.with_changes(**changes)
            ledger.set_config(config)
            liquidity.refresh_circuit_breaker(ledger)
            logger.info("Config updated by %s: %s", caller, sorted(changes))
            return config

    # ========================================================================
    # READ-ONLY GETTERS
    # ========================================================================

    @property
    def config(self) -> ProtocolConfig:
        return self.ledger.config

    @property
    def aggregates(self) -> ProtocolAggregates:
        return self.ledger.aggregates

    @property
    def is_paused(self) -> bool:
        return self.ledger.config.paused

    @property
    def circuit_breaker_active(self) -> bool:
        return self.ledger.liquidity_circuit_breaker

    def get_position(self, user: str, asset: int) -> Position:
        return self.ledger.get_position(user, asset)

    def get_accrued_fees(self, user: str, asset: int) -> int:
        return compute_accrued_fees(self.ledger, user, asset)

    def get_accrued_borrowing_fees(self) -> int:
        """Borrowing fees owed across open positions, accrued to the current block."""
        return compute_protocol_accrued_fees(self.ledger)

    @property
    def last_accrued_borrowing_fees_update(self) -> int:
        return self.ledger.aggregates.last_accrued_borrowing_fees_update

    def get_liquidity_provider(self, address: str) -> LiquidityProvider:
        return self.ledger.get_liquidity_provider(address)

    def get_pending_lp_fees(self, address: str) -> int:
        return pending_lp_fees(self.ledger, address)

    def get_asset_pool(self, asset: int) -> AssetPool:
        return self.ledger.get_asset_pool(asset)

    def get_user_stats(self, address: str) -> UserStats:
        return self.ledger.get_user_stats(address)

    def get_user_tier(self, address: str) -> int:
        return get_user_tier(self.ledger, address)

    def get_tiers(self) -> TierSchedule:
        return self.ledger.config.tiers

    def get_fee_split(self, category: FeeCategory) -> FeeSplit:
        return self.ledger.config.fee_split(category)

    def is_function_permitted(self, operation_id: int) -> bool:
        return self.ledger.config.is_permitted(operation_id)

    def protocol_stats(self) -> Dict[str, Any]:
        return self.ledger.protocol_stats()

    def __repr__(self) -> str:
        return f"ProtocolEngine({self.ledger!r})"
