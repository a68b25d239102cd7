"""
ledger.py - Canonical protocol state and atomic units

The ProtocolLedger is the central state manager of the engine. It is the
only object that holds mutable state, and every operation receives it by
exclusive reference.

Key responsibilities:
    - Implements ProtocolView for read-only access by pure functions
    - Runs each external operation as one atomic unit (all effects commit
      together or none do), including participating external services
    - Holds native balances and validates every transfer
    - Tracks block height (forward only)
    - Keeps the audit trail of committed operations
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple
import logging

from .config import ProtocolConfig
from .core import (
    # Types
    Position, LiquidityProvider, AssetPool, LiquidationRequest,
    ProtocolAggregates, UserStats, OperationRecord, PositionKey,
    EMPTY_POSITION,
    # Constants
    PROTOCOL_WALLET, EXTERNAL_WALLET,
    # Exceptions
    InsufficientFunds, TransferFailed, InvalidValue,
    # Helpers
    checked_add,
)
from .services import Transactional

logger = logging.getLogger(__name__)


class ProtocolLedger:
    """
    Keyed protocol state with atomic, audited mutation.

    Records (positions, LPs, pools, requests, aggregates) are immutable
    dataclasses; mutators swap in replacements. Snapshotting an atomic unit
    therefore only copies the containing dicts.

    Thread Safety:
        Not thread-safe. Operations are serialized by the host.

    Example:
        ledger = ProtocolLedger("main", ProtocolConfig())
        ledger.fund("alice", 10 * COIN)
        with ledger.atomic("deposit", "alice"):
            ledger.transfer("alice", PROTOCOL_WALLET, COIN)
    """

    def __init__(
        self,
        name: str,
        config: Optional[ProtocolConfig] = None,
        initial_block: int = 0,
    ):
        """
        Create a ledger.

        Args:
            name: Ledger identifier
            config: Parameter snapshot (defaults to ProtocolConfig())
            initial_block: Starting block height
        """
        if initial_block < 0:
            raise ValueError(f"initial_block cannot be negative, got {initial_block}")
        self.name = name
        self._config = config or ProtocolConfig()
        self._current_block = initial_block

        self.positions: Dict[PositionKey, Position] = {}
        self.liquidity_providers: Dict[str, LiquidityProvider] = {}
        self.asset_pools: Dict[int, AssetPool] = {}
        self.liquidation_requests: Dict[str, LiquidationRequest] = {}
        self.user_stats: Dict[str, UserStats] = {}
        self._aggregates = ProtocolAggregates()

        self.last_user_action_block: Dict[str, int] = {}
        self.last_lp_action_block: Dict[str, int] = {}
        self.liquidity_circuit_breaker = False

        self.balances: Dict[str, int] = {}
        self.rejecting_wallets: Set[str] = set()

        self.operation_log: List[OperationRecord] = []
        self._next_sequence = 0
        self._pending_events: Optional[List[Any]] = None

    # ========================================================================
    # ProtocolView IMPLEMENTATION (read-only)
    # ========================================================================

    @property
    def current_block(self) -> int:
        """Current block height."""
        return self._current_block

    @property
    def config(self) -> ProtocolConfig:
        """Current parameter snapshot."""
        return self._config

    @property
    def aggregates(self) -> ProtocolAggregates:
        """Protocol-wide totals."""
        return self._aggregates

    def get_position(self, user: str, asset: int) -> Position:
        """Return the position for (user, asset); an inactive zero record if none."""
        return self.positions.get((user, asset), EMPTY_POSITION)

    def get_asset_pool(self, asset: int) -> AssetPool:
        return self.asset_pools.get(asset, AssetPool())

    def get_liquidity_provider(self, address: str) -> LiquidityProvider:
        return self.liquidity_providers.get(address, LiquidityProvider())

    def get_user_stats(self, address: str) -> UserStats:
        return self.user_stats.get(address, UserStats())

    def get_balance(self, address: str) -> int:
        """Native balance of an address."""
        return self.balances.get(address, 0)

    def active_positions(self) -> List[Tuple[PositionKey, Position]]:
        """All active positions, sorted by key for deterministic iteration."""
        return sorted(self.positions.items())

    def events(self) -> List[Any]:
        """All committed events in commit order."""
        return [event for record in self.operation_log for event in record.events]

    # ========================================================================
    # BLOCK MANAGEMENT
    # ========================================================================

    def advance_block(self, blocks: int = 1) -> int:
        """
        Advance the block height.

        Raises:
            ValueError: if blocks is negative
        """
        if blocks < 0:
            raise ValueError(f"Cannot move blocks backwards: {blocks}")
        self._current_block += blocks
        return self._current_block

    def set_block(self, block: int) -> None:
        """Jump to an absolute block height (forward only)."""
        if block < self._current_block:
            raise ValueError(f"Cannot move blocks backwards: {block} < {self._current_block}")
        self._current_block = block

    # ========================================================================
    # RECORD MUTATION
    # ========================================================================

    def set_config(self, config: ProtocolConfig) -> None:
        self._config = config

    def set_position(self, user: str, asset: int, position: Position) -> None:
        """Store a position; inactive positions are dropped from storage."""
        if position.is_active:
            self.positions[(user, asset)] = position
        else:
            self.positions.pop((user, asset), None)

    def set_asset_pool(self, asset: int, pool: AssetPool) -> None:
        self.asset_pools[asset] = pool

    def set_liquidity_provider(self, address: str, lp: LiquidityProvider) -> None:
        if lp.is_active or lp.pending_fees:
            self.liquidity_providers[address] = lp
        else:
            self.liquidity_providers.pop(address, None)

    def set_liquidation_request(self, request: LiquidationRequest) -> None:
        self.liquidation_requests[request.request_id] = request

    def update_aggregates(self, **changes: Any) -> ProtocolAggregates:
        """Replace aggregate fields and return the new aggregates."""
        self._aggregates = replace(self._aggregates, **changes)
        return self._aggregates

    def adjust_user_stats(
        self,
        address: str,
        collateral: int = 0,
        borrowed: int = 0,
        volume: int = 0,
    ) -> UserStats:
        """Apply signed deltas to an address's stats."""
        stats = self.get_user_stats(address)
        stats = UserStats(
            collateral=checked_add(stats.collateral, collateral),
            borrowed=checked_add(stats.borrowed, borrowed),
            volume=checked_add(stats.volume, volume),
        )
        self.user_stats[address] = stats
        return stats

    def mark_user_action(self, address: str) -> None:
        self.last_user_action_block[address] = self._current_block

    def mark_lp_action(self, address: str) -> None:
        self.last_lp_action_block[address] = self._current_block

    def set_circuit_breaker(self, active: bool) -> None:
        if active != self.liquidity_circuit_breaker:
            logger.info("Liquidity circuit breaker %s at block %d",
                        "tripped" if active else "reset", self._current_block)
        self.liquidity_circuit_breaker = active

    # ========================================================================
    # NATIVE BALANCES
    # ========================================================================

    def set_accepts_payments(self, address: str, accepts: bool) -> None:
        """Mark an address as accepting or rejecting incoming native transfers."""
        if accepts:
            self.rejecting_wallets.discard(address)
        else:
            self.rejecting_wallets.add(address)

    def transfer(
        self,
        source: str,
        dest: str,
        amount: int,
        error: type = TransferFailed,
    ) -> None:
        """
        Move native value between addresses.

        EXTERNAL_WALLET is exempt from balance validation (value entering or
        leaving through the stake service or outside funding).

        Args:
            source: Debited address
            dest: Credited address
            amount: Amount in wei (zero is a no-op)
            error: Exception raised when dest rejects the payment

        Raises:
            InvalidValue: if amount is negative or source == dest
            InsufficientFunds: if source cannot cover amount
            error: if dest rejects incoming payments
        """
        if amount < 0:
            raise InvalidValue(f"transfer amount cannot be negative, got {amount}")
        if amount == 0:
            return
        if source == dest:
            raise InvalidValue("transfer source and dest must differ")
        if dest in self.rejecting_wallets:
            raise error(f"{dest} rejected transfer of {amount}")

        if source != EXTERNAL_WALLET:
            available = self.get_balance(source)
            if available < amount:
                raise InsufficientFunds(f"{source}: balance {available} < {amount}")
            self.balances[source] = available - amount
        else:
            self.balances[source] = self.get_balance(source) - amount
        if dest != EXTERNAL_WALLET:
            self.balances[dest] = checked_add(self.get_balance(dest), amount)
        else:
            self.balances[dest] = self.get_balance(dest) + amount

    def fund(self, address: str, amount: int) -> None:
        """Credit an address from outside the protocol."""
        self.transfer(EXTERNAL_WALLET, address, amount)

    # ========================================================================
    # ATOMIC UNITS
    # ========================================================================

    @property
    def in_atomic_unit(self) -> bool:
        return self._pending_events is not None

    def emit(self, event: Any) -> None:
        """
        Record an event for the current atomic unit.

        Events emitted outside a unit are committed immediately as a
        single-event operation record.
        """
        if self._pending_events is not None:
            self._pending_events.append(event)
        else:
            self._commit_record(type(event).__name__, "", (event,))

    @contextmanager
    def atomic(
        self,
        name: str,
        caller: str,
        participants: Sequence[Transactional] = (),
    ) -> Iterator['ProtocolLedger']:
        """
        Run a block of mutations as one all-or-nothing unit.

        Any exception restores the ledger and every participant to their
        state at entry, discards events, and re-raises. Nested calls join
        the enclosing unit.

        Args:
            name: Operation name for the audit trail
            caller: Address that triggered the operation
            participants: External services to snapshot/restore with the ledger
        """
        if self._pending_events is not None:
            yield self
            return

        snapshot = self._snapshot()
        tokens = [(p, p.snapshot()) for p in participants]
        self._pending_events = []
        try:
            yield self
        except BaseException as exc:
            self._restore(snapshot)
            for participant, token in reversed(tokens):
                participant.restore(token)
            self._pending_events = None
            logger.warning("%s by %s rolled back at block %d: %s: %s",
                           name, caller, self._current_block, type(exc).__name__, exc)
            raise
        events = tuple(self._pending_events)
        self._pending_events = None
        record = self._commit_record(name, caller, events)
        logger.info("%s by %s committed at block %d (seq %d, %d events)",
                    name, caller, record.block, record.sequence, len(events))

    def _commit_record(self, name: str, caller: str, events: Tuple[Any, ...]) -> OperationRecord:
        record = OperationRecord(
            sequence=self._next_sequence,
            block=self._current_block,
            name=name,
            caller=caller,
            events=events,
        )
        self._next_sequence += 1
        self.operation_log.append(record)
        return record

    def _snapshot(self) -> Dict[str, Any]:
        return {
            'config': self._config,
            'positions': dict(self.positions),
            'liquidity_providers': dict(self.liquidity_providers),
            'asset_pools': dict(self.asset_pools),
            'liquidation_requests': dict(self.liquidation_requests),
            'user_stats': dict(self.user_stats),
            'aggregates': self._aggregates,
            'last_user_action_block': dict(self.last_user_action_block),
            'last_lp_action_block': dict(self.last_lp_action_block),
            'liquidity_circuit_breaker': self.liquidity_circuit_breaker,
            'balances': dict(self.balances),
            'rejecting_wallets': set(self.rejecting_wallets),
        }

    def _restore(self, snapshot: Dict[str, Any]) -> None:
        self._config = snapshot['config']
        self.positions = snapshot['positions']
        self.liquidity_providers = snapshot['liquidity_providers']
        self.asset_pools = snapshot['asset_pools']
        self.liquidation_requests = snapshot['liquidation_requests']
        self.user_stats = snapshot['user_stats']
        self._aggregates = snapshot['aggregates']
        self.last_user_action_block = snapshot['last_user_action_block']
        self.last_lp_action_block = snapshot['last_lp_action_block']
        self.liquidity_circuit_breaker = snapshot['liquidity_circuit_breaker']
        self.balances = snapshot['balances']
        self.rejecting_wallets = snapshot['rejecting_wallets']

    # ========================================================================
    # LEDGER OPERATIONS
    # ========================================================================

    def clone(self) -> 'ProtocolLedger':
        """
        Create an independent copy of this ledger.

        Records are immutable, so copying the containers is a full copy.
        """
        cloned = ProtocolLedger(self.name, self._config, self._current_block)
        cloned._restore(self._snapshot())
        cloned.operation_log = list(self.operation_log)
        cloned._next_sequence = self._next_sequence
        return cloned

    def verify_invariants(self) -> Dict[str, Any]:
        """
        Check that aggregates agree with the records they summarize.

        Returns:
            Dict with keys:
            - 'valid': bool
            - 'discrepancies': list of {'check', 'expected', 'actual'}
        """
        discrepancies = []

        def check(name: str, expected: int, actual: int) -> None:
            if expected != actual:
                discrepancies.append({'check': name, 'expected': expected, 'actual': actual})

        positions = [p for _, p in self.active_positions()]
        check('total_borrowed', sum(p.borrowed for p in positions), self._aggregates.total_borrowed)
        check('total_collateral', sum(p.collateral for p in positions), self._aggregates.total_collateral)
        check('accrued_borrowing_fees', sum(p.accrued_fees for p in positions),
              self._aggregates.accrued_borrowing_fees)

        for asset, pool in sorted(self.asset_pools.items()):
            in_asset = [p for (_, a), p in self.positions.items() if a == asset]
            check(f'pool[{asset}].total_borrowed', sum(p.borrowed for p in in_asset), pool.total_borrowed)
            check(f'pool[{asset}].total_collateral', sum(p.collateral for p in in_asset), pool.total_collateral)

        lps = list(self.liquidity_providers.values())
        check('total_lp_stakes', sum(lp.stake for lp in lps), self._aggregates.total_lp_stakes)
        check('total_lp_shares', sum(lp.shares for lp in lps), self._aggregates.total_lp_shares)

        # Native value is conserved: the external wallet mirrors everything else.
        check('native_supply', 0, sum(self.balances.values()))

        return {'valid': not discrepancies, 'discrepancies': discrepancies}

    def protocol_stats(self) -> Dict[str, Any]:
        """Aggregates plus flags, as a plain dict."""
        agg = self._aggregates
        return {
            'total_collateral': agg.total_collateral,
            'total_borrowed': agg.total_borrowed,
            'total_volume': agg.total_volume,
            'total_trades': agg.total_trades,
            'protocol_fees': agg.protocol_fees,
            'total_lp_stakes': agg.total_lp_stakes,
            'buyback_pool': agg.buyback_pool,
            'total_liquidations': agg.total_liquidations,
            'total_bad_debt': agg.total_bad_debt,
            'accrued_borrowing_fees': agg.accrued_borrowing_fees,
            'liquidity_circuit_breaker': self.liquidity_circuit_breaker,
            'paused': self._config.paused,
            'block': self._current_block,
        }

    def __repr__(self) -> str:
        return (f"ProtocolLedger({self.name!r}, block={self._current_block}, "
                f"positions={len(self.positions)}, lps={len(self.liquidity_providers)})")
