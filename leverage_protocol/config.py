"""
config.py - Protocol parameter snapshot

Owner-controlled tunables are consumed by the engine as an immutable
ProtocolConfig. Changing a parameter means building a new snapshot with
dataclasses.replace(), which re-runs every validation check.

All rates, ratios and leverage values are integers scaled by PRECISION.
All amounts are native wei.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Tuple, Union
import logging

import yaml

from .core import (
    PRECISION,
    OP_OPEN_POSITION, OP_CLOSE_POSITION, OP_ADD_COLLATERAL,
    ConfigInvalid, DistributionInvalid, TierConfigInvalid,
)

logger = logging.getLogger(__name__)


COIN = 10 ** 18

NUM_TIERS = 6


class FeeCategory(str, Enum):
    """Fee events that are split between LPs, liquidators and the protocol."""
    TRADING = "trading"
    BORROWING = "borrowing"
    LIQUIDATION = "liquidation"


@dataclass(frozen=True, slots=True)
class FeeSplit:
    """
    Three-way split of a fee category.

    The shares must sum to exactly PRECISION.
    """
    lp_share: int
    liquidator_share: int
    protocol_share: int

    def __post_init__(self):
        for name in ("lp_share", "liquidator_share", "protocol_share"):
            if getattr(self, name) < 0:
                raise DistributionInvalid(f"{name} cannot be negative")
        total = self.lp_share + self.liquidator_share + self.protocol_share
        if total != PRECISION:
            raise DistributionInvalid(
                f"fee split must sum to {PRECISION}, got {total}"
            )


@dataclass(frozen=True, slots=True)
class TierSchedule:
    """
    Six ascending tiers (0-5).

    thresholds[0] must be 0 so every account has a tier. Thresholds and max
    leverages are strictly ascending; fee discounts are non-decreasing.
    """
    thresholds: Tuple[int, ...]
    fee_discounts: Tuple[int, ...]
    max_leverages: Tuple[int, ...]

    def __post_init__(self):
        object.__setattr__(self, 'thresholds', tuple(self.thresholds))
        object.__setattr__(self, 'fee_discounts', tuple(self.fee_discounts))
        object.__setattr__(self, 'max_leverages', tuple(self.max_leverages))

        for name in ("thresholds", "fee_discounts", "max_leverages"):
            if len(getattr(self, name)) != NUM_TIERS:
                raise TierConfigInvalid(f"{name} must have {NUM_TIERS} entries")
        if self.thresholds[0] != 0:
            raise TierConfigInvalid("tier 0 threshold must be 0")
        for i in range(1, NUM_TIERS):
            if self.thresholds[i] <= self.thresholds[i - 1]:
                raise TierConfigInvalid(f"tier {i} threshold must exceed tier {i - 1}")
            if self.max_leverages[i] <= self.max_leverages[i - 1]:
                raise TierConfigInvalid(f"tier {i} max leverage must exceed tier {i - 1}")
            if self.fee_discounts[i] < self.fee_discounts[i - 1]:
                raise TierConfigInvalid(f"tier {i} fee discount must not be below tier {i - 1}")
        for discount in self.fee_discounts:
            if not 0 <= discount <= PRECISION:
                raise TierConfigInvalid(f"fee discount {discount} outside [0, {PRECISION}]")
        if self.max_leverages[0] < PRECISION:
            raise TierConfigInvalid("tier 0 max leverage must be at least 1x")


DEFAULT_TIERS = TierSchedule(
    thresholds=(0, 100 * COIN, 1_000 * COIN, 10_000 * COIN, 50_000 * COIN, 100_000 * COIN),
    fee_discounts=(0, 50_000_000, 100_000_000, 200_000_000, 300_000_000, 500_000_000),
    max_leverages=(2 * PRECISION, 3 * PRECISION, 4 * PRECISION, 5 * PRECISION, 7 * PRECISION, 10 * PRECISION),
)


def _default_permissions() -> Dict[int, bool]:
    return {OP_OPEN_POSITION: True, OP_CLOSE_POSITION: True, OP_ADD_COLLATERAL: True}


@dataclass(frozen=True)
class ProtocolConfig:
    """
    Immutable snapshot of every owner-controlled tunable.

    Risk:
        max_leverage: Protocol-wide leverage cap
        liquidation_threshold: Health ratio below which a position is liquidatable

    Liquidity guardrails:
        max_utilization_rate: Borrowed / LP stakes ceiling
        liquidity_buffer_ratio: Free-liquidity floor that trips the circuit breaker
        min_liquidity_threshold: Minimum pool size for borrowing and partial withdrawals
        min_lp_deposit: Minimum single liquidity deposit

    Rates:
        trading_fee_rate: Fee on position value at open and close
        borrowing_fee_rate: Base borrow rate per 360 blocks
        borrow_rate_slope: Rate added between 0 and optimal_utilization
        borrow_rate_jump_slope: Rate added between optimal_utilization and 100%
        optimal_utilization: Kink of the borrow-rate curve
        liquidation_fee_rate: Fee on the liquidation remainder after debt

    Cadences (blocks):
        user_action_cooldown_blocks, lp_action_cooldown_blocks,
        buyback_interval_blocks

    Buyback:
        buyback_rate: Fraction of the buyback pool spent per execution
        buyback_execution_threshold: Pool size that must be exceeded
    """
    max_leverage: int = 10 * PRECISION
    liquidation_threshold: int = 1_100_000_000

    max_utilization_rate: int = 900_000_000
    liquidity_buffer_ratio: int = 200_000_000
    min_liquidity_threshold: int = 1 * COIN
    min_lp_deposit: int = COIN // 10

    trading_fee_rate: int = 3_000_000
    borrowing_fee_rate: int = 50_000
    borrow_rate_slope: int = 100_000
    borrow_rate_jump_slope: int = 1_000_000
    optimal_utilization: int = 800_000_000
    liquidation_fee_rate: int = 20_000_000

    trading_fee_split: FeeSplit = FeeSplit(600_000_000, 0, 400_000_000)
    borrowing_fee_split: FeeSplit = FeeSplit(800_000_000, 0, 200_000_000)
    liquidation_fee_split: FeeSplit = FeeSplit(0, 500_000_000, 500_000_000)

    tiers: TierSchedule = DEFAULT_TIERS

    user_action_cooldown_blocks: int = 1
    lp_action_cooldown_blocks: int = 1

    buyback_rate: int = 500_000_000
    buyback_interval_blocks: int = 7200
    buyback_execution_threshold: int = 1 * COIN

    owner: str = "owner"
    treasury: str = "treasury"
    protocol_validator: str = "protocol-validator"
    protocol_asset_id: int = 0
    paused: bool = False
    function_permissions: Mapping[int, bool] = field(default_factory=_default_permissions)
    version: int = 1

    def __post_init__(self):
        object.__setattr__(self, 'function_permissions', dict(self.function_permissions))

        for name in (
            "max_utilization_rate", "liquidity_buffer_ratio",
            "trading_fee_rate", "borrowing_fee_rate", "borrow_rate_slope",
            "borrow_rate_jump_slope", "liquidation_fee_rate", "buyback_rate",
        ):
            value = getattr(self, name)
            if not 0 <= value <= PRECISION:
                raise ConfigInvalid(f"{name} must be in [0, {PRECISION}], got {value}")

        if self.liquidation_threshold <= 0:
            raise ConfigInvalid(f"liquidation_threshold must be positive, got {self.liquidation_threshold}")
        if not 0 < self.optimal_utilization < PRECISION:
            raise ConfigInvalid(
                f"optimal_utilization must be in (0, {PRECISION}), got {self.optimal_utilization}"
            )
        if self.max_leverage < PRECISION:
            raise ConfigInvalid(f"max_leverage must be at least 1x, got {self.max_leverage}")

        for name in (
            "min_liquidity_threshold", "min_lp_deposit", "user_action_cooldown_blocks",
            "lp_action_cooldown_blocks", "buyback_interval_blocks", "buyback_execution_threshold",
        ):
            if getattr(self, name) < 0:
                raise ConfigInvalid(f"{name} cannot be negative")

        for name in ("owner", "treasury", "protocol_validator"):
            if not getattr(self, name) or not getattr(self, name).strip():
                raise ConfigInvalid(f"{name} cannot be empty")

    # ------------------------------------------------------------------
    # Getters
    # ------------------------------------------------------------------

    def fee_split(self, category: FeeCategory) -> FeeSplit:
        """Return the configured split for a fee category."""
        category = FeeCategory(category)
        if category is FeeCategory.TRADING:
            return self.trading_fee_split
        if category is FeeCategory.BORROWING:
            return self.borrowing_fee_split
        return self.liquidation_fee_split

    def is_permitted(self, operation_id: int) -> bool:
        """Function-permission flag for an operation id (unknown ids are denied)."""
        return self.function_permissions.get(operation_id, False)

    def with_changes(self, **changes: Any) -> 'ProtocolConfig':
        """Return a validated copy with the given fields replaced."""
        unknown = set(changes) - {f.name for f in fields(self)}
        if unknown:
            raise ConfigInvalid(f"unknown config fields: {sorted(unknown)}")
        return replace(self, **changes)

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Mapping of plain builtins (inverse of from_dict)."""
        out: Dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, FeeSplit):
                value = {
                    'lp_share': value.lp_share,
                    'liquidator_share': value.liquidator_share,
                    'protocol_share': value.protocol_share,
                }
            elif isinstance(value, TierSchedule):
                value = {
                    'thresholds': list(value.thresholds),
                    'fee_discounts': list(value.fee_discounts),
                    'max_leverages': list(value.max_leverages),
                }
            elif f.name == 'function_permissions':
                value = {str(k): v for k, v in sorted(value.items())}
            out[f.name] = value
        return out

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> 'ProtocolConfig':
        """
        Build a config from a mapping, filling omitted fields with defaults.

        Fee splits accept a mapping with lp_share / liquidator_share /
        protocol_share or a 3-item sequence; tiers accept a mapping with
        thresholds / fee_discounts / max_leverages.
        """
        known = {f.name for f in fields(cls)}
        unknown = set(raw) - known
        if unknown:
            raise ConfigInvalid(f"unknown config fields: {sorted(unknown)}")

        kwargs: Dict[str, Any] = {}
        for key, value in raw.items():
            if key.endswith('_fee_split') and not isinstance(value, FeeSplit):
                if isinstance(value, Mapping):
                    value = FeeSplit(**value)
                else:
                    value = FeeSplit(*value)
            elif key == 'tiers' and not isinstance(value, TierSchedule):
                value = TierSchedule(**value)
            elif key == 'function_permissions':
                value = {int(k): bool(v) for k, v in value.items()}
            kwargs[key] = value
        return cls(**kwargs)


def load_config(path: Union[str, Path]) -> ProtocolConfig:
    """
    Load and validate a ProtocolConfig from a YAML file.

    Keys are ProtocolConfig field names; omitted keys keep their defaults.
    An empty file yields the default config.

    Raises:
        FileNotFoundError: if the file does not exist
        ConfigInvalid: if the document is not a mapping or names unknown fields
        DistributionInvalid, TierConfigInvalid: on invalid values
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path, encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)
    if raw is None:
        raw = {}
    if not isinstance(raw, Mapping):
        raise ConfigInvalid(f"{path}: expected a mapping, got {type(raw).__name__}")

    config = ProtocolConfig.from_dict(raw)
    logger.info("Configuration loaded from %s", path)
    return config
