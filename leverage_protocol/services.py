"""
services.py - External collaborators consumed by the engine

The engine never moves stake or prices an asset itself. It calls two
injected services:

- PriceService: simulated, non-committing quotes and spot prices
- StakeService: committing stake deposits and redemptions

Both speak RAO at the boundary; callers convert with rao_to_wei() /
wei_to_rao(). A quote and the amount a redemption actually realizes are
different numbers and the engine never assumes they match.

Services that also implement Transactional (snapshot/restore) join the
ledger's atomic unit and are rolled back together with it.

Classes:
- PriceService, StakeService, Transactional: Protocols
- StaticPriceService: fixed per-asset prices, updated explicitly
- InMemoryStakeService: stake book priced off a PriceService
"""

from __future__ import annotations
from typing import Any, Dict, Optional, Protocol, Tuple, runtime_checkable

from .core import PRECISION


# Prices are RAO per 1e9 asset units (one whole asset).
PRICE_SCALE = 1_000_000_000


@runtime_checkable
class PriceService(Protocol):
    """Quotes asset holdings in the base currency without committing anything."""

    def quote(self, asset: int, amount: int) -> int:
        """Simulated base-currency proceeds (RAO) for selling `amount` asset units."""
        ...

    def spot_price(self, asset: int) -> int:
        """Current spot price (RAO per whole asset unit)."""
        ...


@runtime_checkable
class StakeService(Protocol):
    """Moves stake in and out of the yield-bearing asset."""

    def deposit(self, validator_ref: str, amount: int, asset: int) -> int:
        """Stake `amount` RAO; returns asset units received (0 on failure)."""
        ...

    def redeem(self, validator_ref: str, amount: int, asset: int) -> int:
        """Unstake `amount` asset units; returns RAO received (0 on failure)."""
        ...


@runtime_checkable
class Transactional(Protocol):
    """A collaborator whose state can join an atomic unit."""

    def snapshot(self) -> Any:
        ...

    def restore(self, token: Any) -> None:
        ...


class StaticPriceService:
    """
    Price service with static prices (block-independent).

    Prices remain constant until update_price() is called.
    Unknown assets price at 0, which the engine treats as a failed quote.
    """

    def __init__(self, prices: Optional[Dict[int, int]] = None):
        """
        Args:
            prices: Mapping of asset id to spot price (RAO per whole asset unit)
        """
        self.prices: Dict[int, int] = dict(prices or {})

    def quote(self, asset: int, amount: int) -> int:
        return amount * self.prices.get(asset, 0) // PRICE_SCALE

    def spot_price(self, asset: int) -> int:
        return self.prices.get(asset, 0)

    def update_price(self, asset: int, price: int) -> None:
        """Update the price of an asset."""
        self.prices[asset] = price

    def update_prices(self, prices: Dict[int, int]) -> None:
        """Update multiple prices at once."""
        self.prices.update(prices)

    def snapshot(self) -> Dict[int, int]:
        return dict(self.prices)

    def restore(self, token: Dict[int, int]) -> None:
        self.prices = dict(token)

    def __repr__(self):
        return f"StaticPriceService({len(self.prices)} prices)"


class InMemoryStakeService:
    """
    Stake book executing at the price service's spot price.

    `redeem_discount` (scaled by PRECISION) models execution slippage on
    the way out, so realized proceeds fall short of the quote. Setting
    `fail_deposits` / `fail_redemptions` makes the service return zero.
    """

    def __init__(
        self,
        prices: PriceService,
        redeem_discount: int = 0,
        deposit_discount: int = 0,
    ):
        self.prices = prices
        self.redeem_discount = redeem_discount
        self.deposit_discount = deposit_discount
        self.fail_deposits = False
        self.fail_redemptions = False
        # (validator_ref, asset) -> staked asset units
        self.stakes: Dict[Tuple[str, int], int] = {}

    def deposit(self, validator_ref: str, amount: int, asset: int) -> int:
        price = self.prices.spot_price(asset)
        if self.fail_deposits or price <= 0 or amount <= 0:
            return 0
        received = amount * PRICE_SCALE // price
        received -= received * self.deposit_discount // PRECISION
        key = (validator_ref, asset)
        self.stakes[key] = self.stakes.get(key, 0) + received
        return received

    def redeem(self, validator_ref: str, amount: int, asset: int) -> int:
        key = (validator_ref, asset)
        if self.fail_redemptions or amount <= 0 or self.stakes.get(key, 0) < amount:
            return 0
        gross = self.prices.quote(asset, amount)
        proceeds = gross - gross * self.redeem_discount // PRECISION
        self.stakes[key] -= amount
        return proceeds

    def staked(self, validator_ref: str, asset: int) -> int:
        """Asset units staked through a validator."""
        return self.stakes.get((validator_ref, asset), 0)

    def snapshot(self) -> Dict[Tuple[str, int], int]:
        return dict(self.stakes)

    def restore(self, token: Dict[Tuple[str, int], int]) -> None:
        self.stakes = dict(token)

    def __repr__(self):
        return f"InMemoryStakeService({len(self.stakes)} stakes)"
