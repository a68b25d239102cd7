"""
tiers.py - Account tier lookup

An account's tier is the highest tier whose threshold is met by its
qualifying metric (cumulative trading volume). The tier sets the trading
fee discount and the leverage cap.
"""

from __future__ import annotations
from bisect import bisect_right

from .config import TierSchedule
from .core import ProtocolView


def tier_for_metric(schedule: TierSchedule, metric: int) -> int:
    """Highest tier index whose threshold is <= metric."""
    # thresholds[0] == 0, so any non-negative metric lands in tier 0 or above
    return max(bisect_right(schedule.thresholds, metric) - 1, 0)


def get_user_tier(view: ProtocolView, user: str) -> int:
    return tier_for_metric(view.config.tiers, view.get_user_stats(user).volume)


def fee_discount_for(view: ProtocolView, user: str) -> int:
    """Trading fee discount of the user's tier, scaled by PRECISION."""
    return view.config.tiers.fee_discounts[get_user_tier(view, user)]


def max_leverage_for(view: ProtocolView, user: str) -> int:
    """Leverage cap for a user: the tier cap, bounded by the protocol-wide cap."""
    config = view.config
    return min(config.tiers.max_leverages[get_user_tier(view, user)], config.max_leverage)
