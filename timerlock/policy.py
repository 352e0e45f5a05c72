"""
Policy evaluator: subscription tier -> maximum commitment duration.

Pure lookups only. Anything unrecognised falls back to the most restrictive
tier, never to "unlimited".
"""

from __future__ import annotations

from .models import TierLimits

DEFAULT_TIER = "1month"

TIER_LIMITS: dict[str, TierLimits] = {
    "1month": TierLimits(tier="1month", max_days=30, display_name="Monthly"),
    "3month": TierLimits(tier="3month", max_days=90, display_name="3-Month"),
    "1year": TierLimits(tier="1year", max_days=365, display_name="Annual"),
}

# Plan types as reported by billing -> tier id
PLAN_TIERS: dict[str, str] = {
    "monthly": "1month",
    "3months": "3month",
    "3month": "3month",
    "yearly": "1year",
    "annual": "1year",
    "1year": "1year",
}

MIN_COMMITMENT_DAYS = 1
MAX_COMMITMENT_DAYS = max(t.max_days for t in TIER_LIMITS.values())


def tier_for_plan(plan_type: str) -> str:
    """Normalise a billing plan type to a tier id."""
    if not isinstance(plan_type, str):
        raise TypeError(f"plan_type must be str, got {type(plan_type).__name__}")
    return PLAN_TIERS.get(plan_type.lower(), DEFAULT_TIER)


def limits_for_tier(tier: str) -> TierLimits:
    """Return the limits for a tier id; unknown ids get the most restrictive tier."""
    if not isinstance(tier, str):
        raise TypeError(f"tier must be str, got {type(tier).__name__}")
    if tier in TIER_LIMITS:
        return TIER_LIMITS[tier]
    if tier.lower() in PLAN_TIERS:
        return TIER_LIMITS[PLAN_TIERS[tier.lower()]]
    return min(TIER_LIMITS.values(), key=lambda t: t.max_days)


def allows(tier: str, commitment_days: int) -> bool:
    return MIN_COMMITMENT_DAYS <= commitment_days <= limits_for_tier(tier).max_days
