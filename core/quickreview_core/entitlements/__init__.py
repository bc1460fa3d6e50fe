"""Plan tiers, quota limits, and the account lifecycle."""

from quickreview_core.entitlements.lifecycle import AccountState, resolve_account_state
from quickreview_core.entitlements.plans import TIER_LIMITS, PlanLimits, Tier, get_limits, parse_tier

__all__ = [
    "AccountState",
    "PlanLimits",
    "TIER_LIMITS",
    "Tier",
    "get_limits",
    "parse_tier",
    "resolve_account_state",
]
