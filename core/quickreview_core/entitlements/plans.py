"""Plan tiers and the quota limits attached to each.

Two tiers control access to metered features:

* **Free** -- one store and a monthly scan allowance.
* **Pro** -- unlimited stores and scans, paid through Stripe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)


class Tier(str, Enum):
    """Entitlement tier stored on each user record."""

    FREE = "free"
    PRO = "pro"


# The single paid plan a checkout session may be created for.
PAID_PLAN = Tier.PRO


@dataclass(frozen=True)
class PlanLimits:
    """Numeric limits for a tier.  ``None`` means unlimited."""

    max_stores: int | None
    scans_per_month: int | None


TIER_LIMITS: dict[Tier, PlanLimits] = {
    Tier.FREE: PlanLimits(max_stores=1, scans_per_month=15),
    Tier.PRO: PlanLimits(max_stores=None, scans_per_month=None),
}


def parse_tier(value: str | None) -> Tier:
    """Map a stored tier string to :class:`Tier`, defaulting to free.

    Unknown values are logged because they indicate a row written by
    something other than the entitlement repository.
    """
    if not value:
        return Tier.FREE
    try:
        return Tier(value)
    except ValueError:
        logger.warning("Unknown tier value %r; treating as free", value)
        return Tier.FREE


def get_limits(tier: Tier) -> PlanLimits:
    """Return the :class:`PlanLimits` for *tier*."""
    return TIER_LIMITS[tier]


def is_within_limit(limit: int | None, used: int) -> bool:
    """Return ``True`` if one more unit fits under *limit*."""
    if limit is None:
        return True
    return used < limit
