"""Stores, public landing-page scans, and usage against tier quotas."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any
from urllib.parse import quote

from quickreview_core.entitlements.lifecycle import AccountState
from quickreview_core.entitlements.plans import get_limits, is_within_limit, parse_tier
from quickreview_core.metering.counter_store import CounterStore
from quickreview_core.metering.usage_period import UsagePeriodTracker
from quickreview_core.state.repository import AccountRepository, LandingPageRepository, StoreRepository
from quickreview_core.state.tables import LandingPageTable, StoreTable, UserTable
from sqlalchemy.ext.asyncio import AsyncSession

from quickreview_api.services.errors import AuthorizationError, NotFoundError, QuotaExceededError

logger = logging.getLogger(__name__)

GOOGLE_REVIEW_URL = "https://search.google.com/local/writereview?placeid={place_id}"
YELP_REVIEW_URL = "https://www.yelp.com/writeareview/biz/{business_id}"


def review_links(store: StoreTable) -> dict[str, str | None]:
    """Build the review links shown on a store's landing page."""
    return {
        "googleUrl": GOOGLE_REVIEW_URL.format(place_id=quote(store.google_place_id, safe=""))
        if store.google_place_id
        else None,
        "yelpUrl": YELP_REVIEW_URL.format(business_id=quote(store.yelp_business_id, safe=""))
        if store.yelp_business_id
        else None,
    }


@dataclass(frozen=True)
class LandingView:
    landing_id: str
    store_name: str
    google_url: str | None
    yelp_url: str | None


class UsageService:
    """Metered store and landing-page operations.

    Parameters
    ----------
    session:
        Active database session.
    counter_store:
        Store receiving pending scan counts.
    """

    def __init__(self, session: AsyncSession, counter_store: CounterStore) -> None:
        self._session = session
        self._tracker = UsagePeriodTracker(session, counter_store)
        self._accounts = AccountRepository(session)
        self._stores = StoreRepository(session)
        self._landing = LandingPageRepository(session)

    # -- Stores --------------------------------------------------------------

    async def list_stores(self, user: UserTable) -> list[tuple[StoreTable, LandingPageTable]]:
        return await self._stores.list_for_user(user.id)

    async def create_store(
        self,
        user: UserTable,
        name: str,
        *,
        google_place_id: str | None = None,
        yelp_business_id: str | None = None,
    ) -> tuple[StoreTable, LandingPageTable]:
        """Create a store and its landing page within the tier's store limit."""
        limits = get_limits(parse_tier(user.tier))
        count = await self._stores.count_for_user(user.id)
        if not is_within_limit(limits.max_stores, count):
            raise QuotaExceededError(
                f"Your plan allows {limits.max_stores} store(s). Upgrade to Pro for unlimited stores.",
            )
        store, landing = await self._stores.create(
            user.id,
            name,
            google_place_id=google_place_id,
            yelp_business_id=yelp_business_id,
        )
        logger.info("Created store %s for user %s", store.id, user.id)
        return store, landing

    async def delete_store(self, user: UserTable, store_id: str, *, now: datetime | None = None) -> tuple[int, int]:
        """Delete one of the user's stores, keeping its usage in the ledger."""
        store = await self._stores.get(store_id)
        if store is None:
            raise NotFoundError("Store not found")
        if store.user_id != user.id:
            raise AuthorizationError("Not the owner of this store")
        return await self._tracker.retire_store(user, store_id, now=now)

    # -- Usage ---------------------------------------------------------------

    async def usage_summary(self, user: UserTable, *, now: datetime | None = None) -> dict[str, Any]:
        """Return current-period usage against the tier's limits."""
        usage = await self._tracker.current_usage(user, now=now)
        limits = get_limits(parse_tier(user.tier))
        return {
            "tier": parse_tier(user.tier).value,
            "periodStart": usage.period_start,
            "periodEnd": usage.period_end,
            "scans": usage.scans,
            "scanLimit": limits.scans_per_month,
            "copies": usage.copies,
            "stores": await self._stores.count_for_user(user.id),
            "storeLimit": limits.max_stores,
        }

    # -- Public landing pages ------------------------------------------------

    async def _landing_owner(self, landing_id: str) -> tuple[LandingPageTable, StoreTable, UserTable]:
        pair = await self._landing.get_with_store(landing_id)
        if pair is None:
            raise NotFoundError("Landing page not found")
        landing, store = pair
        owner = await self._accounts.get(store.user_id)
        if owner is None or owner.account_state != AccountState.ACTIVE.value:
            raise NotFoundError("Landing page not found")
        return landing, store, owner

    async def record_scan(self, landing_id: str, *, now: datetime | None = None) -> LandingView:
        """Serve a public scan, counting it against the owner's monthly quota.

        The owner's period is rolled over first if it has elapsed, so the
        quota comparison always uses the current period.

        Raises
        ------
        QuotaExceededError
            When the owner's tier has no scans left this period.
        """
        landing, store, owner = await self._landing_owner(landing_id)
        usage = await self._tracker.current_usage(owner, now=now)
        limit = get_limits(parse_tier(owner.tier)).scans_per_month
        if not is_within_limit(limit, usage.scans):
            logger.info("Scan of %s refused: owner %s used %d/%s scans", landing_id, owner.id, usage.scans, limit)
            raise QuotaExceededError("monthly scan limit reached")

        await self._tracker.record_scan(landing.id)
        links = review_links(store)
        return LandingView(
            landing_id=landing.id,
            store_name=store.name,
            google_url=links["googleUrl"],
            yelp_url=links["yelpUrl"],
        )

    async def record_copy(self, landing_id: str, *, now: datetime | None = None) -> None:
        """Count a review copy on a public landing page."""
        landing, _, owner = await self._landing_owner(landing_id)
        await self._tracker.current_usage(owner, now=now)
        await self._tracker.record_copy(landing.id)
