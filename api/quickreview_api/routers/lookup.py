"""Public business lookup returning review URLs."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from quickreview_api.dependencies import LimitersDep, YelpClientDep
from quickreview_api.middleware.rate_limit import rate_limited
from quickreview_api.services.business_lookup import BusinessLookupService

router = APIRouter(tags=["lookup"])


@router.get(
    "/lookup-business",
    dependencies=[Depends(rate_limited("lookup", "Too many lookups. Please try again later."))],
)
async def lookup_business(
    yelp: YelpClientDep,
    limiters: LimitersDep,
    name: str = Query(..., min_length=1, max_length=200),
    address: str | None = Query(None, max_length=300),
) -> dict[str, str]:
    """Return the Google search URL and, budget permitting, the Yelp review URL."""
    return await BusinessLookupService(yelp, limiters.yelp_budget).lookup(name, address)
