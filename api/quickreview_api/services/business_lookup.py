"""Budget-capped business lookup for review links.

The Google Maps search URL needs no API call and is always returned.
The Yelp review URL costs one Yelp Fusion request, so it is only
attempted while the global daily budget allows.  Every Yelp failure
degrades to omitting the link.
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from quickreview_core.metering.rate_limiter import FixedWindowRateLimiter

logger = logging.getLogger(__name__)

GOOGLE_SEARCH_URL = "https://www.google.com/maps/search/{query}"
YELP_REVIEW_URL = "https://www.yelp.com/writeareview/biz/{business_id}"
YELP_BUDGET_ACTOR = "yelp"


class YelpClient:
    """Thin async wrapper around the Yelp Fusion business search.

    Every public method returns ``None`` on failure so callers can degrade
    gracefully.  Errors are logged but never propagated.

    Parameters
    ----------
    api_key:
        Yelp Fusion API key.  When empty, lookups are skipped.
    base_url:
        Root URL of the Yelp API.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(self, api_key: str, base_url: str = "https://api.yelp.com/v3", timeout: float = 5.0) -> None:
        self.enabled = bool(api_key)
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            timeout=httpx.Timeout(timeout),
            headers=headers,
        )

    async def search_business_id(self, name: str, location: str) -> str | None:
        """Return the id of the best match for *name* near *location*."""
        try:
            resp = await self._client.get(
                "/businesses/search",
                params={"term": name, "location": location, "limit": 1},
            )
            resp.raise_for_status()
            businesses: list[dict[str, Any]] = resp.json().get("businesses") or []
        except httpx.HTTPError as exc:
            logger.warning("Yelp business search failed: %s", exc)
            return None
        except ValueError:
            logger.warning("Yelp business search returned invalid JSON")
            return None
        if not businesses:
            return None
        return businesses[0].get("id")

    async def close(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._client.aclose()


class BusinessLookupService:
    """Build review links for a business name and address.

    Parameters
    ----------
    yelp:
        Yelp client.
    budget:
        Global daily Yelp budget limiter (fail-open).
    """

    def __init__(self, yelp: YelpClient, budget: FixedWindowRateLimiter) -> None:
        self._yelp = yelp
        self._budget = budget

    async def lookup(self, name: str, address: str | None = None) -> dict[str, str]:
        """Return ``googleUrl`` and, when available, ``yelpUrl``."""
        name = name.strip()
        address = (address or "").strip()
        query = f"{name} {address}" if address else name
        results = {"googleUrl": GOOGLE_SEARCH_URL.format(query=quote(query, safe=""))}

        if not self._yelp.enabled:
            return results

        decision = await self._budget.hit(YELP_BUDGET_ACTOR)
        if not decision.allowed:
            logger.info("Skipping Yelp lookup: daily budget exhausted")
            return results

        business_id = await self._yelp.search_business_id(name, address or "United States")
        if business_id:
            results["yelpUrl"] = YELP_REVIEW_URL.format(business_id=quote(business_id, safe=""))
        return results
