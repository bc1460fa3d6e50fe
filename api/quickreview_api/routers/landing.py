"""Public landing pages and the owner's usage summary.

``/r/{landing_id}`` endpoints are reached by customers scanning a store's
QR code and need no session token.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter

from quickreview_api.dependencies import CounterStoreDep, CurrentUserDep, SessionDep
from quickreview_api.services.usage_service import UsageService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["landing"])


@router.get("/r/{landing_id}")
async def scan_landing_page(landing_id: str, session: SessionDep, counter_store: CounterStoreDep) -> dict[str, Any]:
    """Serve a landing page, charging one scan to the owner's monthly quota."""
    view = await UsageService(session, counter_store).record_scan(landing_id)
    return {
        "landingPageId": view.landing_id,
        "businessName": view.store_name,
        "googleUrl": view.google_url,
        "yelpUrl": view.yelp_url,
    }


@router.post("/r/{landing_id}/copy")
async def copy_review(landing_id: str, session: SessionDep, counter_store: CounterStoreDep) -> dict[str, bool]:
    """Count a review copied from a landing page."""
    await UsageService(session, counter_store).record_copy(landing_id)
    return {"success": True}


@router.get("/usage")
async def usage(user: CurrentUserDep, session: SessionDep, counter_store: CounterStoreDep) -> dict[str, Any]:
    """Return the caller's current billing period and usage against limits."""
    return await UsageService(session, counter_store).usage_summary(user)
