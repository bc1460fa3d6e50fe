"""Store management for the signed-in owner."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from pydantic import BaseModel, ConfigDict, Field
from quickreview_core.state.tables import LandingPageTable, StoreTable

from quickreview_api.dependencies import CounterStoreDep, CurrentUserDep, SessionDep
from quickreview_api.services.usage_service import UsageService, review_links

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/stores", tags=["stores"])


class CreateStoreRequest(BaseModel):
    """Request body for ``POST /stores``."""

    model_config = ConfigDict(populate_by_name=True)

    name: str = Field(..., min_length=1, max_length=200)
    google_place_id: str | None = Field(None, alias="googlePlaceId", max_length=255)
    yelp_business_id: str | None = Field(None, alias="yelpBusinessId", max_length=255)


def _store_payload(store: StoreTable, landing: LandingPageTable) -> dict[str, Any]:
    return {
        "id": store.id,
        "name": store.name,
        "googlePlaceId": store.google_place_id,
        "yelpBusinessId": store.yelp_business_id,
        "landingPageId": landing.id,
        "viewCount": landing.view_count,
        "copyCount": landing.copy_count,
        "createdAt": store.created_at,
        **review_links(store),
    }


@router.get("")
async def list_stores(user: CurrentUserDep, session: SessionDep, counter_store: CounterStoreDep) -> dict[str, Any]:
    """List the caller's stores with their landing pages."""
    pairs = await UsageService(session, counter_store).list_stores(user)
    return {"stores": [_store_payload(store, landing) for store, landing in pairs]}


@router.post("", status_code=201)
async def create_store(
    body: CreateStoreRequest,
    user: CurrentUserDep,
    session: SessionDep,
    counter_store: CounterStoreDep,
) -> dict[str, Any]:
    """Create a store and its landing page within the tier's store limit."""
    store, landing = await UsageService(session, counter_store).create_store(
        user,
        body.name.strip(),
        google_place_id=body.google_place_id or None,
        yelp_business_id=body.yelp_business_id or None,
    )
    return _store_payload(store, landing)


@router.delete("/{store_id}")
async def delete_store(
    store_id: str,
    user: CurrentUserDep,
    session: SessionDep,
    counter_store: CounterStoreDep,
) -> dict[str, Any]:
    """Delete a store, keeping its period usage on the owner's ledger."""
    scans, copies = await UsageService(session, counter_store).delete_store(user, store_id)
    return {"deleted": True, "carriedScans": scans, "carriedCopies": copies}
