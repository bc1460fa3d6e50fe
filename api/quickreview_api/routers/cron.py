"""Scheduled maintenance endpoints, gated by the cron secret."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter
from quickreview_core.metering.usage_period import sync_pending_views

from quickreview_api.dependencies import CounterStoreDep, CronAuthDep, ProcessorDep, SessionDep, SettingsDep
from quickreview_api.services.account_service import AccountService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/cron", tags=["cron"])


@router.post("/sync-views")
async def sync_views(_auth: CronAuthDep, session: SessionDep, counter_store: CounterStoreDep) -> dict[str, Any]:
    """Fold pending scan counts from the counter store into the database."""
    report = await sync_pending_views(session, counter_store)
    return {
        "success": True,
        "landingPages": report.landing_pages,
        "syncedViews": report.synced_views,
        "errors": report.errors,
    }


@router.post("/cleanup")
async def cleanup(
    _auth: CronAuthDep,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
    counter_store: CounterStoreDep,
) -> dict[str, Any]:
    """Purge accounts whose deletion grace period has elapsed."""
    report = await AccountService(session, settings, processor, counter_store).cleanup_expired()
    return {"success": True, "purged": len(report.purged)}
