"""Operator endpoints: subscription reconciliation and entitlement audits."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from quickreview_api.dependencies import OperatorDep, ProcessorDep, SessionDep
from quickreview_api.services.reconciliation_service import ReconciliationService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class SyncSubscriptionRequest(BaseModel):
    """Request body for ``POST /admin/sync-subscription``."""

    email: str = Field(..., min_length=3, description="E-mail of the account to reconcile.")


@router.post("/sync-subscription")
async def sync_subscription(
    body: SyncSubscriptionRequest,
    operator: OperatorDep,
    session: SessionDep,
    processor: ProcessorDep,
) -> dict[str, Any]:
    """Overwrite the account's tier with what Stripe currently reports."""
    logger.info("Operator %s reconciling subscription for %s", operator, body.email)
    report = await ReconciliationService(session, processor).sync_subscription(body.email)
    return report.to_dict()


@router.get("/entitlements/integrity")
async def entitlement_integrity(
    operator: OperatorDep,
    session: SessionDep,
    processor: ProcessorDep,
    limit: int = Query(100, ge=1, le=1000),
) -> dict[str, Any]:
    """List pro accounts that carry no subscription id."""
    violations = await ReconciliationService(session, processor).integrity_report(limit=limit)
    return {"count": len(violations), "violations": violations}
