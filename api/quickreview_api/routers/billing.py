"""Billing endpoints: Stripe webhooks, checkout, cancellation, status, portal."""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Request
from pydantic import BaseModel, ConfigDict, Field

from quickreview_api.dependencies import CurrentUserDep, ProcessorDep, SessionDep, SettingsDep
from quickreview_api.services.billing_service import BillingService
from quickreview_api.services.webhook_service import WebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


# ---------------------------------------------------------------------------
# Request / response schemas
# ---------------------------------------------------------------------------


class CheckoutRequest(BaseModel):
    """Request body for ``POST /billing/checkout``."""

    model_config = ConfigDict(populate_by_name=True)

    plan: str = Field(..., description="Plan to purchase. Only ``pro`` is sold.")
    return_url: str | None = Field(
        None,
        alias="returnUrl",
        description="Same-origin path to land on after a successful checkout.",
    )


class CheckoutResponse(BaseModel):
    url: str


class CancelRequest(BaseModel):
    """Request body for ``POST /billing/cancel``."""

    model_config = ConfigDict(populate_by_name=True)

    immediate: bool = False
    request_refund: bool = Field(False, alias="requestRefund")


class PortalResponse(BaseModel):
    url: str


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@router.post("/webhooks")
async def stripe_webhook(
    request: Request,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
) -> dict[str, str]:
    """Handle incoming Stripe webhook events.

    The signature is verified over the raw body.  This endpoint bypasses
    token authentication.  Entitlement write failures propagate as 500 so
    Stripe retries the delivery.
    """
    body = await request.body()
    event = processor.construct_event(body, request.headers.get("stripe-signature", ""))
    service = WebhookService(session, settings, processor)
    return await service.handle_event(event)


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout_session(
    body: CheckoutRequest,
    user: CurrentUserDep,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
) -> dict[str, str]:
    """Create a Stripe Checkout session and return its redirect URL."""
    service = BillingService(session, settings, processor)
    url = await service.create_checkout_session(user.id, body.plan, body.return_url)
    return {"url": url}


@router.post("/cancel")
async def cancel_subscription(
    body: CancelRequest,
    user: CurrentUserDep,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
) -> dict[str, Any]:
    """Cancel the caller's subscription at period end, immediately, or with a refund."""
    service = BillingService(session, settings, processor)
    outcome = await service.cancel_subscription(
        user.id,
        immediate=body.immediate,
        request_refund=body.request_refund,
    )
    return {
        "cancelled": outcome.cancelled,
        "cancelAtPeriodEnd": outcome.cancel_at_period_end,
        "refunded": outcome.refunded,
        "message": outcome.message,
    }


@router.get("/subscription")
async def get_subscription(
    user: CurrentUserDep,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
) -> dict[str, Any]:
    """Return the caller's tier, refund eligibility and live Stripe status."""
    service = BillingService(session, settings, processor)
    return await service.get_subscription_info(user.id)


@router.post("/portal", response_model=PortalResponse)
async def create_portal_session(
    user: CurrentUserDep,
    session: SessionDep,
    settings: SettingsDep,
    processor: ProcessorDep,
) -> dict[str, str]:
    """Create a Stripe Customer Portal session for subscription management."""
    service = BillingService(session, settings, processor)
    return {"url": await service.create_portal_session(user.id)}
