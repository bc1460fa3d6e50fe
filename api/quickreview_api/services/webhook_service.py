"""Stripe webhook event processing.

Maps subscription lifecycle events onto the entitlement store:

* ``checkout.session.completed`` -- grant pro for the purchased subscription.
* ``customer.subscription.updated`` -- re-grant pro while the status is
  ``active``; other statuses are ignored.
* ``customer.subscription.deleted`` -- downgrade to free.

Every transition is idempotent: the subscription start written by
``set_pro`` comes from the processor's subscription object, so a
redelivered event writes exactly the same row.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from quickreview_core.entitlements.plans import Tier
from quickreview_core.state.repository import EntitlementRepository
from quickreview_core.state.tables import UserTable
from sqlalchemy.ext.asyncio import AsyncSession

from quickreview_api.config import APISettings
from quickreview_api.services.payment_processor import PaymentProcessorClient

logger = logging.getLogger(__name__)


def _timestamp(value: Any) -> datetime | None:
    if value in (None, ""):
        return None
    return datetime.fromtimestamp(int(value), tz=UTC)


def subscription_start(subscription: Any, event: dict[str, Any] | None = None) -> datetime:
    """Return the start of *subscription* as recorded by the processor.

    Falls back to the subscription's ``created`` time, then the event's,
    and only then to the current time.
    """
    for candidate in (subscription.get("start_date"), subscription.get("created")):
        start = _timestamp(candidate)
        if start is not None:
            return start
    if event is not None:
        start = _timestamp(event.get("created"))
        if start is not None:
            return start
    return datetime.now(UTC)


def subscription_price_id(subscription: Any) -> str | None:
    """Return the price id of the subscription's first item."""
    items = (subscription.get("items") or {}).get("data") or []
    if not items:
        return None
    price = items[0].get("price") or {}
    return price.get("id")


class WebhookService:
    """Apply verified Stripe events to the entitlement store.

    Parameters
    ----------
    session:
        Active database session.  The service flushes; the request
        dependency commits.
    settings:
        API settings (price ids, stale-event policy).
    processor:
        Stripe client used to fetch the purchased subscription.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        processor: PaymentProcessorClient,
    ) -> None:
        self._session = session
        self._settings = settings
        self._processor = processor
        self._entitlements = EntitlementRepository(session)

    def resolve_tier(self, subscription: Any) -> Tier:
        """Map the subscription's price to a tier.

        There is a single paid tier, so an unrecognised price still grants
        pro.  It is logged because it usually means a price was added in
        Stripe without updating ``API_STRIPE_PRICE_ID_PRO``.
        """
        price_id = subscription_price_id(subscription)
        if price_id != self._settings.stripe_price_id_pro:
            logger.warning(
                "Subscription %s has unrecognised price %s; granting %s",
                subscription.get("id"),
                price_id,
                Tier.PRO.value,
            )
        return Tier.PRO

    async def handle_event(self, event: dict[str, Any]) -> dict[str, str]:
        """Dispatch *event* and return a status payload for the response body.

        Returns
        -------
        dict
            ``{"status": "processed", ...}`` or ``{"status": "ignored",
            "reason": ...}``.
        """
        event_type = event.get("type", "")
        data_object = (event.get("data") or {}).get("object") or {}

        handlers = {
            "checkout.session.completed": self._handle_checkout_completed,
            "customer.subscription.updated": self._handle_subscription_updated,
            "customer.subscription.deleted": self._handle_subscription_deleted,
        }
        handler = handlers.get(event_type)
        if handler is None:
            logger.info("Ignoring unhandled Stripe event type %s", event_type)
            return {"status": "ignored", "reason": "unhandled_event_type"}

        result = await handler(event, data_object)
        logger.info(
            "Stripe event %s (%s): %s",
            event.get("id"),
            event_type,
            result.get("reason", result["status"]),
        )
        return result

    # -- Handlers ------------------------------------------------------------

    async def _handle_checkout_completed(self, event: dict[str, Any], session_obj: dict[str, Any]) -> dict[str, str]:
        subscription_id = session_obj.get("subscription")
        if isinstance(subscription_id, dict):
            subscription_id = subscription_id.get("id")
        if not subscription_id:
            return {"status": "ignored", "reason": "no_subscription"}

        user = await self._resolve_checkout_user(session_obj)
        if user is None:
            logger.warning(
                "checkout.session.completed %s has no matching user (customer=%s)",
                session_obj.get("id"),
                session_obj.get("customer"),
            )
            return {"status": "ignored", "reason": "unknown_user"}

        if await self._is_stale(user, event):
            return {"status": "ignored", "reason": "stale_event"}

        subscription = await self._processor.retrieve_subscription(subscription_id)
        self.resolve_tier(subscription)
        await self._entitlements.set_pro(
            user.id,
            session_obj.get("customer") or subscription.get("customer"),
            subscription_id,
            subscription_start(subscription, event),
        )
        return {"status": "processed", "event_type": event["type"]}

    async def _handle_subscription_updated(self, event: dict[str, Any], subscription: dict[str, Any]) -> dict[str, str]:
        status = subscription.get("status")
        if status != "active":
            return {"status": "ignored", "reason": f"subscription_status_{status}"}

        user = await self._resolve_subscription_user(subscription)
        if user is None:
            return {"status": "ignored", "reason": "unknown_user"}
        if await self._is_stale(user, event):
            return {"status": "ignored", "reason": "stale_event"}

        self.resolve_tier(subscription)
        await self._entitlements.set_pro(
            user.id,
            subscription.get("customer"),
            subscription["id"],
            subscription_start(subscription, event),
        )
        return {"status": "processed", "event_type": event["type"]}

    async def _handle_subscription_deleted(self, event: dict[str, Any], subscription: dict[str, Any]) -> dict[str, str]:
        user = await self._resolve_subscription_user(subscription)
        if user is None:
            return {"status": "ignored", "reason": "unknown_user"}
        if await self._is_stale(user, event):
            return {"status": "ignored", "reason": "stale_event"}

        await self._entitlements.set_free(user.id)
        return {"status": "processed", "event_type": event["type"]}

    # -- Helpers -------------------------------------------------------------

    async def _resolve_checkout_user(self, session_obj: dict[str, Any]) -> UserTable | None:
        metadata = session_obj.get("metadata") or {}
        for user_id in (metadata.get("user_id"), session_obj.get("client_reference_id")):
            if user_id:
                user = await self._entitlements.get(user_id)
                if user is not None:
                    return user

        customer_id = session_obj.get("customer")
        if customer_id:
            user = await self._entitlements.get_by_customer_id(customer_id)
            if user is not None:
                return user

        email = session_obj.get("customer_email") or (session_obj.get("customer_details") or {}).get("email")
        if email:
            return await self._entitlements.get_by_email(email)
        return None

    async def _resolve_subscription_user(self, subscription: dict[str, Any]) -> UserTable | None:
        customer_id = subscription.get("customer")
        if customer_id:
            user = await self._entitlements.get_by_customer_id(customer_id)
            if user is not None:
                return user
        user_id = (subscription.get("metadata") or {}).get("user_id")
        if user_id:
            return await self._entitlements.get(user_id)
        return None

    async def _is_stale(self, user: UserTable, event: dict[str, Any]) -> bool:
        """Record the event time and report whether the event should be skipped.

        Events are only skipped when ``webhook_reject_stale_events`` is on;
        otherwise delivery order is accepted as-is.
        """
        event_at = _timestamp(event.get("created"))
        if event_at is None:
            return False
        fresh = await self._entitlements.record_processor_event(user.id, event_at)
        if fresh:
            return False
        if self._settings.webhook_reject_stale_events:
            logger.warning(
                "Skipping stale Stripe event %s for user %s (created %s)",
                event.get("id"),
                user.id,
                event_at.isoformat(),
            )
            return True
        logger.info("Applying out-of-order Stripe event %s for user %s", event.get("id"), user.id)
        return False
