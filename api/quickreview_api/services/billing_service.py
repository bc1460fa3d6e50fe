"""Checkout, cancellation, refund, and portal flows.

These are the synchronous billing operations a signed-in user triggers.
Tier changes that follow a payment arrive later through
:mod:`quickreview_api.services.webhook_service`; only immediate
cancellation writes the tier here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from urllib.parse import urlsplit

from quickreview_core.entitlements.plans import PAID_PLAN, Tier, parse_tier
from quickreview_core.state.repository import EntitlementRepository
from quickreview_core.state.tables import UserTable
from sqlalchemy.ext.asyncio import AsyncSession

from quickreview_api.config import APISettings
from quickreview_api.services.errors import (
    BusinessRuleError,
    ConfigurationError,
    NotFoundError,
    ProcessorError,
)
from quickreview_api.services.payment_processor import PaymentProcessorClient

logger = logging.getLogger(__name__)

DEFAULT_RETURN_PATH = "/dashboard?upgraded=true"
CANCEL_PATH = "/upgrade?cancelled=true"
PORTAL_RETURN_PATH = "/profile"


# ---------------------------------------------------------------------------
# Refund eligibility
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RefundEligibility:
    """Whether a self-service refund is allowed right now."""

    eligible: bool
    first_time: bool
    deadline: datetime | None
    reason: str | None = None


def evaluate_refund_eligibility(user: UserTable, now: datetime, window: timedelta) -> RefundEligibility:
    """Decide refund eligibility for *user* at *now*.

    Only a first-time subscriber qualifies (``first_subscribed_at`` unset
    or equal to ``subscription_started_at``), and only while strictly less
    than *window* has elapsed since ``subscription_started_at``.
    """
    started = user.subscription_started_at
    first = user.first_subscribed_at
    first_time = first is None or (started is not None and first == started)

    if started is None:
        return RefundEligibility(False, first_time, None, "No subscription start recorded.")
    deadline = started + window
    if not first_time:
        return RefundEligibility(
            False,
            False,
            None,
            f"Refunds are only available within {window.days} days of your first subscription.",
        )
    if now - started >= window:
        return RefundEligibility(
            False,
            True,
            deadline,
            f"Refunds are only available within {window.days} days of your first subscription.",
        )
    return RefundEligibility(True, True, deadline)


def validate_return_path(return_url: str | None) -> str:
    """Return a safe same-origin path for a post-checkout redirect.

    Raises
    ------
    BusinessRuleError
        If *return_url* is not a relative path beginning with a single
        ``/``, or carries a scheme, host, or backslash.
    """
    if return_url is None or return_url == "":
        return DEFAULT_RETURN_PATH
    if (
        not return_url.startswith("/")
        or return_url.startswith("//")
        or "\\" in return_url
        or any(ord(ch) < 0x20 for ch in return_url)
    ):
        raise BusinessRuleError("Invalid return URL")
    parts = urlsplit(return_url)
    if parts.scheme or parts.netloc:
        raise BusinessRuleError("Invalid return URL")
    return return_url


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CancelOutcome:
    cancelled: bool
    cancel_at_period_end: bool
    refunded: bool
    message: str


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class BillingService:
    """Stripe billing operations for a single user.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings containing Stripe configuration.
    processor:
        The application's Stripe client.
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

    @property
    def refund_window(self) -> timedelta:
        return timedelta(days=self._settings.refund_window_days)

    def _url(self, path: str) -> str:
        return self._settings.public_base_url.rstrip("/") + path

    async def _require_user(self, user_id: str) -> UserTable:
        user = await self._entitlements.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    async def create_checkout_session(self, user_id: str, plan: str, return_url: str | None = None) -> str:
        """Create a Checkout session for *plan* and return its URL.

        Parameters
        ----------
        user_id:
            The purchasing user.
        plan:
            Must be ``"pro"``.
        return_url:
            Optional same-origin path to land on after payment.

        Returns
        -------
        str
            The Stripe-hosted checkout URL.
        """
        if plan != PAID_PLAN.value:
            raise BusinessRuleError("Invalid plan")
        price_id = self._settings.stripe_price_id_pro
        if not price_id:
            logger.error("Checkout requested but API_STRIPE_PRICE_ID_PRO is not set")
            raise ConfigurationError("Price not configured")
        success_path = validate_return_path(return_url)

        user = await self._require_user(user_id)
        url = await self._processor.create_checkout_session(
            price_id=price_id,
            success_url=self._url(success_path),
            cancel_url=self._url(CANCEL_PATH),
            client_reference_id=user.id,
            metadata={"user_id": user.id, "plan": plan},
            customer_id=user.stripe_customer_id,
            customer_email=None if user.stripe_customer_id else user.email,
        )
        logger.info("Created checkout session for user %s (plan=%s)", user.id, plan)
        return url

    async def cancel_subscription(
        self,
        user_id: str,
        *,
        immediate: bool = False,
        request_refund: bool = False,
        now: datetime | None = None,
    ) -> CancelOutcome:
        """Cancel the user's subscription, optionally refunding it.

        An ineligible refund request is rejected before any processor call.
        Immediate cancellation downgrades the tier synchronously.  A failed
        refund is reported but never undoes the cancellation.
        """
        now = now or datetime.now(UTC)
        user = await self._require_user(user_id)
        subscription_id = user.stripe_subscription_id
        if not subscription_id:
            return CancelOutcome(False, False, False, "No active subscription found")

        if request_refund:
            eligibility = evaluate_refund_eligibility(user, now, self.refund_window)
            if not eligibility.eligible:
                raise BusinessRuleError("Not eligible for refund", reason=eligibility.reason)

        if not (immediate or request_refund):
            await self._processor.cancel_at_period_end(subscription_id)
            logger.info("Subscription %s for user %s set to cancel at period end", subscription_id, user.id)
            return CancelOutcome(
                False,
                True,
                False,
                "Subscription will be cancelled at the end of the billing period.",
            )

        await self._processor.cancel_subscription(subscription_id)
        await self._entitlements.set_free(user.id)
        logger.info("Subscription %s for user %s cancelled immediately", subscription_id, user.id)

        if not request_refund:
            return CancelOutcome(True, False, False, "Subscription cancelled immediately.")

        try:
            payment = await self._processor.latest_invoice_payment(subscription_id)
            if payment is None:
                logger.warning("No refundable payment found for subscription %s", subscription_id)
                return CancelOutcome(True, False, False, "Subscription cancelled. No payment was found to refund.")
            await self._processor.create_refund(**payment)
        except ProcessorError:
            logger.error(
                "Refund failed for subscription %s (user %s); needs manual review",
                subscription_id,
                user.id,
                exc_info=True,
            )
            return CancelOutcome(True, False, False, "Subscription cancelled. Refund is being processed manually.")

        logger.info("Refunded latest payment of subscription %s for user %s", subscription_id, user.id)
        return CancelOutcome(True, False, True, "Subscription cancelled and refund processed.")

    async def get_subscription_info(self, user_id: str, *, now: datetime | None = None) -> dict[str, Any]:
        """Return the user's subscription summary.

        Live ``status``, ``cancelAtPeriodEnd`` and ``currentPeriodEnd`` come
        from Stripe.  If Stripe is unreachable the local record is returned
        without them.
        """
        now = now or datetime.now(UTC)
        user = await self._require_user(user_id)
        tier = parse_tier(user.tier)

        if tier == Tier.FREE or not user.stripe_subscription_id:
            return {
                "tier": Tier.FREE.value,
                "hasSubscription": False,
                "wasEverSubscribed": user.first_subscribed_at is not None,
                "accountCreatedAt": user.created_at,
            }

        eligibility = evaluate_refund_eligibility(user, now, self.refund_window)
        started = user.subscription_started_at
        info: dict[str, Any] = {
            "tier": tier.value,
            "hasSubscription": True,
            "wasEverSubscribed": True,
            "subscriptionStartedAt": started,
            "firstSubscribedAt": user.first_subscribed_at,
            "memberSinceDays": (now - started).days if started else 0,
            "eligibleForRefund": eligibility.eligible,
            "refundDeadline": eligibility.deadline if eligibility.eligible else None,
            "cancelAtPeriodEnd": False,
            "currentPeriodEnd": None,
            "status": None,
            "accountCreatedAt": user.created_at,
        }

        try:
            subscription = await self._processor.retrieve_subscription(user.stripe_subscription_id)
        except ProcessorError:
            logger.warning(
                "Failed to fetch Stripe subscription %s; returning local data",
                user.stripe_subscription_id,
            )
            return info

        info["status"] = subscription.get("status")
        info["cancelAtPeriodEnd"] = bool(subscription.get("cancel_at_period_end", False))
        period_end = subscription.get("current_period_end")
        if period_end:
            info["currentPeriodEnd"] = datetime.fromtimestamp(int(period_end), tz=UTC)
        return info

    async def create_portal_session(self, user_id: str) -> str:
        """Create a Stripe customer-portal session returning to the profile page."""
        user = await self._require_user(user_id)
        if not user.stripe_customer_id:
            raise BusinessRuleError("No billing account")
        return await self._processor.create_portal_session(user.stripe_customer_id, self._url(PORTAL_RETURN_PATH))
