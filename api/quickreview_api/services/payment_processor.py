"""Explicitly constructed Stripe client.

One :class:`PaymentProcessorClient` is created in the application lifespan
and handed to services through FastAPI dependencies.  The secret key is
passed on every call, so the ``stripe`` module's global ``api_key`` is
never set.  The Stripe SDK is synchronous; calls run in a worker thread.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import Callable
from typing import Any

import stripe
from pydantic import SecretStr

from quickreview_api.services.errors import ConfigurationError, ProcessorError, VerificationError

logger = logging.getLogger(__name__)


class PaymentProcessorClient:
    """Thin async wrapper over the Stripe calls the billing flows need.

    Parameters
    ----------
    secret_key:
        Stripe secret API key.
    webhook_secret:
        Signing secret of the webhook endpoint.
    api_version:
        Stripe API version pinned on every request.
    webhook_tolerance:
        Maximum age in seconds of a webhook signature timestamp.
    """

    def __init__(
        self,
        secret_key: SecretStr,
        webhook_secret: SecretStr,
        *,
        api_version: str | None = None,
        webhook_tolerance: int = 300,
    ) -> None:
        self._secret_key = secret_key
        self._webhook_secret = webhook_secret
        self._api_version = api_version
        self._webhook_tolerance = webhook_tolerance

    # -- Webhooks ------------------------------------------------------------

    def construct_event(self, payload: bytes, sig_header: str) -> dict[str, Any]:
        """Verify a webhook delivery and return the decoded event.

        Raises
        ------
        ConfigurationError
            If no webhook secret is configured.
        VerificationError
            If the signature header is missing or does not match, or the
            payload is not JSON.
        """
        secret = self._webhook_secret.get_secret_value()
        if not secret:
            logger.critical("Stripe webhook secret is not configured; rejecting delivery")
            raise ConfigurationError("Webhook endpoint not configured")
        if not sig_header:
            raise VerificationError("Missing stripe-signature header")

        try:
            body = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise VerificationError("Invalid payload") from exc

        try:
            stripe.WebhookSignature.verify_header(body, sig_header, secret, self._webhook_tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise VerificationError("Signature verification failed") from exc

        try:
            event = json.loads(body)
        except ValueError as exc:
            raise VerificationError("Invalid payload") from exc
        if not isinstance(event, dict):
            raise VerificationError("Invalid payload")
        return event

    # -- API calls -----------------------------------------------------------

    async def _call(self, operation: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        key = self._secret_key.get_secret_value()
        if not key:
            raise ConfigurationError("Stripe is not configured")
        kwargs["api_key"] = key
        if self._api_version:
            kwargs["stripe_version"] = self._api_version
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as exc:
            logger.error("Stripe %s failed: %s", operation, exc)
            raise ProcessorError(f"Payment processor request failed ({operation})") from exc

    async def retrieve_subscription(self, subscription_id: str) -> Any:
        """Fetch a subscription object."""
        return await self._call("subscription.retrieve", stripe.Subscription.retrieve, subscription_id)

    async def create_checkout_session(
        self,
        *,
        price_id: str,
        success_url: str,
        cancel_url: str,
        client_reference_id: str,
        metadata: dict[str, str],
        customer_id: str | None = None,
        customer_email: str | None = None,
    ) -> str:
        """Create a subscription-mode Checkout session and return its URL.

        An existing *customer_id* is reused; otherwise Stripe creates the
        customer inline, pre-filled with *customer_email*.
        """
        params: dict[str, Any] = {
            "mode": "subscription",
            "line_items": [{"price": price_id, "quantity": 1}],
            "success_url": success_url,
            "cancel_url": cancel_url,
            "client_reference_id": client_reference_id,
            "metadata": metadata,
            "subscription_data": {"metadata": metadata},
        }
        if customer_id:
            params["customer"] = customer_id
        elif customer_email:
            params["customer_email"] = customer_email

        session = await self._call("checkout.create", stripe.checkout.Session.create, **params)
        return session["url"]

    async def cancel_subscription(self, subscription_id: str) -> Any:
        """Cancel a subscription immediately."""
        return await self._call("subscription.cancel", stripe.Subscription.cancel, subscription_id)

    async def cancel_at_period_end(self, subscription_id: str) -> Any:
        """Schedule a subscription to end with its current period."""
        return await self._call(
            "subscription.modify",
            stripe.Subscription.modify,
            subscription_id,
            cancel_at_period_end=True,
        )

    async def latest_invoice_payment(self, subscription_id: str) -> dict[str, str] | None:
        """Return the refundable payment of the subscription's latest invoice.

        Returns
        -------
        dict | None
            ``{"payment_intent": id}`` or ``{"charge": id}``, suitable as
            keyword arguments to :meth:`create_refund`, or ``None`` when
            there is nothing to refund.
        """
        invoices = await self._call(
            "invoice.list",
            stripe.Invoice.list,
            subscription=subscription_id,
            limit=1,
        )
        data = invoices["data"]
        if not data:
            return None
        invoice = data[0]
        for field in ("payment_intent", "charge"):
            value = invoice.get(field)
            if isinstance(value, dict):
                value = value.get("id")
            if value:
                return {field: value}
        return None

    async def create_refund(self, *, payment_intent: str | None = None, charge: str | None = None) -> Any:
        """Refund a payment in full."""
        params = {"payment_intent": payment_intent} if payment_intent else {"charge": charge}
        return await self._call("refund.create", stripe.Refund.create, **params)

    async def find_customer_by_email(self, email: str) -> str | None:
        """Return the id of the first customer with *email*, if any."""
        customers = await self._call("customer.list", stripe.Customer.list, email=email, limit=1)
        data = customers["data"]
        return data[0]["id"] if data else None

    async def find_active_subscription(self, customer_id: str) -> Any | None:
        """Return one active subscription of *customer_id*, if any."""
        subscriptions = await self._call(
            "subscription.list",
            stripe.Subscription.list,
            customer=customer_id,
            status="active",
            limit=1,
        )
        data = subscriptions["data"]
        return data[0] if data else None

    async def create_portal_session(self, customer_id: str, return_url: str) -> str:
        """Create a customer-portal session and return its URL."""
        session = await self._call(
            "billing_portal.create",
            stripe.billing_portal.Session.create,
            customer=customer_id,
            return_url=return_url,
        )
        return session["url"]
