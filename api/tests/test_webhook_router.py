"""Tests for POST /billing/webhooks

Covers:
- checkout.session.completed: grants pro with the processor's start time
- Duplicate delivery leaves identical state
- customer.subscription.updated: active re-grants, other statuses ignored
- customer.subscription.deleted: downgrades and clears the subscription id
- Unknown users and unhandled types: 200 ignored
- Signature verification: missing/invalid 400, unconfigured secret 500
- Optional stale-event guard
"""

from __future__ import annotations

import time
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest
from pydantic import SecretStr
from quickreview_core.state.repository import AccountRepository

from quickreview_api.dependencies import get_payment_processor, get_settings
from quickreview_api.services.payment_processor import PaymentProcessorClient

T0 = datetime(2026, 3, 10, 9, 30, tzinfo=UTC)


def _event(event_type: str, data_object: dict[str, Any], *, created: int | None = None) -> dict[str, Any]:
    return {
        "id": f"evt_{event_type.replace('.', '_')}",
        "object": "event",
        "type": event_type,
        "created": created if created is not None else int(time.time()),
        "data": {"object": data_object},
    }


def _subscription(
    sub_id: str = "sub_1",
    *,
    customer: str = "cus_1",
    status: str = "active",
    start: datetime = T0,
    user_id: str | None = None,
) -> dict[str, Any]:
    return {
        "id": sub_id,
        "object": "subscription",
        "customer": customer,
        "status": status,
        "start_date": int(start.timestamp()),
        "created": int(start.timestamp()),
        "metadata": {"user_id": user_id} if user_id else {},
        "items": {"data": [{"price": {"id": "price_pro"}}]},
    }


def _checkout(user_id: str, *, sub_id: str = "sub_1", customer: str = "cus_1") -> dict[str, Any]:
    return {
        "id": "cs_test_1",
        "object": "checkout.session",
        "subscription": sub_id,
        "customer": customer,
        "client_reference_id": user_id,
        "metadata": {"user_id": user_id, "plan": "pro"},
    }


async def _load(session_factory, user_id: str):
    async with session_factory() as session:
        return await AccountRepository(session).get(user_id)


# ---------------------------------------------------------------------------
# Event handling
# ---------------------------------------------------------------------------


class TestCheckoutCompleted:
    @pytest.mark.asyncio
    async def test_grants_pro_with_processor_start(self, make_user, post_webhook, processor, session_factory) -> None:
        user = await make_user()
        processor.retrieve_subscription.return_value = _subscription(user_id=user.id)

        resp = await post_webhook(_event("checkout.session.completed", _checkout(user.id)))

        assert resp.status_code == 200
        assert resp.json() == {"status": "processed", "event_type": "checkout.session.completed"}
        processor.retrieve_subscription.assert_awaited_once_with("sub_1")

        row = await _load(session_factory, user.id)
        assert row.tier == "pro"
        assert row.stripe_customer_id == "cus_1"
        assert row.stripe_subscription_id == "sub_1"
        assert row.subscription_started_at == T0
        assert row.first_subscribed_at == T0

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_idempotent(self, make_user, post_webhook, processor, session_factory) -> None:
        user = await make_user()
        processor.retrieve_subscription.return_value = _subscription(user_id=user.id)
        event = _event("checkout.session.completed", _checkout(user.id))

        first = await post_webhook(event)
        after_first = await _load(session_factory, user.id)
        second = await post_webhook(event)
        after_second = await _load(session_factory, user.id)

        assert first.status_code == second.status_code == 200
        for column in (
            "tier",
            "stripe_customer_id",
            "stripe_subscription_id",
            "subscription_started_at",
            "first_subscribed_at",
        ):
            assert getattr(after_first, column) == getattr(after_second, column)

    @pytest.mark.asyncio
    async def test_resolves_user_by_email_when_no_reference(
        self, make_user, post_webhook, processor, session_factory
    ) -> None:
        user = await make_user("Buyer@Example.com")
        processor.retrieve_subscription.return_value = _subscription()
        session_obj = {
            "id": "cs_test_2",
            "subscription": "sub_1",
            "customer": "cus_1",
            "customer_details": {"email": "buyer@example.com"},
        }

        resp = await post_webhook(_event("checkout.session.completed", session_obj))

        assert resp.json()["status"] == "processed"
        assert (await _load(session_factory, user.id)).tier == "pro"

    @pytest.mark.asyncio
    async def test_unknown_user_is_ignored_with_200(self, post_webhook, processor) -> None:
        resp = await post_webhook(_event("checkout.session.completed", _checkout("no-such-user", customer="cus_x")))

        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored", "reason": "unknown_user"}
        processor.retrieve_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_session_without_subscription_is_ignored(self, make_user, post_webhook) -> None:
        user = await make_user()
        session_obj = _checkout(user.id)
        session_obj["subscription"] = None

        resp = await post_webhook(_event("checkout.session.completed", session_obj))

        assert resp.json() == {"status": "ignored", "reason": "no_subscription"}


class TestSubscriptionUpdated:
    @pytest.mark.asyncio
    async def test_active_update_keeps_first_subscribed_at(
        self, make_user, post_webhook, processor, session_factory
    ) -> None:
        user = await make_user()
        processor.retrieve_subscription.return_value = _subscription(user_id=user.id)
        await post_webhook(_event("checkout.session.completed", _checkout(user.id)))

        later = T0 + timedelta(days=40)
        resp = await post_webhook(
            _event("customer.subscription.updated", _subscription("sub_2", start=later, user_id=user.id))
        )

        assert resp.json()["status"] == "processed"
        row = await _load(session_factory, user.id)
        assert row.stripe_subscription_id == "sub_2"
        assert row.subscription_started_at == later
        assert row.first_subscribed_at == T0

    @pytest.mark.asyncio
    async def test_non_active_status_is_ignored(self, make_user, post_webhook, session_factory) -> None:
        user = await make_user()

        resp = await post_webhook(
            _event("customer.subscription.updated", _subscription(status="past_due", user_id=user.id))
        )

        assert resp.json() == {"status": "ignored", "reason": "subscription_status_past_due"}
        assert (await _load(session_factory, user.id)).tier == "free"


class TestSubscriptionDeleted:
    @pytest.mark.asyncio
    async def test_downgrades_and_clears_subscription(
        self, make_user, post_webhook, processor, session_factory
    ) -> None:
        user = await make_user()
        processor.retrieve_subscription.return_value = _subscription(user_id=user.id)
        await post_webhook(_event("checkout.session.completed", _checkout(user.id)))

        resp = await post_webhook(_event("customer.subscription.deleted", _subscription(status="canceled")))

        assert resp.json()["status"] == "processed"
        row = await _load(session_factory, user.id)
        assert row.tier == "free"
        assert row.stripe_subscription_id is None
        assert row.stripe_customer_id == "cus_1"
        assert row.first_subscribed_at == T0


class TestUnhandledEvents:
    @pytest.mark.asyncio
    async def test_other_event_types_are_ignored(self, post_webhook) -> None:
        resp = await post_webhook(_event("invoice.paid", {"id": "in_1"}))

        assert resp.status_code == 200
        assert resp.json() == {"status": "ignored", "reason": "unhandled_event_type"}


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


class TestSignatureVerification:
    @pytest.mark.asyncio
    async def test_missing_signature_returns_400(self, client) -> None:
        resp = await client.post("/api/v1/billing/webhooks", content=b"{}")

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Missing stripe-signature header"

    @pytest.mark.asyncio
    async def test_wrong_secret_returns_400(self, post_webhook) -> None:
        resp = await post_webhook(_event("invoice.paid", {"id": "in_1"}), secret="whsec_someone_else")

        assert resp.status_code == 400
        assert resp.json()["detail"] == "Signature verification failed"

    @pytest.mark.asyncio
    async def test_garbage_signature_returns_400(self, post_webhook) -> None:
        resp = await post_webhook(_event("invoice.paid", {"id": "in_1"}), signature="not-a-signature")

        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unconfigured_secret_returns_500(self, app, post_webhook) -> None:
        app.dependency_overrides[get_payment_processor] = lambda: PaymentProcessorClient(
            SecretStr("sk_test_xxx"), SecretStr("")
        )

        resp = await post_webhook(_event("invoice.paid", {"id": "in_1"}))

        assert resp.status_code == 500
        assert resp.json()["detail"] == "Webhook endpoint not configured"


# ---------------------------------------------------------------------------
# Delivery order
# ---------------------------------------------------------------------------


class TestStaleEvents:
    @pytest.mark.asyncio
    async def test_out_of_order_event_applied_by_default(
        self, make_user, post_webhook, processor, session_factory
    ) -> None:
        user = await make_user()
        processor.retrieve_subscription.return_value = _subscription(user_id=user.id)
        now = int(time.time())
        await post_webhook(_event("checkout.session.completed", _checkout(user.id), created=now - 100))
        await post_webhook(_event("customer.subscription.deleted", _subscription(), created=now))

        resp = await post_webhook(
            _event("customer.subscription.updated", _subscription(user_id=user.id), created=now - 50)
        )

        assert resp.json()["status"] == "processed"
        assert (await _load(session_factory, user.id)).tier == "pro"

    @pytest.mark.asyncio
    async def test_stale_event_skipped_when_guard_enabled(
        self, app, test_settings, make_user, post_webhook, processor, session_factory
    ) -> None:
        guarded = test_settings.model_copy(update={"webhook_reject_stale_events": True})
        app.dependency_overrides[get_settings] = lambda: guarded
        user = await make_user()
        processor.retrieve_subscription.return_value = _subscription(user_id=user.id)
        now = int(time.time())
        await post_webhook(_event("checkout.session.completed", _checkout(user.id), created=now - 100))
        await post_webhook(_event("customer.subscription.deleted", _subscription(), created=now))

        resp = await post_webhook(
            _event("customer.subscription.updated", _subscription(user_id=user.id), created=now - 50)
        )

        assert resp.json() == {"status": "ignored", "reason": "stale_event"}
        assert (await _load(session_factory, user.id)).tier == "free"
