"""Tests for quickreview_api.services.billing_service

Covers:
- Refund eligibility: first-time rule, window boundary, missing start
- The T0+2d / T0+4d refund scenario and the resubscriber scenario
- Cancellation paths: none, period-end, immediate, refund, failed refund
- Checkout: plan validation, return-path validation, customer reuse
- Subscription info and portal sessions
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from quickreview_core.state.repository import AccountRepository, EntitlementRepository

from quickreview_api.services.billing_service import (
    BillingService,
    evaluate_refund_eligibility,
    validate_return_path,
)
from quickreview_api.services.errors import BusinessRuleError, ConfigurationError, ProcessorError

T0 = datetime(2026, 4, 1, 12, 0, tzinfo=UTC)
WINDOW = timedelta(days=3)


@pytest_asyncio.fixture()
async def pro_user(db_session):
    user = await AccountRepository(db_session).create("pro@example.com", now=T0 - timedelta(days=10))
    return await EntitlementRepository(db_session).set_pro(user.id, "cus_1", "sub_1", T0)


@pytest.fixture()
def service(db_session, test_settings, processor) -> BillingService:
    return BillingService(db_session, test_settings, processor)


# ---------------------------------------------------------------------------
# Refund eligibility
# ---------------------------------------------------------------------------


class TestRefundEligibility:
    @pytest.mark.asyncio
    async def test_inside_window_is_eligible(self, pro_user) -> None:
        result = evaluate_refund_eligibility(pro_user, T0 + timedelta(days=2), WINDOW)
        assert result.eligible is True
        assert result.first_time is True
        assert result.deadline == T0 + WINDOW

    @pytest.mark.asyncio
    async def test_exact_boundary_is_not_eligible(self, pro_user) -> None:
        result = evaluate_refund_eligibility(pro_user, T0 + WINDOW, WINDOW)
        assert result.eligible is False

    @pytest.mark.asyncio
    async def test_just_before_boundary_is_eligible(self, pro_user) -> None:
        result = evaluate_refund_eligibility(pro_user, T0 + WINDOW - timedelta(seconds=1), WINDOW)
        assert result.eligible is True

    @pytest.mark.asyncio
    async def test_missing_start_is_not_eligible(self, db_session) -> None:
        user = await AccountRepository(db_session).create("free@example.com", now=T0)
        result = evaluate_refund_eligibility(user, T0, WINDOW)
        assert result.eligible is False
        assert result.reason


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------


class TestRefundScenario:
    @pytest.mark.asyncio
    async def test_refund_two_days_after_start(self, service, pro_user, processor, db_session) -> None:
        outcome = await service.cancel_subscription(pro_user.id, request_refund=True, now=T0 + timedelta(days=2))

        assert outcome.cancelled is True
        assert outcome.refunded is True
        processor.cancel_subscription.assert_awaited_once_with("sub_1")
        processor.create_refund.assert_awaited_once_with(payment_intent="pi_123")
        row = await EntitlementRepository(db_session).get(pro_user.id)
        assert row.tier == "free"
        assert row.stripe_subscription_id is None

    @pytest.mark.asyncio
    async def test_refund_four_days_after_start_is_rejected(self, service, pro_user, processor, db_session) -> None:
        with pytest.raises(BusinessRuleError, match="Not eligible for refund") as exc_info:
            await service.cancel_subscription(pro_user.id, request_refund=True, now=T0 + timedelta(days=4))

        assert "reason" in exc_info.value.extra
        processor.cancel_subscription.assert_not_awaited()
        processor.create_refund.assert_not_awaited()
        assert (await EntitlementRepository(db_session).get(pro_user.id)).tier == "pro"

    @pytest.mark.asyncio
    async def test_resubscriber_is_not_eligible(self, service, pro_user, processor, db_session) -> None:
        entitlements = EntitlementRepository(db_session)
        await entitlements.set_free(pro_user.id)
        t1 = T0 + timedelta(days=30)
        await entitlements.set_pro(pro_user.id, "cus_1", "sub_2", t1)

        with pytest.raises(BusinessRuleError):
            await service.cancel_subscription(pro_user.id, request_refund=True, now=t1 + timedelta(days=1))

        row = await entitlements.get(pro_user.id)
        assert row.first_subscribed_at == T0
        assert row.subscription_started_at == t1
        processor.cancel_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_refund_keeps_cancellation(self, service, pro_user, processor, db_session) -> None:
        processor.create_refund.side_effect = ProcessorError("Payment processor request failed (refund.create)")

        outcome = await service.cancel_subscription(pro_user.id, request_refund=True, now=T0 + timedelta(days=1))

        assert outcome.cancelled is True
        assert outcome.refunded is False
        assert "manually" in outcome.message
        assert (await EntitlementRepository(db_session).get(pro_user.id)).tier == "free"

    @pytest.mark.asyncio
    async def test_no_payment_to_refund(self, service, pro_user, processor) -> None:
        processor.latest_invoice_payment.return_value = None

        outcome = await service.cancel_subscription(pro_user.id, request_refund=True, now=T0 + timedelta(days=1))

        assert outcome.cancelled is True
        assert outcome.refunded is False
        processor.create_refund.assert_not_awaited()


class TestCancel:
    @pytest.mark.asyncio
    async def test_without_subscription(self, service, db_session, processor) -> None:
        user = await AccountRepository(db_session).create("free@example.com", now=T0)

        outcome = await service.cancel_subscription(user.id)

        assert outcome.cancelled is False
        assert outcome.message == "No active subscription found"
        processor.cancel_subscription.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_period_end_keeps_tier(self, service, pro_user, processor, db_session) -> None:
        outcome = await service.cancel_subscription(pro_user.id)

        assert outcome.cancelled is False
        assert outcome.cancel_at_period_end is True
        processor.cancel_at_period_end.assert_awaited_once_with("sub_1")
        processor.cancel_subscription.assert_not_awaited()
        assert (await EntitlementRepository(db_session).get(pro_user.id)).tier == "pro"

    @pytest.mark.asyncio
    async def test_immediate_downgrades_synchronously(self, service, pro_user, processor, db_session) -> None:
        outcome = await service.cancel_subscription(pro_user.id, immediate=True)

        assert outcome.cancelled is True
        assert outcome.refunded is False
        processor.create_refund.assert_not_awaited()
        assert (await EntitlementRepository(db_session).get(pro_user.id)).tier == "free"

    @pytest.mark.asyncio
    async def test_processor_failure_propagates(self, service, pro_user, processor, db_session) -> None:
        processor.cancel_subscription.side_effect = ProcessorError("Payment processor request failed")

        with pytest.raises(ProcessorError):
            await service.cancel_subscription(pro_user.id, immediate=True)


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


class TestValidateReturnPath:
    @pytest.mark.parametrize("value", [None, ""])
    def test_default(self, value) -> None:
        assert validate_return_path(value) == "/dashboard?upgraded=true"

    @pytest.mark.parametrize("value", ["/settings", "/dashboard?tab=billing", "/a/b#c"])
    def test_accepts_relative_paths(self, value) -> None:
        assert validate_return_path(value) == value

    @pytest.mark.parametrize(
        "value",
        ["https://evil.example/", "//evil.example", "/\\evil.example", "settings", "javascript:alert(1)", "/x\n"],
    )
    def test_rejects_other_forms(self, value) -> None:
        with pytest.raises(BusinessRuleError, match="Invalid return URL"):
            validate_return_path(value)


class TestCheckout:
    @pytest.mark.asyncio
    async def test_builds_urls_and_metadata(self, service, db_session, processor) -> None:
        user = await AccountRepository(db_session).create("new@example.com", now=T0)

        url = await service.create_checkout_session(user.id, "pro", "/stores?new=1")

        assert url == "https://checkout.stripe.test/session"
        kwargs = processor.create_checkout_session.await_args.kwargs
        assert kwargs["price_id"] == "price_pro"
        assert kwargs["success_url"] == "https://app.quickreview.test/stores?new=1"
        assert kwargs["cancel_url"] == "https://app.quickreview.test/upgrade?cancelled=true"
        assert kwargs["client_reference_id"] == user.id
        assert kwargs["metadata"] == {"user_id": user.id, "plan": "pro"}
        assert kwargs["customer_id"] is None
        assert kwargs["customer_email"] == "new@example.com"

    @pytest.mark.asyncio
    async def test_reuses_existing_customer(self, service, pro_user, processor) -> None:
        await service.create_checkout_session(pro_user.id, "pro")

        kwargs = processor.create_checkout_session.await_args.kwargs
        assert kwargs["customer_id"] == "cus_1"
        assert kwargs["customer_email"] is None
        assert kwargs["success_url"].endswith("/dashboard?upgraded=true")

    @pytest.mark.asyncio
    async def test_unknown_plan(self, service, pro_user, processor) -> None:
        with pytest.raises(BusinessRuleError, match="Invalid plan"):
            await service.create_checkout_session(pro_user.id, "enterprise")
        processor.create_checkout_session.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unconfigured_price(self, db_session, test_settings, processor, pro_user) -> None:
        settings = test_settings.model_copy(update={"stripe_price_id_pro": ""})
        service = BillingService(db_session, settings, processor)

        with pytest.raises(ConfigurationError):
            await service.create_checkout_session(pro_user.id, "pro")


# ---------------------------------------------------------------------------
# Subscription info and portal
# ---------------------------------------------------------------------------


class TestSubscriptionInfo:
    @pytest.mark.asyncio
    async def test_free_user(self, service, db_session) -> None:
        user = await AccountRepository(db_session).create("free@example.com", now=T0)

        info = await service.get_subscription_info(user.id, now=T0)

        assert info["tier"] == "free"
        assert info["hasSubscription"] is False
        assert info["wasEverSubscribed"] is False

    @pytest.mark.asyncio
    async def test_pro_user_with_live_status(self, service, pro_user, processor) -> None:
        period_end = T0 + timedelta(days=30)
        processor.retrieve_subscription.return_value = {
            "id": "sub_1",
            "status": "active",
            "cancel_at_period_end": True,
            "current_period_end": int(period_end.timestamp()),
        }

        info = await service.get_subscription_info(pro_user.id, now=T0 + timedelta(days=1))

        assert info["hasSubscription"] is True
        assert info["eligibleForRefund"] is True
        assert info["refundDeadline"] == T0 + WINDOW
        assert info["memberSinceDays"] == 1
        assert info["status"] == "active"
        assert info["cancelAtPeriodEnd"] is True
        assert info["currentPeriodEnd"] == period_end

    @pytest.mark.asyncio
    async def test_processor_failure_degrades_to_local_data(self, service, pro_user, processor) -> None:
        processor.retrieve_subscription = AsyncMock(side_effect=ProcessorError("down"))

        info = await service.get_subscription_info(pro_user.id, now=T0 + timedelta(days=5))

        assert info["tier"] == "pro"
        assert info["eligibleForRefund"] is False
        assert info["status"] is None


class TestPortal:
    @pytest.mark.asyncio
    async def test_requires_billing_account(self, service, db_session) -> None:
        user = await AccountRepository(db_session).create("free@example.com", now=T0)

        with pytest.raises(BusinessRuleError, match="No billing account"):
            await service.create_portal_session(user.id)

    @pytest.mark.asyncio
    async def test_returns_to_profile(self, service, pro_user, processor) -> None:
        url = await service.create_portal_session(pro_user.id)

        assert url == "https://billing.stripe.test/portal"
        processor.create_portal_session.assert_awaited_once_with("cus_1", "https://app.quickreview.test/profile")
