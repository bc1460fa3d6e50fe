"""Account sign-in, self-service deletion, and the retention sweep."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

from quickreview_core.entitlements.lifecycle import AccountState, resolve_account_state
from quickreview_core.metering.counter_store import CounterStore, CounterStoreError
from quickreview_core.metering.usage_period import pending_views_key
from quickreview_core.state.repository import (
    AccountRepository,
    EntitlementRepository,
    LandingPageRepository,
)
from quickreview_core.state.tables import UserTable
from sqlalchemy.ext.asyncio import AsyncSession

from quickreview_api.config import APISettings
from quickreview_api.services.errors import BusinessRuleError, NotFoundError, ProcessorError
from quickreview_api.services.payment_processor import PaymentProcessorClient

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignInResult:
    user: UserTable
    created: bool = False
    recovered: bool = False


@dataclass
class CleanupReport:
    """Accounts removed by one retention sweep."""

    purged: list[str] = field(default_factory=list)


class AccountService:
    """Lifecycle transitions for user accounts.

    Parameters
    ----------
    session:
        Active database session.
    settings:
        API settings (retention window).
    processor:
        Stripe client, used to cancel subscriptions on deletion.
    counter_store:
        Store whose pending scan keys are dropped when an account is purged.
    """

    def __init__(
        self,
        session: AsyncSession,
        settings: APISettings,
        processor: PaymentProcessorClient,
        counter_store: CounterStore,
    ) -> None:
        self._session = session
        self._settings = settings
        self._processor = processor
        self._counters = counter_store
        self._accounts = AccountRepository(session)
        self._entitlements = EntitlementRepository(session)
        self._landing = LandingPageRepository(session)

    @property
    def retention(self) -> timedelta:
        return timedelta(days=self._settings.account_retention_days)

    async def sign_in(
        self,
        email: str,
        display_name: str | None = None,
        *,
        now: datetime | None = None,
    ) -> SignInResult:
        """Resolve *email* to an active account, creating or recovering it.

        A pending-deletion account is restored while inside the retention
        window.  Past the window its data is purged first and a fresh
        account is created.
        """
        now = now or datetime.now(UTC)
        existing = await self._accounts.get_by_email(email)
        if existing is None:
            return SignInResult(await self._accounts.create(email, display_name, now=now), created=True)

        state = resolve_account_state(existing.account_state, existing.deleted_at, now, self.retention)
        if state == AccountState.ACTIVE:
            return SignInResult(existing)
        if state == AccountState.PENDING_DELETION:
            restored = await self._accounts.restore(existing.id)
            logger.info("Recovered account %s pending deletion since %s", existing.id, existing.deleted_at)
            return SignInResult(restored, recovered=True)

        logger.info("Account %s is past retention; purging before re-creating", existing.id)
        await self._purge(existing.id)
        return SignInResult(await self._accounts.create(email, display_name, now=now), created=True)

    async def delete_account(self, user_id: str, confirm_email: str | None, *, now: datetime | None = None) -> str:
        """Schedule the account for deletion and return the user-facing message.

        Any subscription is cancelled at Stripe first.  A Stripe failure is
        logged and does not block the deletion.
        """
        now = now or datetime.now(UTC)
        user = await self._entitlements.get(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if user.account_state != AccountState.ACTIVE.value:
            raise BusinessRuleError("Account is already scheduled for deletion")
        if not confirm_email or confirm_email.strip().lower() != user.email:
            raise BusinessRuleError(
                "Email confirmation required",
                hint="Please enter your email address to confirm account deletion.",
            )

        if user.stripe_subscription_id:
            try:
                await self._processor.cancel_subscription(user.stripe_subscription_id)
            except ProcessorError:
                logger.error(
                    "Failed to cancel subscription %s during deletion of account %s",
                    user.stripe_subscription_id,
                    user.id,
                    exc_info=True,
                )

        await self._entitlements.set_free(user.id)
        await self._accounts.mark_pending_deletion(user.id, now)
        days = self._settings.account_retention_days
        logger.info("Account %s scheduled for deletion", user.id)
        return (
            f"Account scheduled for deletion. Your data will be permanently removed in {days} days. "
            f"Sign in again within {days} days to recover your account."
        )

    async def cleanup_expired(self, *, now: datetime | None = None, limit: int = 500) -> CleanupReport:
        """Hard-delete accounts whose retention window has elapsed."""
        now = now or datetime.now(UTC)
        report = CleanupReport()
        for user_id in await self._accounts.list_purgeable(now - self.retention, limit=limit):
            await self._purge(user_id)
            report.purged.append(user_id)
        logger.info("Retention sweep purged %d accounts", len(report.purged))
        return report

    async def _purge(self, user_id: str) -> None:
        for landing_id in await self._landing.list_ids(user_id=user_id):
            try:
                await self._counters.delete(pending_views_key(landing_id))
            except CounterStoreError:
                logger.warning("Could not drop pending scans for purged page %s", landing_id, exc_info=True)
        await self._accounts.purge(user_id)
