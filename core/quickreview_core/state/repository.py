"""Repository classes providing access to the QuickReview state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for calling
``session.commit()`` (in the API, the request-scoped session dependency does).
"""

from __future__ import annotations

import logging
import uuid
from datetime import UTC, datetime

from sqlalchemy import delete, func, literal, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from quickreview_core.entitlements.lifecycle import AccountState
from quickreview_core.entitlements.plans import Tier
from quickreview_core.metering.periods import current_period_start
from quickreview_core.state.tables import (
    LandingPageTable,
    StoreTable,
    UsageLedgerTable,
    UserTable,
    UTCDateTime,
)

logger = logging.getLogger(__name__)


def _normalise_email(email: str) -> str:
    return email.lower().strip()


async def _reload_user(session: AsyncSession, user_id: str) -> UserTable | None:
    """Re-read a user row, overwriting any stale identity-map state."""
    stmt = select(UserTable).where(UserTable.id == user_id).execution_options(populate_existing=True)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# AccountRepository
# ---------------------------------------------------------------------------


class AccountRepository:
    """Account creation and lifecycle transitions for the ``users`` table."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        email: str,
        display_name: str | None = None,
        *,
        now: datetime | None = None,
    ) -> UserTable:
        """Create a free-tier account whose usage period starts at creation."""
        now = now or datetime.now(UTC)
        row = UserTable(
            id=uuid.uuid4().hex,
            email=_normalise_email(email),
            display_name=display_name.strip() if display_name else None,
            tier=Tier.FREE.value,
            account_state=AccountState.ACTIVE.value,
            period_start=current_period_start(now, now),
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        logger.info("Created account %s", row.id)
        return row

    async def get(self, user_id: str) -> UserTable | None:
        """Fetch a user by primary key."""
        result = await self._session.execute(
            select(UserTable).where(UserTable.id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> UserTable | None:
        """Fetch a user by email address (case-insensitive)."""
        result = await self._session.execute(
            select(UserTable)
            .where(UserTable.email == _normalise_email(email))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def mark_pending_deletion(self, user_id: str, now: datetime) -> UserTable | None:
        """Move an account to ``PENDING_DELETION`` starting at *now*."""
        await self._session.execute(
            update(UserTable)
            .where(UserTable.id == user_id, UserTable.account_state == AccountState.ACTIVE.value)
            .values(account_state=AccountState.PENDING_DELETION.value, deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return await _reload_user(self._session, user_id)

    async def restore(self, user_id: str) -> UserTable | None:
        """Return a pending-deletion account to ``ACTIVE``."""
        await self._session.execute(
            update(UserTable)
            .where(
                UserTable.id == user_id,
                UserTable.account_state == AccountState.PENDING_DELETION.value,
            )
            .values(account_state=AccountState.ACTIVE.value, deleted_at=None)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return await _reload_user(self._session, user_id)

    async def list_purgeable(self, cutoff: datetime, limit: int = 500) -> list[str]:
        """Return ids of accounts pending deletion since before *cutoff*."""
        stmt = (
            select(UserTable.id)
            .where(
                UserTable.account_state == AccountState.PENDING_DELETION.value,
                UserTable.deleted_at <= cutoff,
            )
            .order_by(UserTable.deleted_at)
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def purge(self, user_id: str) -> None:
        """Hard-delete an account and everything it owns.

        Child rows are deleted explicitly so the cascade does not depend on
        the backend enforcing foreign keys.
        """
        await self._session.execute(delete(UsageLedgerTable).where(UsageLedgerTable.user_id == user_id))
        await self._session.execute(delete(LandingPageTable).where(LandingPageTable.user_id == user_id))
        await self._session.execute(delete(StoreTable).where(StoreTable.user_id == user_id))
        await self._session.execute(delete(UserTable).where(UserTable.id == user_id))
        await self._session.flush()
        logger.info("Purged account %s", user_id)


# ---------------------------------------------------------------------------
# EntitlementRepository
# ---------------------------------------------------------------------------


class EntitlementRepository:
    """Single read/write point for tier and subscription metadata.

    ``set_pro`` coalesces ``first_subscribed_at`` so the first-ever start is
    kept, and always overwrites ``subscription_started_at``.  Refund
    eligibility relies on the difference between the two.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    @staticmethod
    def _check_integrity(row: UserTable) -> None:
        if row.tier == Tier.PRO.value and not row.stripe_subscription_id:
            logger.error(
                "Entitlement integrity alarm: user %s is pro without a subscription id",
                row.id,
            )

    async def get(self, user_id: str) -> UserTable | None:
        """Fetch the entitlement record for *user_id*."""
        row = await _reload_user(self._session, user_id)
        if row is not None:
            self._check_integrity(row)
        return row

    async def get_by_email(self, email: str) -> UserTable | None:
        """Fetch the entitlement record by email (case-insensitive)."""
        result = await self._session.execute(
            select(UserTable)
            .where(UserTable.email == _normalise_email(email))
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_customer_id(self, customer_id: str) -> UserTable | None:
        """Fetch the entitlement record owning a Stripe customer id."""
        result = await self._session.execute(
            select(UserTable)
            .where(UserTable.stripe_customer_id == customer_id)
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def set_pro(
        self,
        user_id: str,
        customer_id: str | None,
        subscription_id: str,
        started_at: datetime,
    ) -> UserTable | None:
        """Grant the pro tier for *subscription_id* starting at *started_at*.

        Parameters
        ----------
        user_id:
            Account to upgrade.
        customer_id:
            Stripe customer id.  ``None`` keeps the stored value.
        subscription_id:
            Stripe subscription id; must be non-empty.
        started_at:
            Start of the current subscription.

        Returns
        -------
        UserTable | None
            The updated row, or ``None`` if the user does not exist.
        """
        if not subscription_id:
            raise ValueError("set_pro requires a subscription id")

        values: dict[str, object] = {
            "tier": Tier.PRO.value,
            "stripe_subscription_id": subscription_id,
            "subscription_started_at": started_at,
            "first_subscribed_at": func.coalesce(
                UserTable.first_subscribed_at,
                literal(started_at, type_=UTCDateTime()),
            ),
        }
        if customer_id:
            values["stripe_customer_id"] = customer_id

        await self._session.execute(
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return await _reload_user(self._session, user_id)

    async def set_free(self, user_id: str) -> UserTable | None:
        """Downgrade to free and clear the subscription id."""
        await self._session.execute(
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(tier=Tier.FREE.value, stripe_subscription_id=None)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return await _reload_user(self._session, user_id)

    async def touch_customer_id(self, user_id: str, customer_id: str) -> UserTable | None:
        """Record the Stripe customer id without changing the tier."""
        await self._session.execute(
            update(UserTable)
            .where(UserTable.id == user_id)
            .values(stripe_customer_id=customer_id)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return await _reload_user(self._session, user_id)

    async def record_processor_event(self, user_id: str, event_at: datetime) -> bool:
        """Advance ``last_processor_event_at`` to *event_at*.

        Returns ``False`` when a newer event has already been recorded.
        """
        result = await self._session.execute(
            update(UserTable)
            .where(
                UserTable.id == user_id,
                or_(
                    UserTable.last_processor_event_at.is_(None),
                    UserTable.last_processor_event_at <= event_at,
                ),
            )
            .values(last_processor_event_at=event_at)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return result.rowcount == 1

    async def find_integrity_violations(self, limit: int = 100) -> list[UserTable]:
        """Return pro users that have no subscription id."""
        stmt = (
            select(UserTable)
            .where(
                UserTable.tier == Tier.PRO.value,
                UserTable.stripe_subscription_id.is_(None),
            )
            .order_by(UserTable.updated_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# UsageRepository
# ---------------------------------------------------------------------------


class UsageRepository:
    """Period anchors, live period totals, and the append-only usage ledger."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def claim_period_rollover(self, user_id: str, new_start: datetime) -> bool:
        """Move ``period_start`` forward to *new_start* if nobody has yet.

        The conditional ``UPDATE`` only matches while the stored anchor is
        older than *new_start*, so exactly one concurrent caller gets a
        row count of one.
        """
        result = await self._session.execute(
            update(UserTable)
            .where(
                UserTable.id == user_id,
                or_(UserTable.period_start.is_(None), UserTable.period_start < new_start),
            )
            .values(period_start=new_start)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return result.rowcount == 1

    async def live_totals(self, user_id: str) -> tuple[int, int]:
        """Sum current-period scans and copies across the user's landing pages."""
        stmt = select(
            func.coalesce(func.sum(LandingPageTable.period_view_count), 0),
            func.coalesce(func.sum(LandingPageTable.period_copy_count), 0),
        ).where(LandingPageTable.user_id == user_id)
        scans, copies = (await self._session.execute(stmt)).one()
        return int(scans), int(copies)

    async def carried_totals(self, user_id: str, period_start: datetime) -> tuple[int, int]:
        """Sum ledger entries recorded for *period_start*."""
        stmt = select(
            func.coalesce(func.sum(UsageLedgerTable.scans), 0),
            func.coalesce(func.sum(UsageLedgerTable.copies), 0),
        ).where(
            UsageLedgerTable.user_id == user_id,
            UsageLedgerTable.period_start == period_start,
        )
        scans, copies = (await self._session.execute(stmt)).one()
        return int(scans), int(copies)

    async def append_ledger(
        self,
        user_id: str,
        period_start: datetime,
        *,
        scans: int,
        copies: int,
        reason: str,
        source_id: str | None = None,
    ) -> UsageLedgerTable:
        """Append a carry-over entry.  Entries are never updated."""
        if scans < 0 or copies < 0:
            raise ValueError("ledger entries must be non-negative")
        row = UsageLedgerTable(
            user_id=user_id,
            period_start=period_start,
            scans=scans,
            copies=copies,
            reason=reason,
            source_id=source_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def ledger_entries(self, user_id: str) -> list[UsageLedgerTable]:
        """Return the user's ledger in insertion order."""
        stmt = select(UsageLedgerTable).where(UsageLedgerTable.user_id == user_id).order_by(UsageLedgerTable.id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# StoreRepository
# ---------------------------------------------------------------------------


class StoreRepository:
    """Stores and their landing pages."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        user_id: str,
        name: str,
        *,
        google_place_id: str | None = None,
        yelp_business_id: str | None = None,
    ) -> tuple[StoreTable, LandingPageTable]:
        """Create a store together with its landing page."""
        store = StoreTable(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=name.strip(),
            google_place_id=google_place_id,
            yelp_business_id=yelp_business_id,
        )
        landing = LandingPageTable(id=uuid.uuid4().hex, store_id=store.id, user_id=user_id)
        self._session.add(store)
        await self._session.flush()
        self._session.add(landing)
        await self._session.flush()
        return store, landing

    async def get(self, store_id: str) -> StoreTable | None:
        result = await self._session.execute(select(StoreTable).where(StoreTable.id == store_id))
        return result.scalar_one_or_none()

    async def count_for_user(self, user_id: str) -> int:
        stmt = select(func.count()).select_from(StoreTable).where(StoreTable.user_id == user_id)
        return (await self._session.execute(stmt)).scalar_one()

    async def list_for_user(self, user_id: str) -> list[tuple[StoreTable, LandingPageTable]]:
        """Return ``(store, landing_page)`` pairs ordered by creation."""
        stmt = (
            select(StoreTable, LandingPageTable)
            .join(LandingPageTable, LandingPageTable.store_id == StoreTable.id)
            .where(StoreTable.user_id == user_id)
            .order_by(StoreTable.created_at)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        return [(store, landing) for store, landing in result.all()]

    async def delete(self, store_id: str) -> None:
        """Delete a store and its landing pages."""
        await self._session.execute(delete(LandingPageTable).where(LandingPageTable.store_id == store_id))
        await self._session.execute(delete(StoreTable).where(StoreTable.id == store_id))
        await self._session.flush()


# ---------------------------------------------------------------------------
# LandingPageRepository
# ---------------------------------------------------------------------------


class LandingPageRepository:
    """Counters on landing pages.  All increments are single atomic UPDATEs."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, landing_id: str) -> LandingPageTable | None:
        result = await self._session.execute(
            select(LandingPageTable)
            .where(LandingPageTable.id == landing_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_with_store(self, landing_id: str) -> tuple[LandingPageTable, StoreTable] | None:
        stmt = (
            select(LandingPageTable, StoreTable)
            .join(StoreTable, StoreTable.id == LandingPageTable.store_id)
            .where(LandingPageTable.id == landing_id)
            .execution_options(populate_existing=True)
        )
        row = (await self._session.execute(stmt)).one_or_none()
        if row is None:
            return None
        return row[0], row[1]

    async def list_for_store(self, store_id: str) -> list[LandingPageTable]:
        result = await self._session.execute(
            select(LandingPageTable)
            .where(LandingPageTable.store_id == store_id)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_ids(self, *, user_id: str | None = None) -> list[str]:
        """Return landing page ids, optionally restricted to one owner."""
        stmt = select(LandingPageTable.id).order_by(LandingPageTable.id)
        if user_id is not None:
            stmt = stmt.where(LandingPageTable.user_id == user_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def add_views(self, landing_id: str, count: int, *, lifetime_only: bool = False) -> bool:
        """Add *count* views.  Returns ``False`` if the page no longer exists."""
        values: dict[str, object] = {"view_count": LandingPageTable.view_count + count}
        if not lifetime_only:
            values["period_view_count"] = LandingPageTable.period_view_count + count
        result = await self._session.execute(
            update(LandingPageTable)
            .where(LandingPageTable.id == landing_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return result.rowcount == 1

    async def add_copy(self, landing_id: str) -> bool:
        """Add one copy to the lifetime and period counters."""
        result = await self._session.execute(
            update(LandingPageTable)
            .where(LandingPageTable.id == landing_id)
            .values(
                copy_count=LandingPageTable.copy_count + 1,
                period_copy_count=LandingPageTable.period_copy_count + 1,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        return result.rowcount == 1

    async def reset_period_counters(self, user_id: str) -> None:
        """Zero the current-period counters on every page the user owns."""
        await self._session.execute(
            update(LandingPageTable)
            .where(LandingPageTable.user_id == user_id)
            .values(period_view_count=0, period_copy_count=0)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
