"""Per-user usage within the current monthly billing period.

Usage for a period has three parts:

* live ``period_*`` counters on the user's landing pages,
* scans recorded in the counter store that the sync job has not yet
  folded into the database (``views:<landing_id>`` keys),
* carry-over entries in the usage ledger for deleted stores.

:meth:`UsagePeriodTracker.current_usage` first rolls the period over if it
has elapsed.  Callers must make that call before comparing usage to a
quota.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime

from sqlalchemy.ext.asyncio import AsyncSession

from quickreview_core.metering.counter_store import CounterStore, CounterStoreError
from quickreview_core.metering.periods import current_period_start, period_end
from quickreview_core.state.repository import LandingPageRepository, StoreRepository, UsageRepository
from quickreview_core.state.tables import UserTable

logger = logging.getLogger(__name__)

PENDING_VIEWS_PREFIX = "views"


def pending_views_key(landing_id: str) -> str:
    """Counter-store key holding unsynced scans for a landing page."""
    return f"{PENDING_VIEWS_PREFIX}:{landing_id}"


@dataclass(frozen=True)
class PeriodUsage:
    """Usage snapshot for one user and period."""

    period_start: datetime
    period_end: datetime
    scans: int
    copies: int
    rolled_over: bool = False


@dataclass
class ViewSyncReport:
    """Result of folding pending scans into the database."""

    landing_pages: int = 0
    synced_views: int = 0
    errors: list[str] = field(default_factory=list)


class UsagePeriodTracker:
    """Read usage, roll periods over, and account for deleted stores.

    Parameters
    ----------
    session:
        Request-scoped session.  The tracker flushes but never commits.
    counter_store:
        Store holding pending scan counts.
    """

    def __init__(self, session: AsyncSession, counter_store: CounterStore) -> None:
        self._session = session
        self._store = counter_store
        self._usage = UsageRepository(session)
        self._landing = LandingPageRepository(session)
        self._stores = StoreRepository(session)

    async def current_usage(self, user: UserTable, *, now: datetime | None = None) -> PeriodUsage:
        """Return usage for the period containing *now*, rolling over first.

        Parameters
        ----------
        user:
            The account whose usage is read.  Its ``period_start`` is
            refreshed in place when a rollover happens.
        now:
            Reference time; defaults to the current UTC time.

        Returns
        -------
        PeriodUsage
            Zero counts with ``rolled_over=True`` when this call performed
            the rollover.
        """
        now = now or datetime.now(UTC)
        expected_start = current_period_start(user.created_at, now)
        end = period_end(user.created_at, expected_start)

        if user.period_start is None or user.period_start < expected_start:
            if await self._roll_over(user, expected_start):
                return PeriodUsage(period_start=expected_start, period_end=end, scans=0, copies=0, rolled_over=True)

        live_scans, live_copies = await self._usage.live_totals(user.id)
        carried_scans, carried_copies = await self._usage.carried_totals(user.id, expected_start)
        pending = await self._pending_views(user.id)
        return PeriodUsage(
            period_start=expected_start,
            period_end=end,
            scans=live_scans + carried_scans + pending,
            copies=live_copies + carried_copies,
        )

    async def _roll_over(self, user: UserTable, new_start: datetime) -> bool:
        """Start a new period for *user*.  Returns ``True`` for the winning caller."""
        old_start = user.period_start
        expired_scans, expired_copies = await self._usage.live_totals(user.id)
        if old_start is not None:
            carried_scans, carried_copies = await self._usage.carried_totals(user.id, old_start)
            expired_scans += carried_scans
            expired_copies += carried_copies

        claimed = await self._usage.claim_period_rollover(user.id, new_start)
        await self._session.refresh(user, attribute_names=["period_start"])
        if not claimed:
            logger.debug("Period rollover for user %s already applied by another request", user.id)
            return False

        await self._landing.reset_period_counters(user.id)
        # Unsynced scans belong to the expired period.
        await self._drain_pending_views(user.id, lifetime_only=True)
        # There is no history store; the expired totals are logged and dropped.
        logger.info(
            "Usage period rolled over for user %s: %s -> %s (expired scans=%d copies=%d)",
            user.id,
            old_start.isoformat() if old_start else None,
            new_start.isoformat(),
            expired_scans,
            expired_copies,
        )
        return True

    async def _pending_views(self, user_id: str) -> int:
        total = 0
        for landing_id in await self._landing.list_ids(user_id=user_id):
            try:
                total += await self._store.get(pending_views_key(landing_id)) or 0
            except CounterStoreError:
                logger.warning("Could not read pending scans for %s; counting as zero", landing_id, exc_info=True)
        return total

    async def _drain_pending_views(self, user_id: str, *, lifetime_only: bool) -> int:
        drained = 0
        for landing_id in await self._landing.list_ids(user_id=user_id):
            try:
                pending = await self._store.get_and_delete(pending_views_key(landing_id))
            except CounterStoreError:
                logger.warning("Could not drain pending scans for %s", landing_id, exc_info=True)
                continue
            if pending:
                await self._landing.add_views(landing_id, pending, lifetime_only=lifetime_only)
                drained += pending
        return drained

    # -- Recording -----------------------------------------------------------

    async def record_scan(self, landing_id: str) -> None:
        """Count one scan of *landing_id*.

        Scans go to the counter store and are folded in by the sync job.
        If the store is unavailable the scan is written to the database
        directly so it still counts toward quota.
        """
        try:
            await self._store.increment(pending_views_key(landing_id))
        except CounterStoreError:
            logger.warning("Counter store unavailable; recording scan for %s directly", landing_id, exc_info=True)
            await self._landing.add_views(landing_id, 1)

    async def record_copy(self, landing_id: str) -> bool:
        """Count one copy of *landing_id*."""
        return await self._landing.add_copy(landing_id)

    # -- Deleted-resource accounting -----------------------------------------

    async def retire_store(self, user: UserTable, store_id: str, *, now: datetime | None = None) -> tuple[int, int]:
        """Delete a store, carrying its current-period usage into the ledger.

        Returns
        -------
        tuple[int, int]
            The ``(scans, copies)`` carried over.
        """
        usage = await self.current_usage(user, now=now)
        scans = copies = 0
        for landing in await self._landing.list_for_store(store_id):
            scans += landing.period_view_count
            copies += landing.period_copy_count
            try:
                scans += await self._store.get_and_delete(pending_views_key(landing.id)) or 0
            except CounterStoreError:
                logger.warning("Could not drain pending scans for deleted page %s", landing.id, exc_info=True)

        if scans or copies:
            await self._usage.append_ledger(
                user.id,
                usage.period_start,
                scans=scans,
                copies=copies,
                reason="store_deleted",
                source_id=store_id,
            )
        await self._stores.delete(store_id)
        logger.info("Deleted store %s for user %s (carried scans=%d copies=%d)", store_id, user.id, scans, copies)
        return scans, copies


async def sync_pending_views(session: AsyncSession, counter_store: CounterStore) -> ViewSyncReport:
    """Fold every pending ``views:<id>`` count into its landing page.

    Errors on individual keys are collected and do not stop the sweep.
    """
    landing = LandingPageRepository(session)
    report = ViewSyncReport()
    for landing_id in await landing.list_ids():
        report.landing_pages += 1
        try:
            pending = await counter_store.get_and_delete(pending_views_key(landing_id))
        except CounterStoreError as exc:
            report.errors.append(f"{landing_id}: {exc}")
            continue
        if pending:
            await landing.add_views(landing_id, pending)
            report.synced_views += pending
    logger.info(
        "Synced %d pending views across %d landing pages (%d errors)",
        report.synced_views,
        report.landing_pages,
        len(report.errors),
    )
    return report
