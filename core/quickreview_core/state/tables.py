"""SQLAlchemy 2.0 ORM table definitions for the QuickReview state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for use by Alembic migrations and the
repository layer.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always round-trips as UTC.

    PostgreSQL returns aware values already.  SQLite drops the offset, so
    naive values read back are re-tagged as UTC and bound values are
    normalised to UTC before storage.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is not None:
            return value.astimezone(UTC)
        return value

    def process_result_value(self, value: Any, dialect: Any) -> Any:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all QuickReview tables."""


# ---------------------------------------------------------------------------
# Users / entitlements
# ---------------------------------------------------------------------------


class UserTable(Base):
    """One row per account: identity, entitlement tier, and usage anchor.

    ``tier`` mirrors the Stripe subscription state and may lag it until the
    next webhook or reconciliation.  ``first_subscribed_at`` is written once
    and never changed; ``subscription_started_at`` tracks the current
    subscription and drives the refund window.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False, default="free")
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_subscription_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    subscription_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    first_subscribed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    account_state: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    deleted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_processor_event_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_users_stripe_customer", "stripe_customer_id"),
        Index("ix_users_account_state", "account_state", "deleted_at"),
    )


# ---------------------------------------------------------------------------
# Metered resources
# ---------------------------------------------------------------------------


class StoreTable(Base):
    """A business location owned by a user."""

    __tablename__ = "stores"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(256), nullable=False)
    google_place_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    yelp_business_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_stores_user", "user_id"),)


class LandingPageTable(Base):
    """Public review landing page for a store.

    ``view_count`` / ``copy_count`` are lifetime totals.  The ``period_*``
    counters hold the owner's current billing period and are zeroed by the
    usage tracker when the period rolls over.  ``user_id`` duplicates the
    store owner so period usage can be summed without a join.
    """

    __tablename__ = "landing_pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    store_id: Mapped[str] = mapped_column(String(64), ForeignKey("stores.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    copy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_view_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_copy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_landing_pages_store", "store_id"),
        Index("ix_landing_pages_user", "user_id"),
    )


class UsageLedgerTable(Base):
    """Append-only usage carried over from deleted resources.

    Rows are never updated.  Only rows whose ``period_start`` matches the
    owner's current period count toward quota.
    """

    __tablename__ = "usage_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    scans: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    copies: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    reason: Mapped[str] = mapped_column(String(64), nullable=False)
    source_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_usage_ledger_user_period", "user_id", "period_start"),)
