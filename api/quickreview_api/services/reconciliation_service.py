"""Operator repair path: re-derive a user's tier from Stripe.

Webhooks can be missed or arrive out of order.  Reconciliation ignores
local state and writes whatever Stripe says is true right now.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass

from quickreview_core.entitlements.plans import Tier
from quickreview_core.state.repository import EntitlementRepository
from sqlalchemy.ext.asyncio import AsyncSession

from quickreview_api.services.errors import NotFoundError
from quickreview_api.services.payment_processor import PaymentProcessorClient
from quickreview_api.services.webhook_service import subscription_start

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconciliationReport:
    """Outcome of a single subscription sync."""

    email: str
    previous_tier: str
    new_tier: str
    has_active_subscription: bool
    stripe_customer_id: str | None
    subscription_id: str | None

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


class ReconciliationService:
    """Compare local entitlements against Stripe and repair them.

    Parameters
    ----------
    session:
        Active database session.
    processor:
        The application's Stripe client.
    """

    def __init__(self, session: AsyncSession, processor: PaymentProcessorClient) -> None:
        self._session = session
        self._processor = processor
        self._entitlements = EntitlementRepository(session)

    async def sync_subscription(self, email: str) -> ReconciliationReport:
        """Write the tier Stripe implies for *email*.

        The local customer id is used when present; otherwise Stripe is
        searched by e-mail.  The derived tier is written unconditionally.

        Raises
        ------
        NotFoundError
            If no local user has *email*.
        """
        user = await self._entitlements.get_by_email(email)
        if user is None:
            raise NotFoundError("User not found")

        previous_tier = user.tier
        customer_id = user.stripe_customer_id or await self._processor.find_customer_by_email(user.email)
        active = await self._processor.find_active_subscription(customer_id) if customer_id else None

        if active is not None:
            await self._entitlements.set_pro(user.id, customer_id, active["id"], subscription_start(active))
            new_tier = Tier.PRO.value
        else:
            await self._entitlements.set_free(user.id)
            if customer_id and customer_id != user.stripe_customer_id:
                await self._entitlements.touch_customer_id(user.id, customer_id)
            new_tier = Tier.FREE.value

        report = ReconciliationReport(
            email=user.email,
            previous_tier=previous_tier,
            new_tier=new_tier,
            has_active_subscription=active is not None,
            stripe_customer_id=customer_id,
            subscription_id=active["id"] if active is not None else None,
        )
        log = logger.warning if previous_tier != new_tier else logger.info
        log(
            "Reconciled user %s: %s -> %s (customer=%s subscription=%s)",
            user.id,
            previous_tier,
            new_tier,
            customer_id,
            report.subscription_id,
        )
        return report

    async def integrity_report(self, limit: int = 100) -> list[dict[str, object]]:
        """List pro users that have no subscription id."""
        rows = await self._entitlements.find_integrity_violations(limit=limit)
        if rows:
            logger.error("Entitlement integrity audit found %d pro users without a subscription", len(rows))
        return [
            {
                "user_id": row.id,
                "email": row.email,
                "tier": row.tier,
                "stripe_customer_id": row.stripe_customer_id,
                "updated_at": row.updated_at,
            }
            for row in rows
        ]
