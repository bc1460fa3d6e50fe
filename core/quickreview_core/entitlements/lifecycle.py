"""Account lifecycle states.

An account moves ``ACTIVE -> PENDING_DELETION`` on self-service
deletion.  Signing in again within the retention window returns it to
``ACTIVE``.  Once the window has elapsed the account is ``PURGED``: the
retention sweep removes the row and everything it owns.  ``PURGED`` is
never persisted; a row that resolves to it is only waiting for the sweep.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class AccountState(str, Enum):
    """Lifecycle state of a user account."""

    ACTIVE = "active"
    PENDING_DELETION = "pending_deletion"
    PURGED = "purged"


def resolve_account_state(
    stored: str,
    deleted_at: datetime | None,
    now: datetime,
    retention: timedelta,
) -> AccountState:
    """Derive the effective state of an account at *now*.

    Parameters
    ----------
    stored:
        The ``account_state`` column value.
    deleted_at:
        When the account entered ``PENDING_DELETION``.
    now:
        Reference time (UTC-aware).
    retention:
        Grace period during which the account can be recovered.

    Returns
    -------
    AccountState
        ``PURGED`` when a pending deletion has outlived the grace period.
    """
    state = AccountState(stored)
    if state != AccountState.PENDING_DELETION:
        return state
    if deleted_at is None or now - deleted_at >= retention:
        return AccountState.PURGED
    return AccountState.PENDING_DELETION
