"""Fixed-window rate limiting on top of a :class:`CounterStore`.

Each attempt increments ``<namespace>:<actor>``.  The increment that
creates the key (the one that observes exactly ``1``) is the only one that
sets the expiry, so every attempt in a window shares a single deadline.
Because the increment is atomic, only one concurrent caller can observe
``1``.  Denied attempts still count toward the window.

What happens when the store is unavailable is decided per limiter by
:class:`FailurePolicy`.  Nothing falls back implicitly.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from enum import Enum

from quickreview_core.metering.counter_store import CounterStore, CounterStoreError

logger = logging.getLogger(__name__)


class FailurePolicy(str, Enum):
    """Decision taken when the counter store errors."""

    FAIL_OPEN = "fail_open"
    FAIL_CLOSED = "fail_closed"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of a single :meth:`FixedWindowRateLimiter.hit`.

    Attributes
    ----------
    allowed:
        Whether the guarded action may proceed.
    count:
        Post-increment counter value (``0`` when the store failed).
    limit:
        Configured maximum per window.
    degraded:
        ``True`` when the decision came from the failure policy rather
        than from the counter.
    retry_after:
        Seconds the caller should wait before retrying (denials only).
    """

    allowed: bool
    count: int
    limit: int
    degraded: bool = False
    retry_after: int = 0


class FixedWindowRateLimiter:
    """Bound a named action to ``max_attempts`` per ``window_seconds`` per actor.

    Parameters
    ----------
    store:
        Shared counter backend.
    namespace:
        Key prefix naming the guarded action, e.g. ``auth_ratelimit``.
    max_attempts:
        Attempts allowed per window.
    window_seconds:
        Window length, anchored at the first attempt.
    policy:
        Decision taken when the store errors.
    budget_cap:
        Marks limiters that protect a paid third-party quota.  Store
        failures on these are logged at ERROR instead of WARNING.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        namespace: str,
        max_attempts: int,
        window_seconds: int,
        policy: FailurePolicy,
        budget_cap: bool = False,
    ) -> None:
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
        if window_seconds < 1:
            raise ValueError(f"window_seconds must be >= 1, got {window_seconds}")
        self._store = store
        self.namespace = namespace
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self.policy = policy
        self.budget_cap = budget_cap

    def key_for(self, actor: str) -> str:
        """Return the counter key for *actor*."""
        return f"{self.namespace}:{actor}"

    async def hit(self, actor: str) -> RateLimitDecision:
        """Record one attempt by *actor* and decide whether it is allowed."""
        key = self.key_for(actor)
        try:
            count = await self._store.increment(key)
        except CounterStoreError:
            return self._decide_on_failure(key, "increment")

        if count == 1:
            try:
                await self._store.set_expiry(key, self.window_seconds)
            except CounterStoreError:
                await self._discard_unexpiring_key(key)
                return self._decide_on_failure(key, "set_expiry")

        if count > self.max_attempts:
            log = logger.error if self.budget_cap else logger.info
            log(
                "Rate limit reached: key=%s count=%d limit=%d",
                key,
                count,
                self.max_attempts,
            )
            return RateLimitDecision(
                allowed=False,
                count=count,
                limit=self.max_attempts,
                retry_after=await self._seconds_left(key),
            )

        return RateLimitDecision(allowed=True, count=count, limit=self.max_attempts)

    async def reset(self, actor: str) -> None:
        """Clear *actor*'s window."""
        await self._store.delete(self.key_for(actor))

    async def _seconds_left(self, key: str) -> int:
        """Time until *key*'s window closes, falling back to a full window."""
        try:
            remaining = await self._store.ttl(key)
        except CounterStoreError:
            logger.warning("Could not read the remaining window for %s", key, exc_info=True)
            return self.window_seconds
        if remaining is None or remaining <= 0:
            return self.window_seconds
        return min(math.ceil(remaining), self.window_seconds)

    async def _discard_unexpiring_key(self, key: str) -> None:
        # A key without an expiry would never reset.
        try:
            await self._store.delete(key)
        except CounterStoreError:
            logger.error(
                "Failed to delete rate-limit key %s after expiry-set failure; key has no expiry",
                key,
                exc_info=True,
            )

    def _decide_on_failure(self, key: str, operation: str) -> RateLimitDecision:
        allowed = self.policy == FailurePolicy.FAIL_OPEN
        log = logger.error if self.budget_cap else logger.warning
        log(
            "Counter store %s failed for %s; %s (policy=%s)",
            operation,
            key,
            "allowing" if allowed else "denying",
            self.policy.value,
            exc_info=True,
        )
        return RateLimitDecision(
            allowed=allowed,
            count=0,
            limit=self.max_attempts,
            degraded=True,
            retry_after=0 if allowed else self.window_seconds,
        )
