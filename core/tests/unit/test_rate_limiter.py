"""Tests for FixedWindowRateLimiter.

Covers:
- Allow/deny around max_attempts, denied attempts still counting
- Window anchored once, by the first attempt
- Concurrent first hits: exactly max allowed, expiry set exactly once
- FAIL_OPEN / FAIL_CLOSED behaviour on store errors
- Key deletion when setting the expiry fails
"""

from __future__ import annotations

import asyncio
import logging
from unittest.mock import AsyncMock

import pytest
from quickreview_core.metering.counter_store import CounterStoreError, InMemoryCounterStore
from quickreview_core.metering.rate_limiter import FailurePolicy, FixedWindowRateLimiter


class _FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class _ExpirySpyStore(InMemoryCounterStore):
    """In-memory store that counts set_expiry calls and yields between steps."""

    def __init__(self) -> None:
        super().__init__()
        self.expiry_calls: list[tuple[str, int]] = []

    async def increment(self, key: str) -> int:
        await asyncio.sleep(0)
        return await super().increment(key)

    async def set_expiry(self, key: str, seconds: int) -> None:
        self.expiry_calls.append((key, seconds))
        await super().set_expiry(key, seconds)


def _limiter(store, *, max_attempts=10, window=900, policy=FailurePolicy.FAIL_CLOSED, budget_cap=False):
    return FixedWindowRateLimiter(
        store,
        namespace="auth_ratelimit",
        max_attempts=max_attempts,
        window_seconds=window,
        policy=policy,
        budget_cap=budget_cap,
    )


# ---------------------------------------------------------------------------
# Counting
# ---------------------------------------------------------------------------


class TestWindowCounting:
    """Sequential behaviour within and across windows."""

    @pytest.mark.asyncio
    async def test_thirty_one_attempts_against_thirty_per_window(self):
        clock = _FakeClock()
        store = InMemoryCounterStore(clock=clock)
        limiter = _limiter(store, max_attempts=30, window=3600)

        decisions = [await limiter.hit("203.0.113.7") for _ in range(31)]

        assert [d.allowed for d in decisions] == [True] * 30 + [False]
        assert decisions[-1].count == 31
        assert decisions[-1].retry_after == 3600

        clock.now += 3600
        assert (await limiter.hit("203.0.113.7")).allowed

    @pytest.mark.asyncio
    async def test_window_resets_after_expiry(self):
        clock = _FakeClock()
        store = InMemoryCounterStore(clock=clock)
        limiter = _limiter(store, max_attempts=2, window=60)

        assert (await limiter.hit("a")).allowed
        assert (await limiter.hit("a")).allowed
        assert not (await limiter.hit("a")).allowed

        clock.now += 60
        decision = await limiter.hit("a")
        assert decision.allowed
        assert decision.count == 1

    @pytest.mark.asyncio
    async def test_later_hits_do_not_extend_window(self):
        clock = _FakeClock()
        store = InMemoryCounterStore(clock=clock)
        limiter = _limiter(store, max_attempts=5, window=100)

        await limiter.hit("a")
        clock.now += 50
        await limiter.hit("a")

        assert await store.ttl("auth_ratelimit:a") == pytest.approx(50.0)

    @pytest.mark.asyncio
    async def test_retry_after_is_time_left_in_window(self):
        clock = _FakeClock()
        store = InMemoryCounterStore(clock=clock)
        limiter = _limiter(store, max_attempts=1, window=900)

        await limiter.hit("a")
        clock.now += 600.5
        decision = await limiter.hit("a")

        assert not decision.allowed
        assert decision.retry_after == 300

    @pytest.mark.asyncio
    async def test_retry_after_falls_back_to_window_when_ttl_unreadable(self):
        store = AsyncMock()
        store.increment.return_value = 11
        store.ttl.side_effect = CounterStoreError("down")
        limiter = _limiter(store, max_attempts=10, window=900)

        decision = await limiter.hit("a")

        assert not decision.allowed
        assert decision.retry_after == 900

    @pytest.mark.asyncio
    async def test_actors_are_isolated(self):
        store = InMemoryCounterStore()
        limiter = _limiter(store, max_attempts=1)

        assert (await limiter.hit("a")).allowed
        assert not (await limiter.hit("a")).allowed
        assert (await limiter.hit("b")).allowed

    @pytest.mark.asyncio
    async def test_reset_clears_actor(self):
        store = InMemoryCounterStore()
        limiter = _limiter(store, max_attempts=1)
        await limiter.hit("a")
        await limiter.reset("a")

        assert (await limiter.hit("a")).allowed

    def test_invalid_parameters_rejected(self):
        store = InMemoryCounterStore()
        with pytest.raises(ValueError, match="max_attempts"):
            _limiter(store, max_attempts=0)
        with pytest.raises(ValueError, match="window_seconds"):
            _limiter(store, window=0)


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------


class TestConcurrentHits:
    """N concurrent first hits with max=M."""

    @pytest.mark.asyncio
    async def test_exactly_max_allowed_and_expiry_set_once(self):
        store = _ExpirySpyStore()
        limiter = _limiter(store, max_attempts=7, window=3600)

        decisions = await asyncio.gather(*(limiter.hit("198.51.100.1") for _ in range(50)))

        assert sum(1 for d in decisions if d.allowed) == 7
        assert sorted(d.count for d in decisions) == list(range(1, 51))
        assert store.expiry_calls == [("auth_ratelimit:198.51.100.1", 3600)]


# ---------------------------------------------------------------------------
# Failure policy
# ---------------------------------------------------------------------------


class TestFailurePolicy:
    """Store failures are resolved by the limiter's explicit policy."""

    @pytest.mark.asyncio
    async def test_increment_failure_fail_closed_denies(self):
        store = AsyncMock()
        store.increment.side_effect = CounterStoreError("down")
        limiter = _limiter(store, policy=FailurePolicy.FAIL_CLOSED)

        decision = await limiter.hit("a")

        assert not decision.allowed
        assert decision.degraded
        assert decision.retry_after == 900

    @pytest.mark.asyncio
    async def test_increment_failure_fail_open_allows(self):
        store = AsyncMock()
        store.increment.side_effect = CounterStoreError("down")
        limiter = _limiter(store, policy=FailurePolicy.FAIL_OPEN)

        decision = await limiter.hit("a")

        assert decision.allowed
        assert decision.degraded
        assert decision.count == 0

    @pytest.mark.asyncio
    async def test_expiry_failure_deletes_key_then_applies_policy(self):
        store = AsyncMock()
        store.increment.return_value = 1
        store.set_expiry.side_effect = CounterStoreError("timeout")
        limiter = _limiter(store, policy=FailurePolicy.FAIL_CLOSED)

        decision = await limiter.hit("a")

        store.delete.assert_awaited_once_with("auth_ratelimit:a")
        assert not decision.allowed
        assert decision.degraded

    @pytest.mark.asyncio
    async def test_expiry_not_set_after_first_hit(self):
        store = AsyncMock()
        store.increment.return_value = 2
        limiter = _limiter(store)

        decision = await limiter.hit("a")

        store.set_expiry.assert_not_awaited()
        assert decision.allowed

    @pytest.mark.asyncio
    async def test_budget_cap_failure_logs_error(self, caplog):
        store = AsyncMock()
        store.increment.side_effect = CounterStoreError("down")
        limiter = _limiter(store, policy=FailurePolicy.FAIL_OPEN, budget_cap=True)

        with caplog.at_level(logging.WARNING, logger="quickreview_core.metering.rate_limiter"):
            decision = await limiter.hit("yelp")

        assert decision.allowed
        assert any(r.levelno == logging.ERROR for r in caplog.records)

    @pytest.mark.asyncio
    async def test_plain_limiter_failure_logs_warning(self, caplog):
        store = AsyncMock()
        store.increment.side_effect = CounterStoreError("down")
        limiter = _limiter(store, policy=FailurePolicy.FAIL_OPEN)

        with caplog.at_level(logging.WARNING, logger="quickreview_core.metering.rate_limiter"):
            await limiter.hit("a")

        levels = {r.levelno for r in caplog.records}
        assert logging.WARNING in levels
        assert logging.ERROR not in levels
