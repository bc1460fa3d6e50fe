"""Usage metering: counter stores, fixed-window rate limits, and billing periods."""

from quickreview_core.metering.counter_store import (
    CounterStore,
    CounterStoreError,
    InMemoryCounterStore,
    RedisCounterStore,
)
from quickreview_core.metering.rate_limiter import FailurePolicy, FixedWindowRateLimiter, RateLimitDecision

__all__ = [
    "CounterStore",
    "CounterStoreError",
    "FailurePolicy",
    "FixedWindowRateLimiter",
    "InMemoryCounterStore",
    "RateLimitDecision",
    "RedisCounterStore",
]
