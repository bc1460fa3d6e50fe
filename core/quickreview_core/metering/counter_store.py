"""Atomic counter stores backing rate limits, budgets, and pending scan counts.

Two implementations share the :class:`CounterStore` protocol:

* :class:`RedisCounterStore` -- shared across replicas via ``redis.asyncio``.
  This is the production store.
* :class:`InMemoryCounterStore` -- process-local dict guarded by an
  ``asyncio.Lock``.  Counters are per replica and reset on restart, so it
  is only suitable for local development and tests.

Every operation may raise :class:`CounterStoreError` on a transient
failure.  Callers choose fail-open or fail-closed; the stores never
swallow errors themselves.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class CounterStoreError(Exception):
    """Raised when the counter store cannot complete an operation."""


class CounterStore(Protocol):
    """Contract required of a counter backend."""

    async def increment(self, key: str) -> int:
        """Atomically add one to *key*, creating it at 1, and return the new value."""
        ...

    async def get(self, key: str) -> int | None:
        """Return the value of *key*, or ``None`` if absent."""
        ...

    async def get_and_delete(self, key: str) -> int | None:
        """Atomically read and remove *key*."""
        ...

    async def set_expiry(self, key: str, seconds: int) -> None:
        """Expire *key* after *seconds*."""
        ...

    async def delete(self, key: str) -> None:
        """Remove *key* if present."""
        ...

    async def ttl(self, key: str) -> float | None:
        """Seconds until *key* expires, or ``None`` if it is absent or never expires."""
        ...

    async def ping(self) -> bool:
        """Return ``True`` if the backend is reachable."""
        ...


# ---------------------------------------------------------------------------
# In-memory store
# ---------------------------------------------------------------------------


class InMemoryCounterStore:
    """Process-local counter store with monotonic-clock expiry.

    Parameters
    ----------
    clock:
        Callable returning seconds from a monotonic source.  Tests inject
        a fake clock to step through window expiry.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._values: dict[str, int] = {}
        self._expires_at: dict[str, float] = {}
        self._lock = asyncio.Lock()

    def _evict_if_expired(self, key: str) -> None:
        deadline = self._expires_at.get(key)
        if deadline is not None and self._clock() >= deadline:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    async def increment(self, key: str) -> int:
        async with self._lock:
            self._evict_if_expired(key)
            value = self._values.get(key, 0) + 1
            self._values[key] = value
            return value

    async def get(self, key: str) -> int | None:
        async with self._lock:
            self._evict_if_expired(key)
            return self._values.get(key)

    async def get_and_delete(self, key: str) -> int | None:
        async with self._lock:
            self._evict_if_expired(key)
            self._expires_at.pop(key, None)
            return self._values.pop(key, None)

    async def set_expiry(self, key: str, seconds: int) -> None:
        async with self._lock:
            if key in self._values:
                self._expires_at[key] = self._clock() + seconds

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._values.pop(key, None)
            self._expires_at.pop(key, None)

    async def ping(self) -> bool:
        return True

    async def ttl(self, key: str) -> float | None:
        """Seconds until *key* expires, or ``None`` if it has no expiry."""
        async with self._lock:
            self._evict_if_expired(key)
            deadline = self._expires_at.get(key)
            if deadline is None:
                return None
            return max(deadline - self._clock(), 0.0)

    async def close(self) -> None:
        async with self._lock:
            self._values.clear()
            self._expires_at.clear()


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------


class RedisCounterStore:
    """Counter store backed by Redis via ``redis.asyncio``.

    ``GETDEL`` requires Redis 6.2 or newer.

    Parameters
    ----------
    client:
        A ``redis.asyncio.Redis`` instance.  Ownership passes to the store;
        :meth:`close` closes it.
    """

    def __init__(self, client: Any) -> None:
        self._client = client

    @classmethod
    def from_url(cls, url: str, *, socket_timeout: float = 2.0) -> RedisCounterStore:
        """Build a store from a ``redis://`` URL."""
        import redis.asyncio as redis_asyncio

        client = redis_asyncio.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    async def _call(self, operation: str, key: str, coro: Any) -> Any:
        from redis.exceptions import RedisError

        try:
            return await coro
        except RedisError as exc:
            raise CounterStoreError(f"redis {operation} failed for key {key!r}: {exc}") from exc

    async def increment(self, key: str) -> int:
        return int(await self._call("INCR", key, self._client.incr(key)))

    async def get(self, key: str) -> int | None:
        raw = await self._call("GET", key, self._client.get(key))
        return None if raw is None else int(raw)

    async def get_and_delete(self, key: str) -> int | None:
        raw = await self._call("GETDEL", key, self._client.getdel(key))
        return None if raw is None else int(raw)

    async def set_expiry(self, key: str, seconds: int) -> None:
        await self._call("EXPIRE", key, self._client.expire(key, seconds))

    async def delete(self, key: str) -> None:
        await self._call("DEL", key, self._client.delete(key))

    async def ttl(self, key: str) -> float | None:
        # -2: no such key, -1: no expiry.
        remaining = int(await self._call("TTL", key, self._client.ttl(key)))
        return None if remaining < 0 else float(remaining)

    async def ping(self) -> bool:
        from redis.exceptions import RedisError

        try:
            return bool(await self._client.ping())
        except RedisError:
            logger.warning("Redis ping failed", exc_info=True)
            return False

    async def close(self) -> None:
        await self._client.aclose()
