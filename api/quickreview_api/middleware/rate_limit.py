"""Per-IP rate-limit guards for public and sign-in endpoints.

Limits are enforced by :class:`FixedWindowRateLimiter` instances held in
the dependency layer.  A guard is attached to a route as a dependency::

    @router.get("/lookup-business", dependencies=[Depends(rate_limited("lookup", "..."))])

Denied requests raise :class:`RateLimitExceededError`, which the handler
registered in ``main.py`` turns into a 429 with ``Retry-After`` and
``X-RateLimit-*`` headers.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable

from quickreview_core.metering.rate_limiter import RateLimitDecision
from starlette.requests import Request
from starlette.responses import JSONResponse

from quickreview_api.dependencies import LimitersDep

logger = logging.getLogger(__name__)


def client_ip(request: Request) -> str:
    """Return the caller's address as seen behind the edge proxy.

    ``X-Real-IP`` wins, then the first ``X-Forwarded-For`` hop, then the
    socket peer.
    """
    real_ip = request.headers.get("x-real-ip", "").strip()
    if real_ip:
        return real_ip
    forwarded = request.headers.get("x-forwarded-for", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


class RateLimitExceededError(Exception):
    """Raised by a guard when the caller's window is exhausted."""

    def __init__(self, message: str, decision: RateLimitDecision) -> None:
        super().__init__(message)
        self.message = message
        self.decision = decision


def rate_limited(limiter_name: str, message: str) -> Callable[..., Awaitable[None]]:
    """Return a dependency that charges one attempt to the caller's IP.

    Parameters
    ----------
    limiter_name:
        Attribute of :class:`~quickreview_api.dependencies.RateLimiters`
        naming the limiter to charge (``"signin"`` or ``"lookup"``).
    message:
        User-facing ``detail`` of the 429 response.
    """

    async def _guard(request: Request, limiters: LimitersDep) -> None:
        limiter = getattr(limiters, limiter_name)
        actor = client_ip(request)
        decision = await limiter.hit(actor)
        if not decision.allowed:
            logger.warning(
                "Rate limit exceeded: limiter=%s ip=%s path=%s",
                limiter.namespace,
                actor,
                request.url.path,
            )
            raise RateLimitExceededError(message, decision)

    return _guard


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceededError) -> JSONResponse:
    """Render a 429 with the standard rate-limit headers."""
    retry_after = max(int(exc.decision.retry_after), 1)
    return JSONResponse(
        status_code=429,
        content={"detail": exc.message, "retry_after": retry_after},
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(exc.decision.limit),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(retry_after),
        },
    )
