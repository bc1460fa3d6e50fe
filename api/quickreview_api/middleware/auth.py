"""Authentication middleware that validates session tokens.

Extracts ``Authorization: Bearer <token>`` from every request, validates
it via :class:`TokenManager`, and populates ``request.state`` with ``sub``
(user id), ``email`` and ``jti``.

Endpoints listed in ``_PUBLIC_PATHS`` or under ``_PUBLIC_PREFIXES``
bypass authentication.  Webhooks and cron endpoints carry their own
secrets; landing pages and the business lookup are public.
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from quickreview_api.security import TokenManager

logger = logging.getLogger(__name__)

_PUBLIC_PATHS: frozenset[str] = frozenset(
    {
        "/api/v1/health",
        "/api/v1/billing/webhooks",
        "/api/v1/auth/session",
        "/api/v1/lookup-business",
        "/openapi.json",
    }
)

# Prefixes that skip auth (docs assets, cron jobs, public landing pages).
_PUBLIC_PREFIXES: tuple[str, ...] = (
    "/docs",
    "/redoc",
    "/api/v1/cron/",
    "/api/v1/r/",
)


def _is_public_path(path: str) -> bool:
    """Return ``True`` if the path should bypass authentication."""
    if path in _PUBLIC_PATHS:
        return True
    return any(path.startswith(prefix) for prefix in _PUBLIC_PREFIXES)


class AuthenticationMiddleware(BaseHTTPMiddleware):
    """Starlette middleware that enforces Bearer token authentication.

    On each request the middleware:

    1. Checks whether the path is public and skips auth.
    2. Extracts the ``Authorization: Bearer <token>`` header.
    3. Validates the token via :class:`TokenManager`.
    4. Stores ``sub``, ``email`` and ``jti`` on ``request.state``.
    5. Returns a 401/403 JSON response on failure.
    """

    def __init__(self, app: Any, token_manager: TokenManager) -> None:
        super().__init__(app)
        self._token_manager = token_manager
        logger.info("AuthenticationMiddleware initialised")

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path

        if request.method == "OPTIONS" or _is_public_path(path):
            return await call_next(request)

        auth_header = request.headers.get("authorization")
        if not auth_header:
            return JSONResponse(
                status_code=401,
                content={"detail": "Missing Authorization header"},
            )

        parts = auth_header.split(None, 1)
        if len(parts) != 2 or parts[0].lower() != "bearer":
            return JSONResponse(
                status_code=401,
                content={"detail": "Authorization header must use Bearer scheme"},
            )

        try:
            claims = self._token_manager.validate_token(parts[1])
        except PermissionError as exc:
            error_msg = str(exc)
            # Expired tokens are 403 so clients know to re-authenticate
            # rather than treat the token as forged.
            if "expired" in error_msg.lower():
                return JSONResponse(
                    status_code=403,
                    content={"detail": "Token has expired"},
                )
            return JSONResponse(
                status_code=401,
                content={"detail": f"Invalid token: {error_msg}"},
            )

        request.state.sub = claims.sub
        request.state.email = claims.email
        request.state.jti = claims.jti

        return await call_next(request)
