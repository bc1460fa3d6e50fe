"""Session token issuance and verification.

Tokens are HMAC-SHA256 signed and have the form::

    qr1.<urlsafe-b64 JSON payload>.<hex signature>

The signature covers the JSON payload bytes.  Claims are ``sub`` (user
id), ``email``, ``iat``, ``exp`` and ``jti``.  Validation failures raise
``PermissionError`` so the authentication middleware can map them to
401/403 responses.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import logging
import time
import uuid

from pydantic import BaseModel, SecretStr, ValidationError

logger = logging.getLogger(__name__)

TOKEN_PREFIX = "qr1"


class TokenClaims(BaseModel):
    """Validated claims carried by a session token."""

    sub: str
    email: str
    iat: float
    exp: float
    jti: str


class TokenManager:
    """Issue and validate session tokens.

    Parameters
    ----------
    secret:
        HMAC signing key.
    ttl_seconds:
        Lifetime of issued tokens.
    """

    def __init__(self, secret: SecretStr, *, ttl_seconds: int = 86400) -> None:
        if not secret.get_secret_value():
            raise ValueError("Token secret must not be empty")
        self._key = secret.get_secret_value().encode("utf-8")
        self._ttl = ttl_seconds

    def _sign(self, payload: bytes) -> str:
        return hmac.new(self._key, payload, hashlib.sha256).hexdigest()

    def generate_token(self, sub: str, email: str) -> str:
        """Return a signed token for user *sub*."""
        now = time.time()
        claims = TokenClaims(sub=sub, email=email, iat=now, exp=now + self._ttl, jti=uuid.uuid4().hex)
        payload = claims.model_dump_json().encode("utf-8")
        encoded = base64.urlsafe_b64encode(payload).decode("ascii")
        return f"{TOKEN_PREFIX}.{encoded}.{self._sign(payload)}"

    def validate_token(self, token: str) -> TokenClaims:
        """Verify *token* and return its claims.

        Raises
        ------
        PermissionError
            If the token is malformed, its signature does not match, or it
            has expired.
        """
        parts = token.split(".")
        if len(parts) != 3 or parts[0] != TOKEN_PREFIX:
            raise PermissionError("Malformed token")

        try:
            payload = base64.urlsafe_b64decode(parts[1].encode("ascii"))
        except (binascii.Error, UnicodeEncodeError) as exc:
            raise PermissionError("Malformed token") from exc

        if not hmac.compare_digest(self._sign(payload), parts[2]):
            raise PermissionError("Invalid signature")

        try:
            claims = TokenClaims.model_validate(json.loads(payload))
        except (ValueError, ValidationError) as exc:
            raise PermissionError("Malformed token claims") from exc

        if claims.exp <= time.time():
            raise PermissionError("Token has expired")
        return claims
