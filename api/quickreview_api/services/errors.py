"""Service-layer error taxonomy.

Services raise these instead of ``HTTPException`` so they stay usable
outside a request.  ``quickreview_api.main`` maps each class to its
HTTP status through ``status_code``.
"""

from __future__ import annotations

from typing import Any


class QuickReviewError(Exception):
    """Base class for expected service failures."""

    status_code: int = 500

    def __init__(self, message: str, **extra: Any) -> None:
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_content(self) -> dict[str, Any]:
        """Render the JSON body returned to the client."""
        return {"detail": self.message, **self.extra}


class VerificationError(QuickReviewError):
    """A signature or shared secret did not verify."""

    status_code = 400


class AuthorizationError(QuickReviewError):
    """The caller does not own the resource or is not an operator."""

    status_code = 403


class NotFoundError(QuickReviewError):
    status_code = 404


class BusinessRuleError(QuickReviewError):
    """The request is well-formed but a billing or quota rule forbids it."""

    status_code = 400


class QuotaExceededError(BusinessRuleError):
    """A tier limit has been reached."""

    status_code = 403


class ProcessorError(QuickReviewError):
    """The payment processor call failed."""

    status_code = 502


class ConfigurationError(QuickReviewError):
    """A required setting is missing at request time."""

    status_code = 500
