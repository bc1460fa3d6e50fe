"""Middleware components for the QuickReview API."""

from __future__ import annotations

from quickreview_api.middleware.auth import AuthenticationMiddleware
from quickreview_api.middleware.logging import RequestLoggingMiddleware
from quickreview_api.middleware.rate_limit import (
    RateLimitExceededError,
    client_ip,
    rate_limit_exceeded_handler,
    rate_limited,
)

__all__ = [
    "AuthenticationMiddleware",
    "RateLimitExceededError",
    "RequestLoggingMiddleware",
    "client_ip",
    "rate_limit_exceeded_handler",
    "rate_limited",
]
