"""QuickReview API: billing, entitlements, and usage metering over HTTP."""

__version__ = "0.1.0"
