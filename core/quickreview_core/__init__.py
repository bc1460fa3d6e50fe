"""QuickReview core: entitlement state, usage metering, and counter primitives."""

__version__ = "0.1.0"
