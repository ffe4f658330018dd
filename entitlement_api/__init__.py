"""HTTP service for billing webhooks, entitlement checks, and usage metering."""

__version__ = "0.1.0"
