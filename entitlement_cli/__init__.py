"""Operator CLI for the entitlement store."""

__version__ = "0.1.0"
