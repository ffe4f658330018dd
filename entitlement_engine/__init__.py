"""Billing entitlement synchronization engine.

Keeps a per-tenant entitlement record consistent with an at-least-once,
out-of-order stream of billing-provider events and answers access and quota
questions from that record alone.
"""

__version__ = "0.1.0"
