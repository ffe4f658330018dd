"""Billing event intake: signature check, normalization, reconciliation."""

from entitlement_engine.billing.normalizer import ACCEPTED_EVENT_TYPES, EventNormalizer
from entitlement_engine.billing.reconciler import Reconciler
from entitlement_engine.billing.signature import SIGNATURE_HEADER, verify_signature

__all__ = [
    "ACCEPTED_EVENT_TYPES",
    "EventNormalizer",
    "Reconciler",
    "SIGNATURE_HEADER",
    "verify_signature",
]
