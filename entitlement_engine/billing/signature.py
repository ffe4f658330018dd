"""Webhook signature verification.

Deliveries are signed by the provider with HMAC-SHA256 over
``"{timestamp}.{raw_body}"`` and sent in the ``Stripe-Signature`` header.
Verification must run on the raw bytes before anything parses the body.
"""

from __future__ import annotations

import logging

import stripe

from entitlement_engine.errors import SignatureInvalidError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "Stripe-Signature"
DEFAULT_TOLERANCE_SECONDS = 300


def verify_signature(
    payload: bytes,
    sig_header: str | None,
    secret: str | None,
    tolerance: int = DEFAULT_TOLERANCE_SECONDS,
) -> None:
    """Verify a webhook delivery or raise :class:`SignatureInvalidError`.

    Parameters
    ----------
    payload:
        The raw request body exactly as received.
    sig_header:
        Value of the ``Stripe-Signature`` header.
    secret:
        The endpoint's signing secret.  An unset secret fails closed.
    tolerance:
        Maximum age in seconds of the signed timestamp.
    """
    if not secret:
        logger.error("Webhook signing secret is not configured; rejecting delivery")
        raise SignatureInvalidError("Webhook signing secret is not configured")
    if not sig_header:
        raise SignatureInvalidError(f"Missing {SIGNATURE_HEADER} header")

    try:
        stripe.WebhookSignature.verify_header(
            payload.decode("utf-8"),
            sig_header,
            secret,
            tolerance=tolerance,
        )
    except UnicodeDecodeError as exc:
        raise SignatureInvalidError("Webhook body is not valid UTF-8") from exc
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise SignatureInvalidError("Invalid webhook signature") from exc
