"""Billing provider webhook intake.

The endpoint authenticates deliveries by their ``Stripe-Signature`` header
rather than the service token.  The signature is checked against the raw
body before anything parses it; a delivery that fails verification never
reaches the normalizer.
"""

from __future__ import annotations

import json
import logging
import time

from fastapi import APIRouter, Request

from entitlement_api.dependencies import SettingsDep, SyncDep
from entitlement_api.middleware.prometheus import record_webhook
from entitlement_api.schemas import WebhookResponse
from entitlement_engine.billing.signature import SIGNATURE_HEADER, verify_signature
from entitlement_engine.errors import StorageTransientError
from entitlement_engine.models.entitlement import ApplyOutcome

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhooks", response_model=WebhookResponse)
async def receive_billing_webhook(
    request: Request,
    settings: SettingsDep,
    sync: SyncDep,
) -> WebhookResponse:
    """Verify, normalize, and apply one billing event.

    Responds 200 for every outcome the provider should stop retrying
    (``applied``, ``stale``, ``duplicate``, ``rejected``, ``ignored``,
    ``dropped``), 401 for a bad signature, and 503 when storage failed and
    the delivery should be retried.
    """
    body = await request.body()
    verify_signature(
        body,
        request.headers.get(SIGNATURE_HEADER),
        settings.stripe_webhook_secret.get_secret_value(),
        tolerance=settings.stripe_signature_tolerance_seconds,
    )

    try:
        payload = json.loads(body)
    except ValueError:
        logger.warning("Signed webhook body is not valid JSON; dropping")
        record_webhook(None, ApplyOutcome.DROPPED.value)
        return WebhookResponse(status=ApplyOutcome.DROPPED.value)
    if not isinstance(payload, dict):
        logger.warning("Signed webhook body is not a JSON object; dropping")
        record_webhook(None, ApplyOutcome.DROPPED.value)
        return WebhookResponse(status=ApplyOutcome.DROPPED.value)

    start = time.monotonic()
    try:
        result = await sync.handle(payload)
    except StorageTransientError:
        event_type = payload.get("type")
        record_webhook(event_type if isinstance(event_type, str) else None, "transient_failure")
        raise

    record_webhook(result.event_type, result.outcome.value, time.monotonic() - start)
    return WebhookResponse(status=result.outcome.value, event_id=result.event_id, event_type=result.event_type)
