"""
Billing API routes.

Minimal surface:
- POST /api/billing/webhook: Handle Stripe webhooks
"""
from fastapi import APIRouter, Request

from creditgate.core.errors import WebhookSignatureError
from creditgate.core.logging import log_event
from creditgate.features.billing.provider import BillingWebhookError
from creditgate.features.billing.service import process_webhook_event


router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook")
async def billing_webhook(request: Request):
    """
    Receive a Stripe webhook.

    Returns:
        {"received": true, "event_id": ..., "outcome": ...}

    Errors:
        400: Missing or invalid signature, malformed payload
        503: Billing disabled (Stripe not configured)
        500: Event could not be applied; Stripe will redeliver
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    try:
        receipt = process_webhook_event(headers, body)
    except BillingWebhookError as e:
        log_event("warning", "[billing] webhook rejected", error_code=WebhookSignatureError.code, extra={"reason": str(e)})
        raise WebhookSignatureError(str(e))

    return {"received": True, "event_id": receipt.event_id, "outcome": receipt.outcome}
