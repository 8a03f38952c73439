"""
Stripe billing provider implementation.

Implements BillingProvider protocol using Stripe.
Handles webhook signature verification and event parsing.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import stripe

from creditgate.core.config import settings
from creditgate.features.billing.provider import (
    BillingProviderError,
    BillingWebhookError,
)
from creditgate.features.plans.catalog import plan_for_price
from creditgate.models.billing_event import BillingEvent, BillingEventType
from creditgate.models.entitlement import PlanId


logger = logging.getLogger(__name__)

EVENT_TYPE_MAP = {
    "checkout.session.completed": BillingEventType.CHECKOUT_COMPLETED,
    "customer.subscription.updated": BillingEventType.SUBSCRIPTION_UPDATED,
    "customer.subscription.deleted": BillingEventType.SUBSCRIPTION_CANCELED,
    # invoice.paid is left unmapped: Stripe sends it alongside invoice.payment_succeeded
    "invoice.payment_succeeded": BillingEventType.INVOICE_PAID,
    "invoice.payment_failed": BillingEventType.INVOICE_PAYMENT_FAILED,
}

# Checkout session metadata keys that may carry our tenant id
TENANT_METADATA_KEYS = ("tenant_id", "supabase_user_id", "user_id")


def _from_timestamp(ts: Optional[int]) -> Optional[datetime]:
    if not ts:
        return None
    return datetime.fromtimestamp(int(ts), timezone.utc)


def _ref(value: Any) -> Optional[str]:
    """Stripe fields may be an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, dict):
        return value.get("id")
    return str(value)


def _coerce_plan(value: Optional[str]) -> Optional[PlanId]:
    if not value:
        return None
    try:
        return PlanId(value)
    except ValueError:
        return None


class StripeProvider:
    """Stripe implementation of BillingProvider protocol."""

    def __init__(self, secret_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        """
        Initialize Stripe provider.

        Args:
            secret_key: Stripe secret key (defaults to STRIPE_SECRET_KEY)
            webhook_secret: Stripe webhook secret (defaults to STRIPE_WEBHOOK_SECRET)
        """
        self.secret_key = secret_key or settings.STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or settings.STRIPE_WEBHOOK_SECRET

        if not self.secret_key:
            raise BillingProviderError("STRIPE_SECRET_KEY not configured")

        stripe.api_key = self.secret_key

    def handle_webhook(self, headers: Dict[str, str], body: bytes) -> BillingEvent:
        """Verify Stripe webhook signature and parse event."""
        if not self.webhook_secret:
            raise BillingWebhookError("STRIPE_WEBHOOK_SECRET not configured")

        sig_header = headers.get("stripe-signature") or headers.get("Stripe-Signature")
        if not sig_header:
            raise BillingWebhookError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(body, sig_header, self.webhook_secret)
            payload = json.loads(body)
        except ValueError as e:
            raise BillingWebhookError(f"Invalid payload: {e}")
        except stripe.SignatureVerificationError as e:
            raise BillingWebhookError(f"Invalid signature: {e}")

        return self.parse_event(payload)

    def parse_event(self, event: Dict[str, Any]) -> BillingEvent:
        """Parse a verified Stripe event payload into a normalized BillingEvent."""
        try:
            raw_type = event["type"]
            event_id = event["id"]
        except (KeyError, TypeError) as e:
            raise BillingWebhookError(f"Malformed event: {e}")

        data = (event.get("data") or {}).get("object") or {}
        event_type = EVENT_TYPE_MAP.get(raw_type, BillingEventType.UNKNOWN)
        metadata = data.get("metadata") or {}

        fields: Dict[str, Any] = {
            "event_id": event_id,
            "event_type": event_type,
            "raw_type": raw_type,
            "customer_ref": _ref(data.get("customer")),
        }

        if event_type == BillingEventType.CHECKOUT_COMPLETED:
            fields["subscription_ref"] = _ref(data.get("subscription"))
            fields["tenant_id"] = next(
                (metadata[key] for key in TENANT_METADATA_KEYS if metadata.get(key)),
                None,
            )
            fields["plan"] = _coerce_plan(metadata.get("plan"))

        elif event_type in (BillingEventType.SUBSCRIPTION_UPDATED, BillingEventType.SUBSCRIPTION_CANCELED):
            fields["subscription_ref"] = data.get("id")
            fields["processor_status"] = data.get("status")

            items = (data.get("items") or {}).get("data") or []
            first_item = items[0] if items else {}
            price_id = (first_item.get("price") or {}).get("id")
            fields["plan"] = plan_for_price(price_id) or _coerce_plan(metadata.get("plan"))

            # Newer API versions report the period on the subscription item
            fields["current_period_end"] = _from_timestamp(
                data.get("current_period_end") or first_item.get("current_period_end")
            )

        elif event_type in (BillingEventType.INVOICE_PAID, BillingEventType.INVOICE_PAYMENT_FAILED):
            fields["subscription_ref"] = _ref(data.get("subscription"))
            fields["billing_reason"] = data.get("billing_reason")

        else:
            logger.info("[billing] unhandled stripe event type", extra={"event_id": event_id, "event_type": raw_type})

        return BillingEvent(**fields)
