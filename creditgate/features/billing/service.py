"""
Billing webhook orchestration.

Coordinates:
- Provider selection (Stripe when configured)
- Signature verification and parsing (provider)
- Redelivery dedupe by processor event id
- Reconciliation of plan, status and credits

All Stripe-specific code is in stripe_provider.py.
"""
import hashlib
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Optional

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from creditgate.core.config import settings
from creditgate.core.database import get_db_session, billing_events
from creditgate.core.errors import BillingNotConfiguredError
from creditgate.features.billing.provider import BillingProvider, BillingProviderError
from creditgate.features.billing.reconciler import PlanTransitionReconciler, ReconcileOutcome
from creditgate.features.billing.stripe_provider import StripeProvider


logger = logging.getLogger(__name__)

DUPLICATE = "duplicate"


@dataclass(frozen=True)
class WebhookReceipt:
    event_id: str
    event_type: str
    outcome: str


def billing_enabled() -> bool:
    """Check if billing is enabled (Stripe configured)."""
    return bool(settings.STRIPE_SECRET_KEY)


def get_provider() -> Optional[BillingProvider]:
    """Get billing provider if billing is enabled."""
    if not billing_enabled():
        return None
    try:
        return StripeProvider()
    except BillingProviderError:
        return None


def _already_processed(event_id: str, event_type: str, payload_hash: str) -> bool:
    """
    Record the event as received. Returns True if it was already processed.

    Events that were received before but failed are processed again.
    """
    with get_db_session() as session:
        existing = session.execute(
            select(billing_events.c.processed).where(billing_events.c.event_id == event_id)
        ).first()
        if existing is not None:
            return bool(existing.processed)

    try:
        with get_db_session() as session:
            session.execute(
                insert(billing_events).values(
                    event_id=event_id,
                    event_type=event_type,
                    payload_hash=payload_hash,
                    processed=False,
                )
            )
    except IntegrityError:
        # Race: another worker is handling the same delivery
        return True
    return False


def _mark_processed(event_id: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.event_id == event_id)
            .values(processed=True, processed_at=datetime.now(timezone.utc), error=None)
        )


def _mark_failed(event_id: str, error: str) -> None:
    with get_db_session() as session:
        session.execute(
            update(billing_events)
            .where(billing_events.c.event_id == event_id)
            .values(error=error[:2000])
        )


def process_webhook_event(
    headers: Dict[str, str],
    body: bytes,
    *,
    provider: Optional[BillingProvider] = None,
    reconciler: Optional[PlanTransitionReconciler] = None,
) -> WebhookReceipt:
    """
    Process a billing webhook delivery (idempotent per event id).

    1. Verify signature and parse
    2. Skip if this event id was already processed
    3. Reconcile
    4. Mark as processed (or record the error and re-raise)

    Raises:
        BillingNotConfiguredError: If no provider is configured
        BillingWebhookError: If the signature or payload is invalid
        BillingEventError: If reconciliation failed
    """
    provider = provider or get_provider()
    if provider is None:
        raise BillingNotConfiguredError("Billing is not configured")

    event = provider.handle_webhook(headers, body)
    payload_hash = hashlib.sha256(body).hexdigest()

    if _already_processed(event.event_id, event.event_type.value, payload_hash):
        logger.info(
            "[billing] duplicate webhook delivery skipped",
            extra={"event_id": event.event_id, "event_type": event.event_type.value},
        )
        return WebhookReceipt(event.event_id, event.event_type.value, DUPLICATE)

    reconciler = reconciler or PlanTransitionReconciler()
    try:
        outcome: ReconcileOutcome = reconciler.reconcile(event)
    except Exception as e:
        _mark_failed(event.event_id, str(e))
        raise

    _mark_processed(event.event_id)
    return WebhookReceipt(event.event_id, event.event_type.value, outcome.value)
