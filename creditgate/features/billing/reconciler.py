"""
creditgate/features/billing/reconciler.py

Plan transition reconciler.

Applies payment-processor lifecycle events to entitlements:
- Checkout completed: hard reset to the new plan's full ceiling
- Subscription updated: upgrade adds the ceiling difference, downgrade caps
- Subscription canceled: back to the free plan
- Renewal invoice paid: fresh balance and one new period
- Invoice payment failed: past_due only (grace, balance kept)

Events for the same tenant are not ordered here; concurrent handlers are
last-write-wins. Store failures surface as BillingEventError so the
processor's redelivery retries the event.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Optional

from creditgate.core.errors import BillingEventError, StoreError
from creditgate.core.metrics import billing_events_total
from creditgate.features.entitlements.rollover import ensure_utc, utc_now
from creditgate.features.entitlements.store import EntitlementStore, SqlEntitlementStore
from creditgate.features.plans.catalog import ceiling_for, period_length
from creditgate.models.billing_event import BillingEvent, BillingEventType
from creditgate.models.entitlement import Entitlement, EntitlementStatus, PlanId


logger = logging.getLogger(__name__)

# Compare-and-swap attempts for balance-relative plan changes
PLAN_CHANGE_ATTEMPTS = 3

PROCESSOR_STATUS_MAP = {
    "active": EntitlementStatus.ACTIVE,
    "trialing": EntitlementStatus.ACTIVE,
    "past_due": EntitlementStatus.PAST_DUE,
    "unpaid": EntitlementStatus.PAST_DUE,
    "incomplete": EntitlementStatus.PAST_DUE,
    "canceled": EntitlementStatus.CANCELED,
    "incomplete_expired": EntitlementStatus.CANCELED,
}


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    IGNORED = "ignored"
    TENANT_NOT_FOUND = "tenant_not_found"


def map_processor_status(processor_status: Optional[str]) -> EntitlementStatus:
    """Map a processor subscription status onto our status enum."""
    status = PROCESSOR_STATUS_MAP.get((processor_status or "").lower())
    if status is None:
        logger.warning("[reconcile] unknown processor status", extra={"status": processor_status})
        return EntitlementStatus.CANCELED
    return status


def credits_after_plan_change(old_plan: PlanId, new_plan: PlanId, credits_remaining: int) -> int:
    """
    Balance after moving between plans mid-cycle.

    Upgrades keep unused credits and add the ceiling difference; downgrades
    cap the balance at the new ceiling; same-plan changes leave it alone.
    """
    old_ceiling = ceiling_for(old_plan)
    new_ceiling = ceiling_for(new_plan)
    if new_ceiling > old_ceiling:
        return credits_remaining + (new_ceiling - old_ceiling)
    if new_ceiling < old_ceiling:
        return min(credits_remaining, new_ceiling)
    return credits_remaining


class PlanTransitionReconciler:
    """Applies BillingEvents to the entitlement store."""

    def __init__(self, store: Optional[EntitlementStore] = None):
        self.store = store or SqlEntitlementStore()

    def reconcile(self, event: BillingEvent, now: Optional[datetime] = None) -> ReconcileOutcome:
        """
        Apply one billing event.

        Raises:
            BillingEventError: If the store failed; the event is unhandled
        """
        now = ensure_utc(now) or utc_now()
        handler = {
            BillingEventType.CHECKOUT_COMPLETED: self._checkout_completed,
            BillingEventType.SUBSCRIPTION_UPDATED: self._subscription_updated,
            BillingEventType.SUBSCRIPTION_CANCELED: self._subscription_canceled,
            BillingEventType.INVOICE_PAID: self._invoice_paid,
            BillingEventType.INVOICE_PAYMENT_FAILED: self._invoice_payment_failed,
        }.get(event.event_type)

        if handler is None:
            outcome = ReconcileOutcome.IGNORED
        else:
            try:
                outcome = handler(event, now)
            except StoreError as e:
                billing_events_total.inc(labels={"event_type": event.event_type.value, "outcome": "failed"})
                logger.error(
                    "[reconcile] failed to apply billing event",
                    exc_info=True,
                    extra={"event_id": event.event_id, "event_type": event.event_type.value},
                )
                raise BillingEventError(f"Failed to apply {event.event_type.value} ({event.event_id})") from e

        billing_events_total.inc(labels={"event_type": event.event_type.value, "outcome": outcome.value})
        logger.info(
            "[reconcile] billing event handled",
            extra={"event_id": event.event_id, "event_type": event.event_type.value, "outcome": outcome.value},
        )
        return outcome

    def _find_tenant(self, event: BillingEvent) -> Optional[Entitlement]:
        found = None
        if event.customer_ref:
            found = self.store.find_by_customer_ref(event.customer_ref)
        if found is None and event.subscription_ref:
            found = self.store.find_by_subscription_ref(event.subscription_ref)
        if found is None:
            logger.warning(
                "[reconcile] no tenant for billing event",
                extra={"event_id": event.event_id, "event_type": event.event_type.value},
            )
        return found

    def _checkout_completed(self, event: BillingEvent, now: datetime) -> ReconcileOutcome:
        if event.plan is None:
            logger.warning("[reconcile] checkout without plan", extra={"event_id": event.event_id})
            return ReconcileOutcome.IGNORED

        tenant_id = event.tenant_id
        if tenant_id is None:
            existing = self._find_tenant(event)
            if existing is None:
                return ReconcileOutcome.TENANT_NOT_FOUND
            tenant_id = existing.tenant_id

        fields = {
            "plan": event.plan,
            "status": EntitlementStatus.ACTIVE,
            "credits_remaining": ceiling_for(event.plan),
            "current_period_end": now + period_length(),
        }
        if event.customer_ref:
            fields["external_customer_ref"] = event.customer_ref
        if event.subscription_ref:
            fields["external_subscription_ref"] = event.subscription_ref

        self.store.upsert(tenant_id, fields)
        return ReconcileOutcome.APPLIED

    def _subscription_updated(self, event: BillingEvent, now: datetime) -> ReconcileOutcome:
        new_plan = event.plan
        if new_plan is None:
            logger.warning(
                "[reconcile] subscription price not mapped to a plan, using free",
                extra={"event_id": event.event_id},
            )
            new_plan = PlanId.FREE

        for _ in range(PLAN_CHANGE_ATTEMPTS):
            current = self._find_tenant(event)
            if current is None:
                return ReconcileOutcome.TENANT_NOT_FOUND

            fields = {
                "plan": new_plan,
                "status": map_processor_status(event.processor_status),
                "credits_remaining": credits_after_plan_change(current.plan, new_plan, current.credits_remaining),
            }
            if event.current_period_end is not None:
                fields["current_period_end"] = event.current_period_end
            if event.subscription_ref:
                fields["external_subscription_ref"] = event.subscription_ref

            # Guarded so a deduction racing this event is not overwritten
            updated = self.store.conditional_update(current.tenant_id, current.credits_remaining, fields)
            if updated is not None:
                if current.plan != new_plan:
                    logger.info(
                        "[reconcile] plan changed",
                        extra={
                            "tenant_id": current.tenant_id,
                            "plan": new_plan.value,
                            "remaining": updated.credits_remaining,
                        },
                    )
                return ReconcileOutcome.APPLIED

        raise StoreError(f"Balance kept changing while applying {event.event_id}")

    def _subscription_canceled(self, event: BillingEvent, now: datetime) -> ReconcileOutcome:
        current = self._find_tenant(event)
        if current is None:
            return ReconcileOutcome.TENANT_NOT_FOUND

        self.store.unconditional_update(
            current.tenant_id,
            {
                "plan": PlanId.FREE,
                "status": EntitlementStatus.CANCELED,
                "credits_remaining": ceiling_for(PlanId.FREE),
                "external_subscription_ref": None,
            },
        )
        return ReconcileOutcome.APPLIED

    def _invoice_paid(self, event: BillingEvent, now: datetime) -> ReconcileOutcome:
        if not event.is_renewal:
            return ReconcileOutcome.IGNORED

        current = self._find_tenant(event)
        if current is None:
            return ReconcileOutcome.TENANT_NOT_FOUND

        self.store.unconditional_update(
            current.tenant_id,
            {
                "credits_remaining": ceiling_for(current.plan),
                "current_period_end": now + period_length(),
            },
        )
        return ReconcileOutcome.APPLIED

    def _invoice_payment_failed(self, event: BillingEvent, now: datetime) -> ReconcileOutcome:
        current = self._find_tenant(event)
        if current is None:
            return ReconcileOutcome.TENANT_NOT_FOUND

        self.store.unconditional_update(current.tenant_id, {"status": EntitlementStatus.PAST_DUE})
        return ReconcileOutcome.APPLIED
