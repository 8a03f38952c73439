"""
creditgate/models/billing_event.py

Processor-neutral billing lifecycle events consumed by the reconciler.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict

from creditgate.models.entitlement import PlanId


class BillingEventType(str, Enum):
    CHECKOUT_COMPLETED = "checkout_completed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    UNKNOWN = "unknown"


# Invoice billing_reason that marks a cycle renewal
RENEWAL_BILLING_REASON = "subscription_cycle"


class BillingEvent(BaseModel):
    """
    BillingEvent is a normalized payment-processor notification.

    Events are keyed by the processor's identifiers (customer_ref,
    subscription_ref). tenant_id is only known on checkout, where it is
    carried in the checkout session metadata.
    """
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: BillingEventType
    raw_type: Optional[str] = None
    customer_ref: Optional[str] = None
    subscription_ref: Optional[str] = None
    tenant_id: Optional[str] = None
    plan: Optional[PlanId] = None
    processor_status: Optional[str] = None
    current_period_end: Optional[datetime] = None
    billing_reason: Optional[str] = None

    @property
    def is_renewal(self) -> bool:
        return self.billing_reason == RENEWAL_BILLING_REASON
