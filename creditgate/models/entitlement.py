"""
creditgate/models/entitlement.py

Entitlement model for credit metering.

One entitlement per tenant: the plan, the billing status, the consumable
credit balance and the end of the current billing period.
"""

from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class PlanId(str, Enum):
    """Plan tiers. The credit ceiling for each lives in features/plans/catalog.py."""
    FREE = "free"
    PRO = "pro"


class EntitlementStatus(str, Enum):
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class Entitlement(BaseModel):
    """
    Entitlement is a snapshot of one tenant's row in the entitlement store.

    Snapshots are immutable; every mutation goes through the store and
    returns a fresh snapshot.

    current_period_end is None only for legacy rows created before periods
    were tracked.
    """
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    plan: PlanId = PlanId.FREE
    status: EntitlementStatus = EntitlementStatus.ACTIVE
    credits_remaining: int = Field(ge=0)
    current_period_end: Optional[datetime] = None
    external_customer_ref: Optional[str] = None
    external_subscription_ref: Optional[str] = None


class CreditBalance(BaseModel):
    """Read-only balance view returned to callers that display "N of M left"."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    plan: PlanId
    status: EntitlementStatus
    credits_remaining: int
    ceiling: int
    current_period_end: Optional[datetime] = None
