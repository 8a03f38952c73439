"""
Credit balance API routes.

- GET /api/credits/{tenant_id}: Effective balance ("N of M left")
- GET /api/credits/{tenant_id}/usage: Usage events, optionally filtered
"""
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Query
from pydantic import BaseModel

from creditgate.features.credits.service import get_credit_service
from creditgate.models.entitlement import CreditBalance
from creditgate.models.usage_event import UsageEvent


router = APIRouter(prefix="/api/credits", tags=["credits"])


class UsageResponse(BaseModel):
    tenant_id: str
    total_credits_used: int  # across all actions in the window
    events: List[UsageEvent]


@router.get("/{tenant_id}", response_model=CreditBalance)
def get_balance(tenant_id: str):
    return get_credit_service().get_balance(tenant_id)


@router.get("/{tenant_id}/usage", response_model=UsageResponse)
def get_usage(
    tenant_id: str,
    action: Optional[str] = Query(None),
    since: Optional[datetime] = Query(None),
):
    ledger = get_credit_service().ledger
    return UsageResponse(
        tenant_id=tenant_id,
        total_credits_used=ledger.total_credits_used(tenant_id, start_time=since),
        events=ledger.list_events(tenant_id, action=action, start_time=since),
    )
