"""
creditgate/features/entitlements/rollover.py

Billing-period rollover resolution.

Pure: same inputs give the same decision, nothing is read or written.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Union

from creditgate.features.plans.catalog import ceiling_for, period_length
from creditgate.models.entitlement import PlanId


class RolloverAction(str, Enum):
    NONE = "none"
    RESET = "reset"
    BACKFILL = "backfill"


@dataclass(frozen=True)
class RolloverDecision:
    action: RolloverAction
    credits_remaining: int
    current_period_end: datetime

    @property
    def changed(self) -> bool:
        return self.action != RolloverAction.NONE


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize to UTC; naive datetimes are taken to be UTC already."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_rollover(
    now: datetime,
    current_period_end: Optional[datetime],
    plan: Union[PlanId, str],
    credits_remaining: int,
) -> RolloverDecision:
    """
    Decide whether a tenant's billing period has lapsed.

    A lapsed period resets the balance to the plan ceiling and starts one
    new period from `now`, however long the tenant was away. A legacy row
    without a period end gets one period from `now` and keeps its balance.
    """
    now = ensure_utc(now)
    period_end = ensure_utc(current_period_end)

    if period_end is None:
        return RolloverDecision(
            action=RolloverAction.BACKFILL,
            credits_remaining=credits_remaining,
            current_period_end=now + period_length(),
        )

    if now < period_end:
        return RolloverDecision(
            action=RolloverAction.NONE,
            credits_remaining=credits_remaining,
            current_period_end=period_end,
        )

    return RolloverDecision(
        action=RolloverAction.RESET,
        credits_remaining=ceiling_for(plan),
        current_period_end=now + period_length(),
    )
