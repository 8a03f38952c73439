"""
creditgate/features/plans/catalog.py

Static plan catalog.

The credit ceiling is a pure function of the plan. It is never stored on the
entitlement row, so changing a ceiling here takes effect at the next rollover
or plan transition.
"""

from datetime import timedelta
from typing import Dict, Optional, Union

from creditgate.core.config import settings
from creditgate.models.entitlement import PlanId


# Credits granted per billing period
PLAN_CEILINGS: Dict[PlanId, int] = {
    PlanId.FREE: 10,
    PlanId.PRO: 75,
}

DEFAULT_PLAN = PlanId.FREE


def period_length() -> timedelta:
    """Length of one billing period, applied from "now" on every reset."""
    return timedelta(days=settings.BILLING_PERIOD_DAYS)


def coerce_plan(plan: Union[PlanId, str]) -> PlanId:
    """
    Normalize a stored plan value.

    Raises:
        ValueError: If the value is not a known plan
    """
    if isinstance(plan, PlanId):
        return plan
    return PlanId(plan)


def ceiling_for(plan: Union[PlanId, str]) -> int:
    """Credits granted per period for a plan."""
    return PLAN_CEILINGS[coerce_plan(plan)]


def plan_for_price(price_id: Optional[str]) -> Optional[PlanId]:
    """Map a processor price ID to a plan, or None if the price is unknown."""
    if not price_id:
        return None
    price_map = {
        settings.STRIPE_PRO_PRICE_ID: PlanId.PRO,
    }
    return price_map.get(price_id)
