"""
creditgate/features/credits/service.py

Credit deduction gate.

Called by a billable-action handler before it does costly work:
- Lazily creates the tenant's free-plan entitlement
- Applies a due billing-period rollover
- Deducts with optimistic concurrency control, retrying once on contention
- Fails closed: any store error denies the action

Nothing raised inside the gate escapes deduct(); callers get a
DeductionResult whose reason tells "out of credits" apart from "try again".
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from creditgate.core.config import settings
from creditgate.core.errors import CreditCheckFailedError, InsufficientCreditsError, ValidationError
from creditgate.core.metrics import credit_cas_conflicts_total, credit_deductions_total, credit_rollovers_total
from creditgate.features.entitlements.rollover import ensure_utc, resolve_rollover, utc_now
from creditgate.features.entitlements.store import EntitlementStore, SqlEntitlementStore
from creditgate.features.plans.catalog import DEFAULT_PLAN, ceiling_for
from creditgate.features.usage.service import UsageLedger
from creditgate.models.entitlement import CreditBalance, EntitlementStatus


logger = logging.getLogger(__name__)

DEFAULT_ACTION = "generation"


class DeductionFailure(str, Enum):
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CREDIT_CHECK_FAILED = "credit_check_failed"


@dataclass(frozen=True)
class DeductionResult:
    ok: bool
    remaining: Optional[int] = None
    reason: Optional[DeductionFailure] = None

    @classmethod
    def success(cls, remaining: int) -> "DeductionResult":
        return cls(ok=True, remaining=remaining)

    @classmethod
    def insufficient(cls, remaining: int) -> "DeductionResult":
        return cls(ok=False, remaining=remaining, reason=DeductionFailure.INSUFFICIENT_CREDITS)

    @classmethod
    def check_failed(cls) -> "DeductionResult":
        return cls(ok=False, reason=DeductionFailure.CREDIT_CHECK_FAILED)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok}
        if self.remaining is not None:
            payload["remaining"] = self.remaining
        if self.reason is not None:
            payload["reason"] = self.reason.value
        return payload


class CreditService:
    """Request-time credit gate over an EntitlementStore."""

    def __init__(
        self,
        store: Optional[EntitlementStore] = None,
        ledger: Optional[UsageLedger] = None,
        *,
        max_retries: Optional[int] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store or SqlEntitlementStore()
        self.ledger = ledger or UsageLedger()
        self.max_retries = settings.DEDUCT_MAX_RETRIES if max_retries is None else max_retries
        self.clock = clock

    def deduct(
        self,
        tenant_id: str,
        amount: int = 1,
        action: str = DEFAULT_ACTION,
        *,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> DeductionResult:
        """
        Check and deduct credits for a tenant.

        Args:
            tenant_id: Tenant performing the billable action
            amount: Credits to deduct (>= 1); retries must reuse the same amount
            action: Label recorded in the usage ledger
            metadata: Optional usage metadata
            now: Fixed timestamp for deterministic rollover (defaults to clock())

        Returns:
            DeductionResult(ok=True, remaining) on success, otherwise
            ok=False with reason insufficient_credits (with remaining) or
            credit_check_failed

        Raises:
            ValidationError: If amount is not a positive integer
        """
        if isinstance(amount, bool) or not isinstance(amount, int) or amount < 1:
            raise ValidationError(f"amount must be a positive integer, got {amount!r}")

        attempts = 1 + max(0, self.max_retries)
        for attempt in range(1, attempts + 1):
            try:
                result = self._attempt(tenant_id, amount, ensure_utc(now) or self.clock())
            except Exception:
                logger.exception(
                    "[credits] credit check failed",
                    extra={"tenant_id": tenant_id, "amount": amount, "attempt": attempt},
                )
                credit_deductions_total.inc(labels={"outcome": DeductionFailure.CREDIT_CHECK_FAILED.value})
                return DeductionResult.check_failed()

            if result is None:
                credit_cas_conflicts_total.inc()
                logger.info(
                    "[credits] concurrent modification detected",
                    extra={"tenant_id": tenant_id, "amount": amount, "attempt": attempt},
                )
                continue

            if not result.ok:
                logger.info(
                    "[credits] insufficient credits",
                    extra={"tenant_id": tenant_id, "amount": amount, "remaining": result.remaining},
                )
                credit_deductions_total.inc(labels={"outcome": DeductionFailure.INSUFFICIENT_CREDITS.value})
                return result

            credit_deductions_total.inc(labels={"outcome": "ok"})
            self._record_usage(tenant_id, action, amount, metadata)
            return result

        logger.error(
            "[credits] concurrent modification persisted after retry, denying request",
            extra={"tenant_id": tenant_id, "amount": amount, "attempt": attempts},
        )
        credit_deductions_total.inc(labels={"outcome": DeductionFailure.CREDIT_CHECK_FAILED.value})
        return DeductionResult.check_failed()

    def _attempt(self, tenant_id: str, amount: int, now: datetime) -> Optional[DeductionResult]:
        """One read-compute-swap pass. Returns None when a concurrent writer won."""
        snapshot = self.store.get(tenant_id)
        if snapshot is None:
            logger.info("[credits] no entitlement found, creating default", extra={"tenant_id": tenant_id})
            snapshot = self.store.create_default(tenant_id, now=now)

        decision = resolve_rollover(now, snapshot.current_period_end, snapshot.plan, snapshot.credits_remaining)
        if decision.changed:
            # Guarded by the observed period end so concurrent resets land once
            rolled = self.store.conditional_update(
                tenant_id,
                snapshot.credits_remaining,
                {
                    "credits_remaining": decision.credits_remaining,
                    "current_period_end": decision.current_period_end,
                },
                expected_period_end=snapshot.current_period_end,
            )
            if rolled is None:
                return None
            credit_rollovers_total.inc(labels={"kind": decision.action.value})
            logger.info(
                "[credits] billing period rolled over",
                extra={"tenant_id": tenant_id, "plan": snapshot.plan.value, "remaining": rolled.credits_remaining},
            )
            snapshot = rolled

        if snapshot.credits_remaining < amount:
            return DeductionResult.insufficient(snapshot.credits_remaining)

        updated = self.store.conditional_update(
            tenant_id,
            snapshot.credits_remaining,
            {"credits_remaining": snapshot.credits_remaining - amount},
        )
        if updated is None:
            return None
        return DeductionResult.success(updated.credits_remaining)

    def _record_usage(self, tenant_id: str, action: str, amount: int, metadata: Optional[Dict[str, Any]]) -> None:
        try:
            self.ledger.record_async(tenant_id, action, amount, metadata=metadata)
        except Exception:
            # The deduction is already committed
            logger.warning("[credits] usage ledger submit failed", exc_info=True, extra={"tenant_id": tenant_id})

    def get_balance(self, tenant_id: str, now: Optional[datetime] = None) -> CreditBalance:
        """
        Effective balance for display, as if a due rollover had already run.

        Read-only: never creates the row or writes a rollover.

        Raises:
            StoreError: If the store cannot be read
        """
        now = ensure_utc(now) or self.clock()
        snapshot = self.store.get(tenant_id)
        if snapshot is None:
            return CreditBalance(
                tenant_id=tenant_id,
                plan=DEFAULT_PLAN,
                status=EntitlementStatus.ACTIVE,
                credits_remaining=ceiling_for(DEFAULT_PLAN),
                ceiling=ceiling_for(DEFAULT_PLAN),
                current_period_end=None,
            )

        decision = resolve_rollover(now, snapshot.current_period_end, snapshot.plan, snapshot.credits_remaining)
        return CreditBalance(
            tenant_id=tenant_id,
            plan=snapshot.plan,
            status=snapshot.status,
            credits_remaining=decision.credits_remaining,
            ceiling=ceiling_for(snapshot.plan),
            current_period_end=decision.current_period_end,
        )

    def require_credits(
        self,
        tenant_id: str,
        amount: int = 1,
        action: str = DEFAULT_ACTION,
        *,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """
        Deduct or raise, for handlers that prefer exceptions over results.

        Returns:
            Remaining credits after the deduction

        Raises:
            InsufficientCreditsError: Tenant is out of credits (carries remaining)
            CreditCheckFailedError: The check failed closed; the caller may retry
        """
        result = self.deduct(tenant_id, amount, action, metadata=metadata)
        if result.ok:
            return result.remaining
        if result.reason == DeductionFailure.INSUFFICIENT_CREDITS:
            raise InsufficientCreditsError(
                f"Not enough credits: {result.remaining} left",
                remaining=result.remaining,
            )
        raise CreditCheckFailedError("Unable to verify credits, please try again")


_service: Optional[CreditService] = None


def get_credit_service() -> CreditService:
    """Process-wide CreditService over the SQL store."""
    global _service
    if _service is None:
        _service = CreditService()
    return _service


def set_credit_service(service: Optional[CreditService]) -> None:
    """Swap the process-wide service (tests, custom stores)."""
    global _service
    _service = service


def deduct_credits(
    tenant_id: str,
    amount: int = 1,
    action: str = DEFAULT_ACTION,
    *,
    metadata: Optional[Dict[str, Any]] = None,
) -> DeductionResult:
    return get_credit_service().deduct(tenant_id, amount, action, metadata=metadata)
