import threading
from typing import Any, Callable, Dict, List, Optional

from creditgate.core.errors import StoreError
from creditgate.features.entitlements.rollover import ensure_utc, utc_now
from creditgate.features.entitlements.store import UNSET, MUTABLE_FIELDS
from creditgate.features.plans.catalog import DEFAULT_PLAN, ceiling_for, coerce_plan, period_length
from creditgate.models.entitlement import Entitlement, EntitlementStatus


class InMemoryEntitlementStore:
    """Thread-safe dict-backed store with the same compare-and-swap contract."""

    def __init__(self):
        self._rows: Dict[str, Entitlement] = {}
        self._lock = threading.Lock()
        self.conditional_calls = 0

    def seed(self, entitlement: Entitlement) -> None:
        with self._lock:
            self._rows[entitlement.tenant_id] = entitlement

    def get(self, tenant_id):
        with self._lock:
            return self._rows.get(tenant_id)

    def find_by_customer_ref(self, customer_ref):
        with self._lock:
            return next((e for e in self._rows.values() if e.external_customer_ref == customer_ref), None)

    def find_by_subscription_ref(self, subscription_ref):
        with self._lock:
            return next((e for e in self._rows.values() if e.external_subscription_ref == subscription_ref), None)

    def create_default(self, tenant_id, now=None):
        now = ensure_utc(now) or utc_now()
        with self._lock:
            if tenant_id not in self._rows:
                self._rows[tenant_id] = Entitlement(
                    tenant_id=tenant_id,
                    plan=DEFAULT_PLAN,
                    status=EntitlementStatus.ACTIVE,
                    credits_remaining=ceiling_for(DEFAULT_PLAN),
                    current_period_end=now + period_length(),
                )
            return self._rows[tenant_id]

    def _apply(self, current: Entitlement, fields: Dict[str, Any]) -> Entitlement:
        assert set(fields) <= MUTABLE_FIELDS
        data = current.model_dump()
        data.update(fields)
        if "plan" in fields:
            data["plan"] = coerce_plan(fields["plan"])
        return Entitlement(**data)

    def conditional_update(self, tenant_id, expected_credits_remaining, fields, *, expected_period_end=UNSET):
        with self._lock:
            self.conditional_calls += 1
            current = self._rows.get(tenant_id)
            if current is None or current.credits_remaining != expected_credits_remaining:
                return None
            if expected_period_end is not UNSET and current.current_period_end != ensure_utc(expected_period_end):
                return None
            updated = self._apply(current, fields)
            self._rows[tenant_id] = updated
            return updated

    def unconditional_update(self, tenant_id, fields):
        with self._lock:
            current = self._rows.get(tenant_id)
            if current is None:
                return None
            updated = self._apply(current, fields)
            self._rows[tenant_id] = updated
            return updated

    def upsert(self, tenant_id, fields):
        self.create_default(tenant_id)
        return self.unconditional_update(tenant_id, fields)


class InterleavingStore(InMemoryEntitlementStore):
    """
    Runs `interference` right before selected conditional updates, simulating a
    concurrent writer that commits between our read and our swap.
    """

    def __init__(self, interference: Callable[["InterleavingStore", str], None], on_calls: Optional[List[int]] = None):
        super().__init__()
        self.interference = interference
        self.on_calls = on_calls
        self._interfering = False

    def conditional_update(self, tenant_id, expected_credits_remaining, fields, *, expected_period_end=UNSET):
        call_number = self.conditional_calls + 1
        if not self._interfering and (self.on_calls is None or call_number in self.on_calls):
            self._interfering = True
            try:
                self.interference(self, tenant_id)
            finally:
                self._interfering = False
        return super().conditional_update(
            tenant_id,
            expected_credits_remaining,
            fields,
            expected_period_end=expected_period_end,
        )


class BrokenStore(InMemoryEntitlementStore):
    """Store whose selected operations raise StoreError."""

    def __init__(self, failing: set):
        super().__init__()
        self.failing = failing

    def get(self, tenant_id):
        if "get" in self.failing:
            raise StoreError("connection reset")
        return super().get(tenant_id)

    def create_default(self, tenant_id, now=None):
        if "create_default" in self.failing:
            raise StoreError("insert failed")
        return super().create_default(tenant_id, now)

    def conditional_update(self, tenant_id, expected_credits_remaining, fields, *, expected_period_end=UNSET):
        if "conditional_update" in self.failing:
            raise StoreError("update failed")
        return super().conditional_update(
            tenant_id,
            expected_credits_remaining,
            fields,
            expected_period_end=expected_period_end,
        )

    def unconditional_update(self, tenant_id, fields):
        if "unconditional_update" in self.failing:
            raise StoreError("update failed")
        return super().unconditional_update(tenant_id, fields)


class RecordingLedger:
    """Ledger double that keeps usage in memory; optionally fails every write."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def record_async(self, tenant_id, action, credits_used, metadata=None, occurred_at=None):
        if self.fail:
            raise RuntimeError("ledger unavailable")
        with self._lock:
            self.records.append(
                {"tenant_id": tenant_id, "action": action, "credits_used": credits_used, "metadata": metadata}
            )
        return None
