"""
creditgate/features/entitlements/store.py

Entitlement store: durable per-tenant plan, status and credit balance.

The conditional update is a compare-and-swap on credits_remaining
(UPDATE ... WHERE credits_remaining = :observed). Zero affected rows means a
concurrent writer changed the balance first; callers decide whether to retry.
No row is ever locked pessimistically.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Protocol

from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from creditgate.core.database import get_db_session, entitlements
from creditgate.core.errors import StoreError
from creditgate.features.entitlements.rollover import ensure_utc, utc_now
from creditgate.features.plans.catalog import DEFAULT_PLAN, ceiling_for, coerce_plan, period_length
from creditgate.models.entitlement import Entitlement, EntitlementStatus


logger = logging.getLogger(__name__)

MUTABLE_FIELDS = frozenset({
    "plan",
    "status",
    "credits_remaining",
    "current_period_end",
    "external_customer_ref",
    "external_subscription_ref",
})


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


class EntitlementStore(Protocol):
    """
    Protocol for entitlement stores.

    Implementations must provide point reads, an optimistic conditional
    update keyed on the observed credits_remaining, and unconditional updates.
    """

    def get(self, tenant_id: str) -> Optional[Entitlement]:
        ...

    def create_default(self, tenant_id: str, now: Optional[datetime] = None) -> Entitlement:
        ...

    def conditional_update(
        self,
        tenant_id: str,
        expected_credits_remaining: int,
        fields: Dict[str, Any],
        *,
        expected_period_end: Any = UNSET,
    ) -> Optional[Entitlement]:
        ...

    def unconditional_update(self, tenant_id: str, fields: Dict[str, Any]) -> Optional[Entitlement]:
        ...

    def find_by_customer_ref(self, customer_ref: str) -> Optional[Entitlement]:
        ...

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[Entitlement]:
        ...

    def upsert(self, tenant_id: str, fields: Dict[str, Any]) -> Entitlement:
        ...


def _row_to_entitlement(row) -> Entitlement:
    return Entitlement(
        tenant_id=row.tenant_id,
        plan=coerce_plan(row.plan),
        status=EntitlementStatus(row.status),
        credits_remaining=row.credits_remaining,
        current_period_end=ensure_utc(row.current_period_end),
        external_customer_ref=row.external_customer_ref,
        external_subscription_ref=row.external_subscription_ref,
    )


def _prepare_values(fields: Dict[str, Any]) -> Dict[str, Any]:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown entitlement fields: {sorted(unknown)}")

    values: Dict[str, Any] = {}
    for key, value in fields.items():
        if hasattr(value, "value") and key in ("plan", "status"):
            value = value.value
        if key == "current_period_end":
            value = ensure_utc(value)
        if key == "credits_remaining" and value is not None and value < 0:
            raise ValueError("credits_remaining must be non-negative")
        values[key] = value
    values["updated_at"] = utc_now()
    return values


class SqlEntitlementStore:
    """SQLAlchemy Core implementation of EntitlementStore."""

    def get(self, tenant_id: str) -> Optional[Entitlement]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(entitlements).where(entitlements.c.tenant_id == tenant_id)
                ).first()
                return _row_to_entitlement(row) if row else None
        except (SQLAlchemyError, ValueError) as e:
            raise StoreError(f"Failed to read entitlement for {tenant_id}: {e}") from e

    def find_by_customer_ref(self, customer_ref: str) -> Optional[Entitlement]:
        return self._find_by(entitlements.c.external_customer_ref, customer_ref)

    def find_by_subscription_ref(self, subscription_ref: str) -> Optional[Entitlement]:
        return self._find_by(entitlements.c.external_subscription_ref, subscription_ref)

    def _find_by(self, column, value: str) -> Optional[Entitlement]:
        try:
            with get_db_session() as session:
                row = session.execute(
                    select(entitlements)
                    .where(column == value)
                    .order_by(entitlements.c.updated_at.desc())
                    .limit(1)
                ).first()
                return _row_to_entitlement(row) if row else None
        except (SQLAlchemyError, ValueError) as e:
            raise StoreError(f"Failed to look up entitlement by {column.name}: {e}") from e

    def create_default(self, tenant_id: str, now: Optional[datetime] = None) -> Entitlement:
        """
        Create the free-plan row for a tenant seen for the first time.

        If a concurrent caller created it first, the existing row is returned.
        """
        now = ensure_utc(now) or utc_now()
        try:
            with get_db_session() as session:
                session.execute(
                    insert(entitlements).values(
                        tenant_id=tenant_id,
                        plan=DEFAULT_PLAN.value,
                        status=EntitlementStatus.ACTIVE.value,
                        credits_remaining=ceiling_for(DEFAULT_PLAN),
                        current_period_end=now + period_length(),
                    )
                )
        except IntegrityError:
            logger.info("[entitlements] default row already exists", extra={"tenant_id": tenant_id})
        except SQLAlchemyError as e:
            raise StoreError(f"Failed to create entitlement for {tenant_id}: {e}") from e

        created = self.get(tenant_id)
        if created is None:
            raise StoreError(f"Entitlement for {tenant_id} missing after create")
        return created

    def conditional_update(
        self,
        tenant_id: str,
        expected_credits_remaining: int,
        fields: Dict[str, Any],
        *,
        expected_period_end: Any = UNSET,
    ) -> Optional[Entitlement]:
        """
        Apply `fields` only if credits_remaining still equals the observed value.

        When expected_period_end is given, current_period_end must also still
        match (None matches a NULL period end).

        Returns:
            The updated snapshot, or None if zero rows were affected
        """
        try:
            values = _prepare_values(fields)
            stmt = (
                update(entitlements)
                .where(entitlements.c.tenant_id == tenant_id)
                .where(entitlements.c.credits_remaining == expected_credits_remaining)
            )
            if expected_period_end is not UNSET:
                if expected_period_end is None:
                    stmt = stmt.where(entitlements.c.current_period_end.is_(None))
                else:
                    stmt = stmt.where(entitlements.c.current_period_end == ensure_utc(expected_period_end))

            with get_db_session() as session:
                result = session.execute(stmt.values(**values))
                if result.rowcount == 0:
                    return None
                row = session.execute(
                    select(entitlements).where(entitlements.c.tenant_id == tenant_id)
                ).first()
                return _row_to_entitlement(row)
        except (SQLAlchemyError, ValueError) as e:
            raise StoreError(f"Conditional update failed for {tenant_id}: {e}") from e

    def unconditional_update(self, tenant_id: str, fields: Dict[str, Any]) -> Optional[Entitlement]:
        """Apply `fields` regardless of current values. Returns None if the tenant has no row."""
        try:
            values = _prepare_values(fields)
            with get_db_session() as session:
                result = session.execute(
                    update(entitlements)
                    .where(entitlements.c.tenant_id == tenant_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    return None
                row = session.execute(
                    select(entitlements).where(entitlements.c.tenant_id == tenant_id)
                ).first()
                return _row_to_entitlement(row)
        except (SQLAlchemyError, ValueError) as e:
            raise StoreError(f"Update failed for {tenant_id}: {e}") from e

    def upsert(self, tenant_id: str, fields: Dict[str, Any]) -> Entitlement:
        """
        Update the tenant's row, creating it first when absent.

        Missing fields on create fall back to the free-plan defaults.
        """
        updated = self.unconditional_update(tenant_id, fields)
        if updated is not None:
            return updated

        try:
            values = _prepare_values(fields)
            values.setdefault("plan", DEFAULT_PLAN.value)
            values.setdefault("status", EntitlementStatus.ACTIVE.value)
            values.setdefault("credits_remaining", ceiling_for(values["plan"]))
            values.setdefault("current_period_end", utc_now() + period_length())
            with get_db_session() as session:
                session.execute(insert(entitlements).values(tenant_id=tenant_id, **values))
        except IntegrityError:
            # Created concurrently; apply our fields on top
            updated = self.unconditional_update(tenant_id, fields)
            if updated is None:
                raise StoreError(f"Entitlement for {tenant_id} vanished during upsert")
            return updated
        except (SQLAlchemyError, ValueError) as e:
            raise StoreError(f"Upsert failed for {tenant_id}: {e}") from e

        created = self.get(tenant_id)
        if created is None:
            raise StoreError(f"Entitlement for {tenant_id} missing after upsert")
        return created
