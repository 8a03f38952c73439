"""
Tests for the SQL entitlement store.
"""
from datetime import timedelta, timezone

import pytest
from sqlalchemy import insert

from creditgate.core.database import get_db_session, entitlements
from creditgate.core.errors import StoreError
from creditgate.models.entitlement import EntitlementStatus, PlanId


def test_get_missing_tenant_returns_none(store):
    assert store.get("nobody") is None


def test_create_default_uses_free_plan_and_fresh_period(store, now):
    created = store.create_default("tenant-a", now=now)

    assert created.plan == PlanId.FREE
    assert created.status == EntitlementStatus.ACTIVE
    assert created.credits_remaining == 10
    assert created.current_period_end == now + timedelta(days=30)
    assert created.external_customer_ref is None


def test_create_default_twice_returns_existing_row(store, now):
    first = store.create_default("tenant-a", now=now)
    store.conditional_update("tenant-a", 10, {"credits_remaining": 4})

    second = store.create_default("tenant-a", now=now + timedelta(days=1))

    assert second.credits_remaining == 4
    assert second.current_period_end == first.current_period_end


def test_conditional_update_applies_when_balance_matches(store, now):
    store.create_default("tenant-a", now=now)

    updated = store.conditional_update("tenant-a", 10, {"credits_remaining": 9})

    assert updated is not None
    assert updated.credits_remaining == 9
    assert store.get("tenant-a").credits_remaining == 9


def test_conditional_update_reports_no_rows_when_balance_moved(store, now):
    store.create_default("tenant-a", now=now)
    store.conditional_update("tenant-a", 10, {"credits_remaining": 9})

    stale = store.conditional_update("tenant-a", 10, {"credits_remaining": 9})

    assert stale is None
    assert store.get("tenant-a").credits_remaining == 9


def test_conditional_update_can_also_guard_period_end(store, now):
    created = store.create_default("tenant-a", now=now)
    new_end = now + timedelta(days=60)

    wrong = store.conditional_update(
        "tenant-a", 10, {"current_period_end": new_end}, expected_period_end=now
    )
    right = store.conditional_update(
        "tenant-a", 10, {"current_period_end": new_end}, expected_period_end=created.current_period_end
    )

    assert wrong is None
    assert right is not None
    assert right.current_period_end == new_end


def test_conditional_update_guard_matches_null_period_end(store):
    with get_db_session() as session:
        session.execute(
            insert(entitlements).values(
                tenant_id="legacy", plan="free", status="active", credits_remaining=5, current_period_end=None
            )
        )

    updated = store.conditional_update("legacy", 5, {"credits_remaining": 4}, expected_period_end=None)

    assert updated is not None
    assert updated.current_period_end is None


def test_negative_balance_is_rejected(store, now):
    store.create_default("tenant-a", now=now)

    with pytest.raises(StoreError):
        store.conditional_update("tenant-a", 10, {"credits_remaining": -1})

    assert store.get("tenant-a").credits_remaining == 10


def test_unknown_field_is_rejected(store, now):
    store.create_default("tenant-a", now=now)

    with pytest.raises(StoreError):
        store.unconditional_update("tenant-a", {"ceiling": 100})


def test_unconditional_update_on_missing_tenant_returns_none(store):
    assert store.unconditional_update("nobody", {"status": EntitlementStatus.PAST_DUE}) is None


def test_find_by_processor_refs(store, now):
    store.upsert(
        "tenant-a",
        {"external_customer_ref": "cus_123", "external_subscription_ref": "sub_456"},
    )

    assert store.find_by_customer_ref("cus_123").tenant_id == "tenant-a"
    assert store.find_by_subscription_ref("sub_456").tenant_id == "tenant-a"
    assert store.find_by_customer_ref("cus_other") is None


def test_upsert_creates_with_defaults_then_updates(store):
    created = store.upsert("tenant-a", {"plan": PlanId.PRO})

    assert created.plan == PlanId.PRO
    assert created.credits_remaining == 75
    assert created.current_period_end is not None

    updated = store.upsert("tenant-a", {"status": EntitlementStatus.PAST_DUE})

    assert updated.plan == PlanId.PRO
    assert updated.status == EntitlementStatus.PAST_DUE
    assert updated.credits_remaining == 75


def test_offset_period_end_is_stored_as_the_same_instant(store, now):
    plus_two = timezone(timedelta(hours=2))
    local_end = (now + timedelta(days=30)).astimezone(plus_two)

    store.upsert("tenant-a", {"current_period_end": local_end})

    stored = store.get("tenant-a").current_period_end
    assert stored == now + timedelta(days=30)
    assert stored.utcoffset() == timedelta(0)
