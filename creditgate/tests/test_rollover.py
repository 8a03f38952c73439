"""
Tests for billing-period rollover resolution.
"""
from datetime import datetime, timedelta, timezone

from creditgate.features.entitlements.rollover import RolloverAction, resolve_rollover
from creditgate.models.entitlement import PlanId


NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def test_period_not_lapsed_is_unchanged():
    end = NOW + timedelta(days=3)
    decision = resolve_rollover(NOW, end, PlanId.PRO, 12)

    assert decision.action == RolloverAction.NONE
    assert decision.changed is False
    assert decision.credits_remaining == 12
    assert decision.current_period_end == end


def test_period_end_boundary_counts_as_lapsed():
    decision = resolve_rollover(NOW, NOW, PlanId.FREE, 0)

    assert decision.action == RolloverAction.RESET
    assert decision.credits_remaining == 10
    assert decision.current_period_end == NOW + timedelta(days=30)


def test_lapsed_period_resets_to_plan_ceiling():
    decision = resolve_rollover(NOW, NOW - timedelta(seconds=1), PlanId.PRO, 3)

    assert decision.action == RolloverAction.RESET
    assert decision.credits_remaining == 75


def test_long_inactivity_gets_exactly_one_period_from_now():
    """Months away does not queue up skipped resets."""
    decision = resolve_rollover(NOW, NOW - timedelta(days=200), PlanId.FREE, 0)

    assert decision.current_period_end == NOW + timedelta(days=30)
    assert decision.credits_remaining == 10


def test_legacy_row_without_period_end_is_backfilled_not_reset():
    decision = resolve_rollover(NOW, None, PlanId.PRO, 4)

    assert decision.action == RolloverAction.BACKFILL
    assert decision.changed is True
    assert decision.credits_remaining == 4
    assert decision.current_period_end == NOW + timedelta(days=30)


def test_naive_datetimes_are_treated_as_utc():
    naive_now = datetime(2026, 3, 1, 12, 0)
    naive_end = datetime(2026, 3, 1, 11, 0)
    decision = resolve_rollover(naive_now, naive_end, "free", 1)

    assert decision.action == RolloverAction.RESET
    assert decision.current_period_end.tzinfo is not None


def test_period_length_follows_settings(monkeypatch):
    from creditgate.core.config import settings

    monkeypatch.setattr(settings, "BILLING_PERIOD_DAYS", 7)
    decision = resolve_rollover(NOW, NOW, PlanId.FREE, 0)

    assert decision.current_period_end == NOW + timedelta(days=7)


def test_aware_datetimes_are_converted_to_utc():
    plus_two = timezone(timedelta(hours=2))
    local_now = datetime(2026, 3, 1, 14, 0, tzinfo=plus_two)

    decision = resolve_rollover(local_now, None, PlanId.FREE, 5)

    assert decision.current_period_end.utcoffset() == timedelta(0)
    assert decision.current_period_end == NOW + timedelta(days=30)
