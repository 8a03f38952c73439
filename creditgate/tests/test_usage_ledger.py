"""
Tests for the usage ledger.
"""
from datetime import timedelta

from creditgate.core.metrics import usage_ledger_failures_total
from creditgate.features.usage.service import UsageLedger


def test_record_and_list(ledger, now):
    ledger.record("tenant-a", "generation", 1, metadata={"model": "small"}, occurred_at=now)
    ledger.record("tenant-a", "export", 3, occurred_at=now + timedelta(minutes=1))
    ledger.record("tenant-b", "generation", 2, occurred_at=now)

    events = ledger.list_events("tenant-a")

    assert [e.action for e in events] == ["generation", "export"]
    assert events[0].metadata == {"model": "small"}
    assert events[0].occurred_at == now
    assert ledger.total_credits_used("tenant-a") == 4


def test_filters_by_action_and_window(ledger, now):
    ledger.record("tenant-a", "generation", 1, occurred_at=now - timedelta(days=2))
    ledger.record("tenant-a", "generation", 1, occurred_at=now)
    ledger.record("tenant-a", "export", 5, occurred_at=now)

    assert len(ledger.list_events("tenant-a", action="generation")) == 2
    assert len(ledger.list_events("tenant-a", start_time=now - timedelta(hours=1))) == 2
    assert len(ledger.list_events("tenant-a", end_time=now - timedelta(days=1))) == 1
    assert ledger.total_credits_used("tenant-a", start_time=now - timedelta(hours=1)) == 6
    assert ledger.total_credits_used("nobody") == 0


def test_async_records_land_after_flush(now):
    # One worker: the in-memory test database shares a single connection
    ledger = UsageLedger(asynchronous=True, max_workers=1)
    try:
        futures = [ledger.record_async("tenant-a", "generation", 1, occurred_at=now) for _ in range(3)]

        assert all(f is not None for f in futures)
        assert ledger.flush(timeout=5) is True
        assert ledger.total_credits_used("tenant-a") == 3
    finally:
        ledger.shutdown()


def test_sync_mode_failure_is_logged_not_raised(ledger, monkeypatch, caplog):
    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger, "record", boom)

    assert ledger.record_async("tenant-a", "generation", 1) is None
    assert usage_ledger_failures_total.value() == 1
    assert "failed to record usage event" in caplog.text


def test_async_failure_is_counted(monkeypatch):
    ledger = UsageLedger(asynchronous=True, max_workers=1)

    def boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(ledger, "record", boom)
    try:
        future = ledger.record_async("tenant-a", "generation", 1)
        assert future.result(timeout=5) is None
        assert usage_ledger_failures_total.value() == 1
    finally:
        ledger.shutdown()


def test_flush_with_nothing_pending(ledger):
    assert ledger.flush(timeout=0) is True
