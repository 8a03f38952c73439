"""
Tests for configuration validation and structured logging.
"""
import json
import logging

import pytest

from creditgate.core.config import Settings, validate_config
from creditgate.core.logging import JsonFormatter, latency_bucket_ms, request_id_ctx_var


def _settings(**overrides):
    values = {
        "DATABASE_URL": "sqlite://",
        "STRIPE_SECRET_KEY": "sk_test",
        "STRIPE_WEBHOOK_SECRET": "whsec_test",
        "STRIPE_PRO_PRICE_ID": "price_pro",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def test_defaults():
    cfg = Settings(_env_file=None)

    assert cfg.BILLING_PERIOD_DAYS == 30
    assert cfg.DEDUCT_MAX_RETRIES == 1
    assert cfg.LEDGER_ASYNC_ENABLED is True


def test_complete_config_is_valid():
    assert validate_config(strict=True, settings_obj=_settings()) is True


def test_strict_mode_raises_on_missing_keys():
    with pytest.raises(RuntimeError) as exc_info:
        validate_config(strict=True, settings_obj=_settings(STRIPE_WEBHOOK_SECRET=None))

    assert "STRIPE_WEBHOOK_SECRET" in str(exc_info.value)


def test_lenient_mode_only_warns(caplog):
    logger = logging.getLogger("creditgate.test")
    with caplog.at_level(logging.WARNING, logger="creditgate.test"):
        assert validate_config(strict=False, settings_obj=_settings(DATABASE_URL=None), logger=logger) is True

    assert "DATABASE_URL" in caplog.text


def test_period_length_must_be_positive():
    with pytest.raises(RuntimeError):
        validate_config(strict=True, settings_obj=_settings(BILLING_PERIOD_DAYS=0))


def test_json_formatter_includes_structured_fields():
    record = logging.LogRecord("creditgate", logging.INFO, __file__, 1, "[credits] deducted", None, None)
    record.tenant_id = "tenant-a"
    record.remaining = 4
    token = request_id_ctx_var.set("req-1")
    try:
        payload = json.loads(JsonFormatter().format(record))
    finally:
        request_id_ctx_var.reset(token)

    assert payload["message"] == "[credits] deducted"
    assert payload["tenant_id"] == "tenant-a"
    assert payload["remaining"] == 4


def test_latency_buckets():
    assert latency_bucket_ms(5) == "<10ms"
    assert latency_bucket_ms(10_000) == ">=1000ms"
