# creditgate/conftest.py
import sys
import pytest
from datetime import datetime, timezone
from pathlib import Path

# Add project root to PYTHONPATH
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))


@pytest.fixture(scope="function", autouse=True)
def sqlite_db():
    """
    Fresh in-memory SQLite database per test.

    The engine uses a StaticPool, so every session shares one connection and
    the schema lives for the duration of the test.
    """
    from creditgate.core.database import init_engine, create_all_tables, dispose_engine

    dispose_engine()
    engine = init_engine("sqlite://")
    create_all_tables()
    yield engine
    dispose_engine()


@pytest.fixture(scope="function", autouse=True)
def reset_metrics():
    from creditgate.core.metrics import METRICS

    METRICS.reset()
    yield


@pytest.fixture(scope="function", autouse=True)
def reset_credit_service():
    from creditgate.features.credits.service import set_credit_service

    set_credit_service(None)
    yield
    set_credit_service(None)


@pytest.fixture
def now():
    """Fixed clock for deterministic rollover tests."""
    return datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def store():
    from creditgate.features.entitlements.store import SqlEntitlementStore

    return SqlEntitlementStore()


@pytest.fixture
def ledger():
    """Synchronous ledger so usage rows are visible as soon as deduct() returns."""
    from creditgate.features.usage.service import UsageLedger

    ledger = UsageLedger(asynchronous=False)
    yield ledger
    ledger.shutdown()


@pytest.fixture
def credit_service(store, ledger):
    from creditgate.features.credits.service import CreditService

    return CreditService(store=store, ledger=ledger)


@pytest.fixture
def pro_price(monkeypatch):
    from creditgate.core.config import settings

    monkeypatch.setattr(settings, "STRIPE_PRO_PRICE_ID", "price_pro_monthly")
    return "price_pro_monthly"


@pytest.fixture
def file_db(tmp_path):
    """File-backed SQLite database for tests that run sessions on several threads."""
    from creditgate.core.database import init_engine, create_all_tables, dispose_engine

    dispose_engine()
    engine = init_engine(f"sqlite:///{tmp_path / 'creditgate.db'}")
    create_all_tables()
    yield engine
    dispose_engine()
