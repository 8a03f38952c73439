"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (in-memory SQLite)
- Table definitions for entitlements, usage and billing events
"""
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, CheckConstraint, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, false
import logging
import os

from creditgate.core.config import settings


logger = logging.getLogger(__name__)

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30  # seconds

# Global engine and session factory
_engine = None
_SessionLocal = None


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _is_memory_sqlite(url: str) -> bool:
    if not url.startswith("sqlite"):
        return False
    return url.rstrip("/") == "sqlite:" or ":memory:" in url or "mode=memory" in url


def init_engine(database_url: Optional[str] = None):
    """
    Initialize the SQLAlchemy engine.

    Args:
        database_url: Optional override for DATABASE_URL
    """
    global _engine, _SessionLocal

    url = database_url or get_database_url()

    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    if _is_memory_sqlite(url):
        # Single shared connection so in-memory databases survive across sessions
        _engine = create_engine(
            url,
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
            echo=False,
        )
    elif url.startswith("sqlite"):
        # File databases get a connection per session; writers wait on the file lock
        _engine = create_engine(
            url,
            connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
            echo=False,
        )
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Dispose the current engine (tests switch databases between cases)."""
    global _engine, _SessionLocal
    if _engine is not None:
        _engine.dispose()
    _engine = None
    _SessionLocal = None


def get_engine():
    """Get the current SQLAlchemy engine."""
    global _engine
    if _engine is None:
        init_engine()
    return _engine


def get_session_factory():
    """Get the session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal


@contextmanager
def get_db_session():
    """
    Context manager for database sessions.

    Usage:
        with get_db_session() as session:
            session.execute(...)

    Commits on success, rolls back on any exception.
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables():
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    engine = get_engine()
    metadata.create_all(bind=engine)


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.exec_driver_sql("SELECT 1")
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# Entitlements: one row per tenant, the authoritative credit balance
entitlements = Table(
    'entitlements',
    metadata,
    Column('tenant_id', String(100), primary_key=True),
    Column('plan', String(50), nullable=False, server_default='free'),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('credits_remaining', Integer, nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=True),
    Column('external_customer_ref', String(255), nullable=True),
    Column('external_subscription_ref', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    CheckConstraint('credits_remaining >= 0', name='ck_entitlements_credits_non_negative'),
    # Billing events arrive keyed by processor identifiers
    Index('idx_entitlements_customer_ref', 'external_customer_ref'),
    Index('idx_entitlements_subscription_ref', 'external_subscription_ref'),
)

# Usage events: append-only audit of consumption
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('tenant_id', String(100), nullable=False),
    Column('action', String(100), nullable=False),
    Column('credits_used', Integer, nullable=False, server_default='1'),
    Column('metadata', JSON, nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    # Composite index for per-tenant audit queries: (tenant_id, occurred_at)
    Index('idx_usage_events_tenant_occurred', 'tenant_id', 'occurred_at'),
    Index('idx_usage_events_occurred_at', 'occurred_at'),
)

# Billing events (webhook redelivery dedupe)
billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_id', String(100), nullable=False),
    Column('event_type', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('payload_hash', String(64), nullable=False),  # SHA256 of raw body
    Column('processed', Boolean, nullable=False, server_default=false(), index=True),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    UniqueConstraint('event_id', name='uq_billing_events_event_id'),
    Index('idx_billing_events_received_at', 'received_at'),
)
