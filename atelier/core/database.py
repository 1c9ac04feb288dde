"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite file or TEST_DATABASE_URL)
- Table definitions for subscriptions, add-ons and usage events
"""
import logging
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Numeric, Text, Index, UniqueConstraint, select, true
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func
import os

from atelier.core.config import settings
from atelier.core.errors import StoreUnavailableError

logger = logging.getLogger("atelier")

# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour

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

    if _engine is not None:
        _engine.dispose()

    if url.startswith("sqlite"):
        # Request handlers run on a threadpool; sessions never share a connection.
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            connect_args={"check_same_thread": False, "timeout": POOL_TIMEOUT},
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
            pool_pre_ping=True,
            echo=False,  # Set to True for SQL query logging
        )

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
        bind=_engine
    )

    return _engine


def dispose_engine() -> None:
    """Close pooled connections and forget the engine (tests, shutdown)."""
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

    Commits on success, rolls back on any error. Connectivity failures
    surface as StoreUnavailableError so callers can retry with backoff.

    Usage:
        with get_db_session() as session:
            session.execute(...)
    """
    SessionLocal = get_session_factory()
    session = SessionLocal()
    try:
        yield session
        session.commit()
    except (OperationalError, InterfaceError) as exc:
        session.rollback()
        raise StoreUnavailableError(f"Store unavailable: {exc.__class__.__name__}") from exc
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


def drop_all_tables():
    """
    Drop all tables defined in metadata.

    WARNING: This is destructive! Only use in tests or development.
    """
    engine = get_engine()
    metadata.drop_all(bind=engine)


def reset_database():
    """
    Reset the database by dropping and recreating all tables.

    WARNING: This is destructive! Only use in tests.
    """
    drop_all_tables()
    create_all_tables()


def check_connection() -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        engine = get_engine()
        with engine.connect() as conn:
            conn.execute(select(1))
        return True
    except Exception as e:
        logger.warning("Database connection check failed: %s", e)
        return False


# One subscription row per user; every ledger and lifecycle mutation
# goes through this row under the per-user lock.
subscriptions = Table(
    'subscriptions',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('plan_type', String(50), nullable=False, server_default='free'),
    Column('status', String(50), nullable=False, server_default='active'),
    Column('tokens_limit', Integer, nullable=False),
    Column('tokens_used', Integer, nullable=False, server_default='0'),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('usage_since', DateTime(timezone=True), nullable=False),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Index for the rollover sweep: users whose period has ended
    Index('idx_subscriptions_period_end', 'current_period_end'),
    Index('idx_subscriptions_status', 'status'),
)

# Purchased add-on entitlements (extra brand profile slots)
entitlement_add_ons = Table(
    'entitlement_add_ons',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('resource_kind', String(50), nullable=False),
    Column('quantity', Integer, nullable=False),
    Column('unit_price', Numeric(10, 2), nullable=False),
    Column('active', Boolean, nullable=False, server_default=true()),
    Column('idempotency_key', String(255), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('cancelled_at', DateTime(timezone=True), nullable=True),
    UniqueConstraint('user_id', 'idempotency_key', name='uq_entitlement_add_ons_user_key'),
    # Composite index for effective cap queries: (user_id, resource_kind, active)
    Index('idx_entitlement_add_ons_user_kind_active', 'user_id', 'resource_kind', 'active'),
)

# Usage events: append-only log of every spend attempt and refund
usage_events = Table(
    'usage_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), nullable=False),
    Column('amount', Integer, nullable=False),
    Column('outcome', String(50), nullable=False),
    Column('reason', Text, nullable=True),
    Column('balance_after', Integer, nullable=True),
    Column('operation_id', Integer, nullable=True),
    Column('idempotency_key', String(255), nullable=True),
    Column('occurred_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('user_id', 'idempotency_key', name='uq_usage_events_user_key'),
    # Composite index for history and reconciliation: (user_id, occurred_at)
    Index('idx_usage_events_user_occurred', 'user_id', 'occurred_at'),
    Index('idx_usage_events_operation', 'operation_id'),
)
