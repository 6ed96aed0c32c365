"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults
- Test database support (SQLite in-memory)
- Table definitions for the entitlement store
"""
from typing import Optional, Generator
from contextlib import contextmanager
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, UniqueConstraint, text
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.sql import func

from backend.core.config import settings


logger = logging.getLogger(__name__)

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
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str) -> Engine:
    """Create an engine with pooling suited to the backend."""
    if url.startswith("sqlite"):
        # In-memory SQLite must share one connection across sessions
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            return create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(url, connect_args={"check_same_thread": False})

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=False,  # Set to True for SQL query logging
    )


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

    _engine = build_engine(url)

    # Create session factory
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=_engine
    )

    return _engine


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
def session_scope(factory) -> Generator[Session, None, None]:
    """Commit on success, roll back on any error, always close."""
    session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables(engine: Optional[Engine] = None):
    """
    Create all tables defined in metadata.

    This is idempotent - tables that already exist will not be recreated.
    """
    metadata.create_all(bind=engine or get_engine())


def check_connection(engine: Optional[Engine] = None) -> bool:
    """
    Check if database connection is available.

    Returns:
        True if connection successful, False otherwise
    """
    try:
        eng = engine or get_engine()
        with eng.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning("Database connection check failed", extra={"error": str(e)})
        return False


# Accounts (creators and brands; never deleted)
accounts = Table(
    'accounts',
    metadata,
    Column('account_id', String(100), primary_key=True),
    Column('role', String(20), nullable=False),
    Column('tier', String(20), nullable=True),
    Column('phone_verified', Boolean, nullable=False, server_default='false'),
    Column('display_name', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('version', Integer, nullable=False, server_default='0'),
    Index('idx_accounts_role', 'role'),
)

# Quota counters: one row per (account, kind), superseded by a newer anchor
quota_counters = Table(
    'quota_counters',
    metadata,
    Column('account_id', String(100), nullable=False),
    Column('kind', String(100), nullable=False),
    Column('count', Integer, nullable=False, server_default='0'),
    Column('anchor', DateTime(timezone=True), nullable=False),
    Column('version', Integer, nullable=False, server_default='0'),
    UniqueConstraint('account_id', 'kind', name='uq_quota_counters_account_kind'),
    Index('idx_quota_counters_account', 'account_id'),
)

# Temporal grants (boosts, verification badges); retained for history
temporal_grants = Table(
    'temporal_grants',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('kind', String(50), nullable=False),
    Column('start', DateTime(timezone=True), nullable=False),
    Column('end', DateTime(timezone=True), nullable=False),
    Column('active', Boolean, nullable=False, server_default='true'),
    Column('payment_ref', String(200), nullable=True, index=True),
    Column('notified_expired_at', DateTime(timezone=True), nullable=True),
    Column('notified_expiring_at', DateTime(timezone=True), nullable=True),
    Column('revoked_at', DateTime(timezone=True), nullable=True),
    Column('revoked_reason', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('version', Integer, nullable=False, server_default='0'),
    # Composite index for is_in_effect lookups: (owner_id, kind, end)
    Index('idx_temporal_grants_owner_kind_end', 'owner_id', 'kind', 'end'),
    # Index for sweeps
    Index('idx_temporal_grants_end', 'end'),
)

# Verification cases: one per brand
verification_cases = Table(
    'verification_cases',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('owner_id', String(100), nullable=False),
    Column('review_status', String(30), nullable=False, server_default='none'),
    Column('rejection_reason', Text, nullable=True),
    Column('grant_id', String(100), nullable=True),
    Column('payment_ref', String(200), nullable=True),
    Column('submitted_at', DateTime(timezone=True), nullable=True),
    Column('reviewed_at', DateTime(timezone=True), nullable=True),
    Column('reviewed_by', String(100), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('version', Integer, nullable=False, server_default='0'),
    UniqueConstraint('owner_id', name='uq_verification_cases_owner'),
    Index('idx_verification_cases_status', 'review_status'),
)

# Agreements
agreements = Table(
    'agreements',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('creator_id', String(100), nullable=False, index=True),
    Column('brand_id', String(100), nullable=False, index=True),
    Column('template', String(50), nullable=False),
    Column('status', String(20), nullable=False, index=True),
    Column('price', Integer, nullable=False),
    Column('deliverables', JSON, nullable=False),
    Column('event_date', DateTime(timezone=True), nullable=False),
    Column('notes', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('confirmed_at', DateTime(timezone=True), nullable=True),
    Column('declined_at', DateTime(timezone=True), nullable=True),
    Column('decline_reason', Text, nullable=True),
    Column('completed_at', DateTime(timezone=True), nullable=True),
    Column('completed_by', String(100), nullable=True),
    Column('idempotency_key', String(200), nullable=True),
    Column('version', Integer, nullable=False, server_default='0'),
    UniqueConstraint('creator_id', 'idempotency_key', name='uq_agreements_creator_idempotency'),
    Index('idx_agreements_creator_created', 'creator_id', 'created_at'),
    Index('idx_agreements_brand_created', 'brand_id', 'created_at'),
)

# Calendar entries: exactly one per confirmed agreement
calendar_entries = Table(
    'calendar_entries',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('agreement_id', String(100), nullable=False),
    Column('parties', JSON, nullable=False),
    Column('event_date', DateTime(timezone=True), nullable=False),
    Column('title', Text, nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    UniqueConstraint('agreement_id', name='uq_calendar_entries_agreement'),
    Index('idx_calendar_entries_event_date', 'event_date'),
)

# Payment receipts (dedupe of "payment succeeded" signals)
payment_receipts = Table(
    'payment_receipts',
    metadata,
    Column('payment_ref', String(200), primary_key=True),
    Column('purpose', String(50), nullable=False),
    Column('owner_id', String(100), nullable=False, index=True),
    Column('received_at', DateTime(timezone=True), nullable=False),
)
