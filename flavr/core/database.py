"""
Database engine, sessions and table definitions.

SQLAlchemy Core only: the entitlement store issues single-statement UPDATEs
and never loads ORM objects. PostgreSQL in deployment (pooled connections);
in-memory SQLite for tests, on one shared connection so the database
survives across sessions.
"""
import logging
import os
from contextlib import contextmanager
from typing import Iterator, List, Optional

from sqlalchemy import Boolean, Column, DateTime, Index, Integer, MetaData, String, Table, Text, create_engine, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.sql import func

from flavr.core.config import settings


logger = logging.getLogger(__name__)

metadata = MetaData()

POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_database_url() -> Optional[str]:
    """TEST_DATABASE_URL wins when set (test runs)."""
    return os.getenv("TEST_DATABASE_URL") or settings.DATABASE_URL


def init_engine(database_url: Optional[str] = None) -> Engine:
    global _engine, _SessionLocal

    url = database_url or get_database_url()
    if not url:
        raise ValueError("DATABASE_URL is not configured. Set DATABASE_URL in environment or .env file.")

    if url.startswith("sqlite"):
        _engine = create_engine(url, poolclass=StaticPool, connect_args={"check_same_thread": False})
    else:
        _engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=POOL_SIZE,
            max_overflow=MAX_OVERFLOW,
            pool_timeout=POOL_TIMEOUT,
            pool_recycle=POOL_RECYCLE,
            pool_pre_ping=True,
        )

    _SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_engine)
    return _engine


def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine


@contextmanager
def get_db_session() -> Iterator[Session]:
    """One unit of work: commit on exit, roll back and re-raise on error."""
    if _SessionLocal is None:
        init_engine()
    session = _SessionLocal()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_all_tables() -> None:
    """Idempotent; production schemas are managed by migrations instead."""
    metadata.create_all(bind=get_engine())


def drop_all_tables() -> None:
    """Destructive. Tests only."""
    metadata.drop_all(bind=get_engine())


def missing_tables(names: List[str]) -> List[str]:
    """Probe connectivity, then report which of names do not exist."""
    engine = get_engine()
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    inspector = inspect(engine)
    return [name for name in names if not inspector.has_table(name)]


# Entitlement state: one row per user, transitioned only by the reconciliation engine
entitlement_records = Table(
    'entitlement_records',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('has_entitlement', Boolean, nullable=False, server_default='false'),
    Column('status', String(20), nullable=False, server_default='none', index=True),
    Column('tier', String(20), nullable=False, server_default='free'),
    Column('provider', String(20), nullable=False, server_default='none'),
    Column('operator_override', Boolean, nullable=False, server_default='false'),
    # Provider linkage (only the authoritative provider's fields are populated)
    Column('stripe_customer_id', String(100), nullable=True),
    Column('stripe_subscription_id', String(100), nullable=True),
    Column('apple_original_transaction_id', String(100), nullable=True),
    Column('apple_receipt_blob', Text, nullable=True),
    Column('google_purchase_token', Text, nullable=True),
    Column('google_order_id', String(100), nullable=True),
    Column('google_product_id', String(100), nullable=True),
    # Provider-sourced dates
    Column('period_start', DateTime(timezone=True), nullable=True),
    Column('period_end', DateTime(timezone=True), nullable=True),
    Column('renew_at', DateTime(timezone=True), nullable=True),
    # Monthly units (-1 = unlimited)
    Column('recipe_limit', Integer, nullable=False),
    Column('image_limit', Integer, nullable=False),
    Column('recipes_used', Integer, nullable=False, server_default='0'),
    Column('images_used', Integer, nullable=False, server_default='0'),
    Column('usage_reset_at', DateTime(timezone=True), nullable=False),
    # Ordering guard for pushed events and sync bookkeeping
    Column('last_event_at', DateTime(timezone=True), nullable=True),
    Column('last_verified_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_entitlement_records_stripe_sub', 'stripe_subscription_id'),
    Index('idx_entitlement_records_stripe_customer', 'stripe_customer_id'),
    Index('idx_entitlement_records_apple_txn', 'apple_original_transaction_id'),
    Index('idx_entitlement_records_google_token', 'google_purchase_token'),
)

# Anonymous identities keyed by a client-supplied token
pseudo_identities = Table(
    'pseudo_identities',
    metadata,
    Column('pseudo_id', String(200), primary_key=True),
    Column('fingerprint', String(200), nullable=True),
    Column('recipes_used', Integer, nullable=False, server_default='0'),
    Column('recipe_limit', Integer, nullable=False),
    Column('usage_reset_at', DateTime(timezone=True), nullable=False),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Periodic sync runs
sync_job_runs = Table(
    'sync_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False, index=True),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
    Index('idx_sync_job_runs_started_at', 'started_at'),
)
