"""
Database configuration and connection management.

This module provides:
- SQLAlchemy Core table definitions for users, payments and event logs
- An explicitly constructed ``Database`` handle (engine + session factory)
- A process-wide default handle for the FastAPI dependency ``get_database``
- Test database support (in-memory SQLite)
"""
from typing import Optional
from contextlib import contextmanager
import logging
import os

from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Index, ForeignKey, text
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


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL")
    if test_url:
        return test_url

    return settings.DATABASE_URL


def build_engine(url: str, echo: bool = False) -> Engine:
    """Create an engine with pooling suited to the backend.

    In-memory SQLite gets a single shared connection so every session sees
    the same database.
    """
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url or url.rstrip("/") in ("sqlite:", "sqlite+pysqlite:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, future=True, **kwargs)

    return create_engine(
        url,
        poolclass=QueuePool,
        pool_size=POOL_SIZE,
        max_overflow=MAX_OVERFLOW,
        pool_timeout=POOL_TIMEOUT,
        pool_recycle=POOL_RECYCLE,
        echo=echo,  # Set to True for SQL query logging
        future=True,
    )


class Database:
    """
    Persistence handle passed explicitly to services.

    Usage:
        db = Database("postgresql://...")
        with db.session() as session:
            session.execute(...)
    """

    def __init__(self, url: str, *, echo: bool = False):
        self.url = url
        self.engine = build_engine(url, echo=echo)
        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
        )

    @contextmanager
    def session(self):
        """Session scope: commit on success, rollback on error, always close."""
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create all tables defined in metadata (idempotent)."""
        metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """
        Drop all tables defined in metadata.

        WARNING: This is destructive! Only use in tests or development.
        """
        metadata.drop_all(bind=self.engine)

    def check_connection(self) -> bool:
        """Return True when a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as exc:
            logger.warning("Database connection check failed: %s", exc)
            return False

    def dispose(self) -> None:
        self.engine.dispose()


# Process-wide default handle used by the HTTP layer
_database: Optional[Database] = None


def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> Database:
    """
    Initialize the default Database handle.

    Args:
        database_url: Optional override for DATABASE_URL
        create_tables: Create missing tables after connecting
    """
    global _database

    url = database_url or get_database_url()
    if not url:
        raise ValueError(
            "DATABASE_URL is not configured. "
            "Set DATABASE_URL in environment or .env file."
        )

    _database = Database(url)
    if create_tables:
        _database.create_all()
    return _database


def get_database() -> Database:
    """FastAPI dependency returning the default Database handle.

    Override with ``app.dependency_overrides[get_database]`` in tests.
    """
    if _database is None:
        return init_database()
    return _database


def close_database() -> None:
    global _database
    if _database is not None:
        _database.dispose()
        _database = None


# Users table
users = Table(
    'users',
    metadata,
    Column('user_id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('email', String(320), nullable=False, unique=True),  # stored lower-case
    Column('password_hash', String(100), nullable=False),
    Column('role', String(20), nullable=False, server_default='user'),
    # Subscription
    Column('subscription_status', String(20), nullable=False, server_default='free_trial', index=True),
    Column('subscription_plan', String(20), nullable=True, index=True),  # NULL = no plan
    Column('subscription_start_date', DateTime(timezone=True), nullable=True),
    Column('subscription_end_date', DateTime(timezone=True), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True, unique=True),
    Column('stripe_subscription_id', String(100), nullable=True, index=True),
    # Entitlement
    Column('queries_used', Integer, nullable=False, server_default='0'),
    Column('queries_limit', Integer, nullable=False, server_default='5'),
    Column('lockout_until', DateTime(timezone=True), nullable=True),
    Column('decline_count', Integer, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Payment ledger
payments = Table(
    'payments',
    metadata,
    Column('payment_id', String(36), primary_key=True),
    Column('user_id', String(36), ForeignKey('users.user_id', ondelete='CASCADE'), nullable=False),
    Column('user_email', String(320), nullable=False),
    # External references; NULLs never collide under UNIQUE
    Column('stripe_payment_intent_id', String(100), nullable=True, unique=True),
    Column('stripe_invoice_id', String(100), nullable=True, unique=True),
    Column('stripe_event_id', String(100), nullable=True, unique=True),
    Column('amount', Integer, nullable=False),  # minor currency units
    Column('currency', String(10), nullable=False, server_default='usd'),
    Column('status', String(20), nullable=False, server_default='pending', index=True),
    Column('payment_type', String(20), nullable=False, server_default='subscription'),
    Column('subscription_plan', String(20), nullable=True),
    Column('purchase_date', DateTime(timezone=True), nullable=False),
    Column('metadata', JSON, nullable=True),
    Column('registration_key', String(64), nullable=True, unique=True),
    Column('registration_key_sent', Boolean, nullable=False, server_default='0'),
    Column('registration_key_sent_at', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Column('updated_at', DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False),
    # Composite index for payment history: (user_id, created_at)
    Index('idx_payments_user_created', 'user_id', 'created_at'),
    Index('idx_payments_purchase_date', 'purchase_date'),
)

# Event audit log (append-only)
event_logs = Table(
    'event_logs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('event_type', String(100), nullable=False),
    Column('source', String(30), nullable=False, server_default='system'),
    Column('status', String(20), nullable=False, server_default='pending'),
    Column('user_id', String(36), ForeignKey('users.user_id', ondelete='SET NULL'), nullable=True),
    Column('user_email', String(320), nullable=True),
    Column('stripe_event_id', String(100), nullable=True),
    Column('stripe_session_id', String(100), nullable=True),
    Column('stripe_customer_id', String(100), nullable=True),
    Column('action', String(100), nullable=True),
    Column('result', Text, nullable=True),
    Column('event_data', JSON, nullable=True),
    Column('error_message', Text, nullable=True),
    Column('error_detail', Text, nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_event_logs_type_created', 'event_type', 'created_at'),
    Index('idx_event_logs_user_created', 'user_id', 'created_at'),
    Index('idx_event_logs_stripe_event_id', 'stripe_event_id'),
)
