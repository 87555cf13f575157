"""
Database configuration and connection management.

This module provides:
- SQLAlchemy Core table definitions for billing state
- An explicitly opened/closed Database object (engine + session factory)
- Pool defaults for server databases, StaticPool for in-memory SQLite
"""
from datetime import datetime, timezone
from typing import Optional
from contextlib import contextmanager
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, Text, Index
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the database."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class DatabaseNotOpenError(RuntimeError):
    """Raised when a session is requested before Database.open()."""


class Database:
    """Owns the engine and session factory for one process.

    Constructed with a URL, opened at startup, closed at shutdown:

        db = Database(settings.DATABASE_URL)
        db.open()
        with db.session() as session:
            session.execute(...)
        db.close()
    """

    def __init__(self, url: str, *, echo: bool = False):
        if not url:
            raise ValueError(
                "DATABASE_URL is not configured. "
                "Set DATABASE_URL in environment or .env file."
            )
        self.url = url
        self.echo = echo
        self._engine: Optional[Engine] = None
        self._session_factory = None

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise DatabaseNotOpenError("Database.open() has not been called")
        return self._engine

    def open(self) -> "Database":
        if self._engine is not None:
            return self

        if self.url.startswith("sqlite"):
            # One shared connection so in-memory databases survive across sessions/threads
            self._engine = create_engine(
                self.url,
                poolclass=StaticPool,
                connect_args={"check_same_thread": False},
                echo=self.echo,
            )
        else:
            self._engine = create_engine(
                self.url,
                poolclass=QueuePool,
                pool_size=POOL_SIZE,
                max_overflow=MAX_OVERFLOW,
                pool_timeout=POOL_TIMEOUT,
                pool_recycle=POOL_RECYCLE,
                echo=self.echo,
            )

        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self._engine,
        )
        return self

    def close(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
        self._engine = None
        self._session_factory = None

    @contextmanager
    def session(self):
        """
        Context manager for database sessions.

        Commits on success, rolls back on error, always closes.
        """
        if self._session_factory is None:
            raise DatabaseNotOpenError("Database.open() has not been called")
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """Create all tables (idempotent)."""
        metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        metadata.drop_all(bind=self.engine)

    def check_connection(self) -> bool:
        try:
            with self.engine.connect() as conn:
                conn.exec_driver_sql("SELECT 1")
            return True
        except Exception:
            return False


# ============================================================================
# Users / workspaces (mirror of the external directory, billing fields only)
# ============================================================================

app_users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(255), nullable=True),
    Column('display_name', String(255), nullable=True),
    Column('stripe_customer_id', String(255), nullable=True),
    Column('trial_start_date', DateTime(timezone=True), nullable=True),
    Column('trial_end_date', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_app_users_stripe_customer', 'stripe_customer_id'),
)

workspaces = Table(
    'workspaces',
    metadata,
    Column('id', String(100), primary_key=True),
    Column('owner_id', String(100), nullable=False),
    Column('name', String(255), nullable=False),
    Column('subscription_tier', String(20), nullable=False, server_default='FREE'),  # FREE | PRO
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_workspaces_owner', 'owner_id'),
)

# ============================================================================
# Billing
# ============================================================================

subscriptions = Table(
    'subscriptions',
    metadata,
    Column('id', String(64), primary_key=True),
    Column('user_id', String(100), nullable=False),
    Column('plan_id', String(100), nullable=False),
    Column('stripe_subscription_id', String(255), nullable=True, unique=True),
    Column('stripe_customer_id', String(255), nullable=True),
    Column('status', String(32), nullable=False),
    Column('current_period_start', DateTime(timezone=True), nullable=False),
    Column('current_period_end', DateTime(timezone=True), nullable=False),
    Column('cancel_at_period_end', Boolean, nullable=False, default=False),
    Column('canceled_at', DateTime(timezone=True), nullable=True),
    Column('trial_start', DateTime(timezone=True), nullable=True),
    Column('trial_end', DateTime(timezone=True), nullable=True),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    Index('idx_subscriptions_user_status', 'user_id', 'status'),
)

billing_events = Table(
    'billing_events',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('stripe_event_id', String(255), unique=True, nullable=False),
    Column('event_type', String(100), nullable=False),
    Column('payload_hash', String(64), nullable=False),
    Column('processed', Boolean, nullable=False, default=False),
    Column('processed_at', DateTime(timezone=True), nullable=True),
    Column('error', Text, nullable=True),
    Column('received_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_billing_events_type', 'event_type'),
)

billing_job_runs = Table(
    'billing_job_runs',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('job_name', String(100), nullable=False),
    Column('started_at', DateTime(timezone=True), nullable=False),
    Column('finished_at', DateTime(timezone=True), nullable=True),
    Column('status', String(20), nullable=False),
    Column('stats_json', Text, nullable=True),
)
