"""
Database configuration and connection management.

This module provides:
- SQLAlchemy engine and session management
- Connection pooling with sane defaults (StaticPool for in-memory SQLite)
- Test database support
- Table definitions for users, entities, permissions, plans and invite codes
"""
from typing import Optional
from contextlib import contextmanager
from datetime import datetime, timezone
from sqlalchemy import create_engine, MetaData, Table, Column, Integer, String, DateTime, Boolean, JSON, Text, Float, Index, ForeignKey, UniqueConstraint
from sqlalchemy.pool import QueuePool, StaticPool
from sqlalchemy.orm import sessionmaker
from sqlalchemy.sql import func, select
import logging
import os

from biensperience.core.config import settings


# SQLAlchemy metadata for table definitions
metadata = MetaData()

# Connection pooling configuration
POOL_SIZE = 10
MAX_OVERFLOW = 20
POOL_TIMEOUT = 30
POOL_RECYCLE = 3600  # Recycle connections after 1 hour
SQLITE_BUSY_TIMEOUT = 30  # Seconds a writer waits for the file lock

# Global engine and session factory
_engine = None
_SessionLocal = None

logger = logging.getLogger("biensperience")


def get_database_url() -> Optional[str]:
    """
    Get the database URL from settings or environment.

    For testing, use TEST_DATABASE_URL if available.
    """
    test_url = os.getenv("TEST_DATABASE_URL") or settings.TEST_DATABASE_URL
    if test_url:
        return test_url

    return settings.DATABASE_URL


def _is_in_memory_sqlite(url: str) -> bool:
    return url.startswith("sqlite") and (url.rstrip("/").endswith(":memory:") or url in {"sqlite://", "sqlite:///"})


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
        engine_kwargs = {"connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}}
        if _is_in_memory_sqlite(url):
            # One shared connection keeps an in-memory database alive across sessions
            engine_kwargs["poolclass"] = StaticPool
        _engine = create_engine(url, echo=False, **engine_kwargs)
    else:
        # Create engine with connection pooling
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
            session.commit()
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
        logger.warning(f"Database connection check failed: {e}")
        return False


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a stored timestamp to an aware UTC datetime.

    SQLite hands back naive datetimes; everything is written in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# Users
users = Table(
    'app_users',
    metadata,
    Column('user_id', String(100), primary_key=True),
    Column('email', String(320), nullable=True, unique=True),
    Column('name', Text, nullable=True),
    Column('role', String(50), nullable=False, server_default='regular_user'),
    Column('is_super_admin', Boolean, nullable=False, server_default='0'),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
    Index('idx_users_created_at', 'created_at'),
)

# Per-user feature flag grants
user_feature_flags = Table(
    'user_feature_flags',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('user_id', String(100), ForeignKey('app_users.user_id'), nullable=False, index=True),
    Column('flag', String(100), nullable=False),
    Column('enabled', Boolean, nullable=False, server_default='1'),
    Column('config', JSON, nullable=True),
    Column('granted_at', DateTime(timezone=True), nullable=False),
    Column('granted_by', String(100), nullable=True),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('reason', Text, nullable=True),
    UniqueConstraint('user_id', 'flag', name='uq_user_feature_flags_user_flag'),
)

# Destinations
destinations = Table(
    'destinations',
    metadata,
    Column('destination_id', String(100), primary_key=True),
    Column('name', Text, nullable=False),
    Column('country', Text, nullable=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Experiences
experiences = Table(
    'experiences',
    metadata,
    Column('experience_id', String(100), primary_key=True),
    Column('title', Text, nullable=False),
    Column('destination_id', String(100), nullable=True, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# Experience plan items (template rows copied into plan snapshots)
experience_plan_items = Table(
    'experience_plan_items',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('experience_id', String(100), ForeignKey('experiences.experience_id', ondelete='CASCADE'), nullable=False),
    Column('plan_item_id', String(100), nullable=False),
    Column('position', Integer, nullable=False),
    Column('text', Text, nullable=True),
    Column('url', Text, nullable=True),
    Column('cost', Float, nullable=True),
    Column('planning_days', Integer, nullable=True),
    Column('photo', String(100), nullable=True),
    Column('parent', String(100), nullable=True),
    UniqueConstraint('experience_id', 'plan_item_id', name='uq_experience_plan_items_item'),
    # Ordering pattern: (experience_id, position)
    Index('idx_experience_plan_items_position', 'experience_id', 'position'),
)

# Photos
photos = Table(
    'photos',
    metadata,
    Column('photo_id', String(100), primary_key=True),
    Column('url', Text, nullable=False),
    Column('caption', Text, nullable=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('created_at', DateTime(timezone=True), server_default=func.now(), nullable=False),
)

# User plans materialized from experiences
plans = Table(
    'plans',
    metadata,
    Column('plan_id', String(100), primary_key=True),
    Column('experience_id', String(100), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('plan', JSON, nullable=False),
    Column('created_at', DateTime(timezone=True), nullable=False),
    # One plan per (user, experience): drives idempotent redemption
    UniqueConstraint('user_id', 'experience_id', name='uq_plans_user_experience'),
)

# Permission entries for destinations, experiences, plans and photos
entity_permissions = Table(
    'entity_permissions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('entity_kind', String(50), nullable=False),
    Column('entity_id', String(100), nullable=False),
    Column('grantee_entity', String(50), nullable=False, server_default='user'),
    Column('grantee_id', String(100), nullable=False),
    Column('role', String(50), nullable=False),  # 'owner', 'collaborator', 'contributor'
    Column('granted_at', DateTime(timezone=True), nullable=False),
    Column('granted_by', String(100), nullable=True),
    UniqueConstraint('entity_kind', 'entity_id', 'grantee_entity', 'grantee_id', name='uq_entity_permissions_grantee'),
    Index('idx_entity_permissions_entity', 'entity_kind', 'entity_id'),
    Index('idx_entity_permissions_grantee', 'grantee_entity', 'grantee_id'),
)

# Invite codes
invite_codes = Table(
    'invite_codes',
    metadata,
    Column('invite_id', String(100), primary_key=True),
    Column('code', String(20), nullable=False, unique=True),
    Column('created_by', String(100), nullable=False, index=True),
    Column('email', String(320), nullable=True, index=True),
    Column('invitee_name', Text, nullable=True),
    Column('experiences', JSON, nullable=False),
    Column('destinations', JSON, nullable=False),
    Column('max_uses', Integer, nullable=False, server_default='1'),
    Column('uses_count', Integer, nullable=False, server_default='0'),
    Column('expires_at', DateTime(timezone=True), nullable=True),
    Column('active', Boolean, nullable=False, server_default='1'),
    Column('custom_message', Text, nullable=True),
    Column('invite_metadata', JSON, nullable=True),
    Column('mutual_follow', Boolean, nullable=False, server_default='0'),
    Column('permission_type', String(50), nullable=False, server_default='owner'),
    Column('created_at', DateTime(timezone=True), nullable=False),
    Column('updated_at', DateTime(timezone=True), nullable=False),
    # list pattern: (created_by, created_at)
    Index('idx_invite_codes_creator_created', 'created_by', 'created_at'),
)

# Redemptions: the set of users who have redeemed each invite
invite_redemptions = Table(
    'invite_redemptions',
    metadata,
    Column('id', Integer, primary_key=True, autoincrement=True),
    Column('invite_id', String(100), ForeignKey('invite_codes.invite_id'), nullable=False, index=True),
    Column('user_id', String(100), nullable=False, index=True),
    Column('redeemed_at', DateTime(timezone=True), nullable=False),
    UniqueConstraint('invite_id', 'user_id', name='uq_invite_redemptions_invite_user'),
)
