"""
Database session management for HashTracks.

Provides the SQLAlchemy engine and session factory. The engine is created
lazily on first use so importing the package never opens a connection.

Usage:
    # As a context manager (recommended for scripts)
    from hashtracks.db import get_session

    with get_session() as session:
        kennels = session.query(Kennel).all()
        session.add(new_kennel)
        # Commits automatically on exit, rolls back on exception
"""

from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from hashtracks.config import settings


def get_engine() -> Engine:
    """
    Create SQLAlchemy engine with connection pooling.

    The engine is configured with:
    - Connection pool for efficient reuse
    - Echo mode disabled (set LOG_LEVEL=DEBUG for SQL logging)
    - Pre-ping to verify connections before use (handles stale connections)
    """
    return create_engine(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_pre_ping=True,
        echo=settings.log_level == "DEBUG",
    )


_engine = None


def _get_engine() -> Engine:
    """Get or create the singleton engine instance."""
    global _engine
    if _engine is None:
        _engine = get_engine()
    return _engine


# Session factory; bound to the engine when a session is opened
SessionLocal = sessionmaker(autoflush=False)


@contextmanager
def get_session() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Automatically commits on successful exit, rolls back on exception.
    Services that manage their own transactions (merge, alert repair)
    commit inside the block; the final commit is then a no-op.

    Raises:
        Any exception from the database operation (after rollback)
    """
    session = SessionLocal(bind=_get_engine())
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
