"""
Database connection management for the shared rate-limit store.

Any SQLAlchemy URL works; PostgreSQL is the intended multi-process backend,
SQLite is convenient for single-host deployments and tests.
"""

import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from .models import Base

logger = logging.getLogger(__name__)


def create_state_engine(database_url: str, echo: bool = False) -> Engine:
    """Create and configure a database engine for rate-limit state."""
    engine_config = {
        "pool_pre_ping": True,  # Validate connections before use
        "echo": echo,
    }

    if database_url.startswith("sqlite"):
        # Wait on SQLite's file lock instead of failing immediately.
        engine_config["connect_args"] = {"timeout": 30, "check_same_thread": False}
    else:
        engine_config.update(pool_size=10, max_overflow=20, pool_recycle=3600)

    engine = create_engine(database_url, **engine_config)

    @event.listens_for(engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        """Set SQLite pragmas for concurrent access."""
        if database_url.startswith("sqlite"):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    """Create session factory bound to an engine."""
    return sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
        expire_on_commit=False,
    )


def init_schema(engine: Engine) -> None:
    """Create the rate-limit tables if they do not exist."""
    Base.metadata.create_all(engine)
    logger.info("Rate-limit schema ready")


@contextmanager
def session_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """Context manager for database sessions with automatic cleanup."""
    session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

