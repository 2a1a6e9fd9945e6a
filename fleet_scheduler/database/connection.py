"""
Database connection management for fleetsched.

Provides synchronous SQLAlchemy engine/Session access. Every scheduler
node points at the same database, which also holds the shared
``schedule_locks`` table.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session

from fleet_scheduler.config import get_config, FleetConfig

logger = logging.getLogger(__name__)

# Global engine and session factory (lazy-loaded)
_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None


def get_db_path(config: Optional[FleetConfig] = None) -> Optional[Path]:
    """
    Get the database file path for SQLite URLs.

    Args:
        config: Configuration (uses global if not provided)

    Returns:
        Path to the SQLite database file, or None for server databases
    """
    if config is None:
        config = get_config()

    db_url = config.database_url
    if db_url.startswith("sqlite:///"):
        return Path(db_url[10:])
    return None


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def init_engine(config: Optional[FleetConfig] = None) -> Engine:
    """
    Initialize the SQLAlchemy engine.

    Args:
        config: Configuration (uses global if not provided)

    Returns:
        Configured SQLAlchemy engine
    """
    global _engine

    if _engine is not None:
        return _engine

    if config is None:
        config = get_config()

    _engine = build_engine(config.database_url)
    logger.debug(f"Database engine initialized: {config.database_url}")
    return _engine


def build_engine(database_url: str) -> Engine:
    """
    Create an engine for a database URL.

    SQLite files get their parent directory created, cross-thread access
    (job threads release locks) and foreign key enforcement.
    """
    if _is_sqlite(database_url):
        if database_url.startswith("sqlite:///"):
            Path(database_url[10:]).parent.mkdir(parents=True, exist_ok=True)
        engine = create_engine(
            database_url,
            connect_args={
                "check_same_thread": False,  # Lock release runs on job threads
                "timeout": 30,
            },
            echo=False,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Enable SQLite foreign key support."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=3600,  # Recycle connections after 1 hour
        echo=False,
    )


def get_session_maker(config: Optional[FleetConfig] = None) -> sessionmaker:
    """
    Get or create the session maker.

    Args:
        config: Configuration (uses global if not provided)

    Returns:
        Configured session maker
    """
    global _SessionLocal

    if _SessionLocal is not None:
        return _SessionLocal

    engine = init_engine(config)
    _SessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=engine,
    )

    return _SessionLocal


@contextmanager
def get_db_session(config: Optional[FleetConfig] = None) -> Generator[Session, None, None]:
    """
    Get a database session context manager.

    Usage:
        with get_db_session() as session:
            server = session.query(Server).first()

    Args:
        config: Configuration (uses global if not provided)

    Yields:
        SQLAlchemy Session
    """
    SessionLocal = get_session_maker(config)
    session = SessionLocal()

    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def create_tables(config: Optional[FleetConfig] = None) -> None:
    """
    Create all database tables.

    Args:
        config: Configuration (uses global if not provided)
    """
    from fleet_scheduler.database.models import Base

    engine = init_engine(config)
    Base.metadata.create_all(bind=engine)
    logger.info("Database tables created")


def dispose_engine() -> None:
    """Close pooled connections and forget the global engine."""
    global _engine, _SessionLocal

    if _engine is not None:
        _engine.dispose()
        logger.debug("Database engine disposed")
    _engine = None
    _SessionLocal = None
