"""
Storage - Database Engine.

============================================================
PURPOSE
============================================================
SQLAlchemy engine and transaction scope for the SQL session
store and the lap history repository.

- URL from argument, DATABASE_URL_SYNC or DATABASE_URL
- Async driver URLs are converted to their sync form
- Falls back to a local SQLite file for development
- Explicit transactions: commit on success, roll back and
  raise CheckpointError on any failure

============================================================
"""

import logging
import os
from contextlib import contextmanager
from typing import Generator, Optional

from dotenv import load_dotenv
from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from lap_engine.errors import CheckpointError

from .models import Base


logger = logging.getLogger(__name__)

DEFAULT_SQLITE_URL = "sqlite:///./lap_engine.db"


def get_database_url(url: Optional[str] = None) -> str:
    """Get database URL from the argument or environment."""
    if url:
        return url

    load_dotenv()
    url = os.getenv("DATABASE_URL_SYNC")
    if not url:
        url = os.getenv("DATABASE_URL")
        if url and url.startswith("postgresql+asyncpg"):
            url = url.replace("postgresql+asyncpg", "postgresql")
        if url and url.startswith("sqlite+aiosqlite"):
            url = url.replace("sqlite+aiosqlite", "sqlite")

    if not url:
        url = DEFAULT_SQLITE_URL
        logger.warning(f"DATABASE_URL not set, using default: {url}")

    return url


def _safe_url(url: str) -> str:
    # Never log credentials embedded in the URL.
    return url.split("@")[-1]


def create_database_engine(
    url: Optional[str] = None,
    pool_size: int = 5,
    max_overflow: int = 10,
    pool_recycle: int = 1800,
    echo: bool = False,
) -> Engine:
    """
    Create SQLAlchemy engine.

    Args:
        url: Database URL (default: from environment)
        pool_size: Connections kept in the pool (non-SQLite)
        max_overflow: Extra connections beyond pool_size (non-SQLite)
        pool_recycle: Recycle connections after N seconds
        echo: Log SQL statements

    Returns:
        SQLAlchemy Engine
    """
    database_url = get_database_url(url)
    logger.info(f"Creating database engine for: {_safe_url(database_url)}")

    if database_url.startswith("sqlite"):
        engine = create_engine(database_url, echo=echo, future=True)
    else:
        engine = create_engine(
            database_url,
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_recycle=pool_recycle,
            pool_pre_ping=True,
            echo=echo,
            future=True,
        )

    @event.listens_for(engine, "connect")
    def on_connect(dbapi_conn, connection_record):
        logger.debug("Database connection established")

    return engine


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )


@contextmanager
def transaction_scope(session_factory: sessionmaker) -> Generator[Session, None, None]:
    """
    Context manager for explicit transaction boundaries.

    Commits only if no exception occurs.
    Rolls back on ANY exception.

    Usage:
        with transaction_scope(factory) as session:
            session.add(record)
    """
    session = session_factory()
    try:
        yield session
        session.commit()
    except SQLAlchemyError as e:
        logger.error(f"Database transaction failed, rolling back: {e}")
        session.rollback()
        raise CheckpointError(f"Transaction failed: {e}", code="CHK_WRITE_FAILED") from e
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


# =============================================================
# DATABASE INITIALIZATION
# =============================================================

def verify_database_connection(engine: Engine) -> bool:
    """
    Verify database connection is working.

    Raises:
        CheckpointError if connection fails
    """
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1")).fetchone()
        logger.info("Database connection verified successfully")
        return True
    except OperationalError as e:
        logger.error(f"Database connection failed: {e}")
        raise CheckpointError(f"Cannot connect to database: {e}", code="CHK_WRITE_FAILED") from e


def create_all_tables(engine: Engine) -> None:
    """Create the session and lap tables if they do not exist."""
    try:
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ready")
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database tables: {e}")
        raise CheckpointError(f"Table creation failed: {e}", code="CHK_WRITE_FAILED") from e


def initialize_database(url: Optional[str] = None, echo: bool = False) -> Engine:
    """Create the engine, verify the connection and create tables."""
    engine = create_database_engine(url, echo=echo)
    verify_database_connection(engine)
    create_all_tables(engine)
    return engine
