"""
Database Session Management

Handles connection pooling, session lifecycle, and table creation for the
URL/Tag store. PostgreSQL in production, SQLite for local development.
"""

import os
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from .models import Base

logger = logging.getLogger(__name__)

# =============================================================================
# DATABASE URL CONFIGURATION
# =============================================================================

def get_database_url() -> str:
    """
    Get database URL from environment.

    Priority:
    1. EDGE_FLUSH_DATABASE_URL (dedicated store)
    2. DATABASE_URL (shared with the application)
    3. SQLite fallback for local development
    """
    for name in ("EDGE_FLUSH_DATABASE_URL", "DATABASE_URL"):
        url = os.getenv(name)
        if url:
            # Heroku/Railway style URLs use postgres:// but SQLAlchemy needs postgresql://
            if url.startswith("postgres://"):
                url = url.replace("postgres://", "postgresql://", 1)
            logger.info(f"Using database from {name}")
            return url

    sqlite_path = os.getenv("SQLITE_PATH", "edge_flush.db")
    logger.warning(f"No DATABASE_URL found, using SQLite: {sqlite_path}")
    return f"sqlite:///{sqlite_path}"


# =============================================================================
# ENGINE CONFIGURATION
# =============================================================================

def create_db_engine(url: str = None):
    """
    Create database engine with appropriate settings.

    PostgreSQL: Connection pooling (row locks need real transactions)
    SQLite: Simpler settings, foreign key support
    """
    url = url or get_database_url()
    echo = os.getenv("SQL_DEBUG", "false").lower() == "true"

    if url.startswith("postgresql"):
        engine = create_engine(
            url,
            poolclass=QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            echo=echo,
        )
        logger.info("Created PostgreSQL engine with connection pooling")
    else:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},  # Background tasks run in worker threads
            echo=echo,
        )

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        logger.info("Created SQLite engine")

    return engine


# Global engine (lazy initialization)
_engine = None


def get_engine():
    """Get or create the database engine."""
    global _engine
    if _engine is None:
        _engine = create_db_engine()
    return _engine


# =============================================================================
# SESSION MANAGEMENT
# =============================================================================

_SessionLocal = None


def get_session_factory():
    """Get or create session factory."""
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = make_session_factory(get_engine())
    return _SessionLocal


def make_session_factory(engine) -> sessionmaker:
    """Session factory bound to a specific engine."""
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,  # Url rows are handed to background tasks after commit
    )


def get_db() -> Generator[Session, None, None]:
    """
    FastAPI-style dependency for database sessions.

    Usage:
        @app.get("/urls")
        def list_urls(db: Session = Depends(get_db)):
            return db.query(Url).all()
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def get_db_context() -> Generator[Session, None, None]:
    """
    Context manager for database sessions.

    Usage:
        with get_db_context() as db:
            db.query(Url).all()
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


# =============================================================================
# DATABASE INITIALIZATION
# =============================================================================

def init_db(engine=None, drop_all: bool = False) -> None:
    """
    Create the edge_flush_* tables.

    Args:
        engine: Engine to use (defaults to the global engine)
        drop_all: If True, drop the tables first (USE WITH CAUTION!)
    """
    engine = engine or get_engine()

    if drop_all:
        logger.warning("Dropping edge flush tables!")
        Base.metadata.drop_all(bind=engine)

    logger.info("Creating edge flush tables...")
    Base.metadata.create_all(bind=engine)
    logger.info("Edge flush tables created successfully")

