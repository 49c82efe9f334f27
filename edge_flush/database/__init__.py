"""
Edge Flush Database Layer

Url and Tag rows: which URLs were rendered from which entities, and where
each URL stands in the FRESH -> OBSOLETE -> PURGED cycle.

Usage:
    from edge_flush.database import init_db, get_session_factory, UrlTagRepository

    init_db()
    store = UrlTagRepository(get_session_factory())
    store.stats()
"""

# Models
from .models import Base, Url, Tag

# Session management
from .session import (
    get_engine,
    get_session_factory,
    make_session_factory,
    create_db_engine,
    get_db,
    get_db_context,
    init_db,
)

# Repository
from .repository import UrlTagRepository, TRANSIENT_ERRORS

__all__ = [
    "Base",
    "Url",
    "Tag",
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "create_db_engine",
    "get_db",
    "get_db_context",
    "init_db",
    "UrlTagRepository",
    "TRANSIENT_ERRORS",
]
