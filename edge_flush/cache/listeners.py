"""
ORM listeners

SQLAlchemy events feeding Edge Flush:
- load / refresh  -> the current request's TagIndexer (entities read)
- before_flush    -> InvalidationOrchestrator (entities changed or deleted)

The current TagIndexer is bound per request through a context variable, so
entities loaded outside a request (workers, scripts) are not tagged.
"""

import logging
from contextvars import ContextVar, Token
from typing import Any, Callable, Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from edge_flush.cache.tags import TagIndexer
from edge_flush.database.models import Tag, Url


logger = logging.getLogger(__name__)

_current_indexer: ContextVar[Optional[TagIndexer]] = ContextVar("edge_flush_indexer", default=None)

OWN_MODELS = (Url, Tag)


def bind_indexer(indexer: TagIndexer) -> Token:
    return _current_indexer.set(indexer)


def unbind_indexer(token: Token) -> None:
    _current_indexer.reset(token)


def current_indexer() -> Optional[TagIndexer]:
    return _current_indexer.get()


def register_listeners(base: Any, session_cls: Any = Session, edge_flush: Any = None) -> Callable[[], None]:
    """
    Attach Edge Flush to an application's declarative base and sessions.

    Args:
        base: declarative base (or mapped class) whose entities are tracked
        session_cls: Session class or sessionmaker to watch for flushes
        edge_flush: container; defaults to get_edge_flush() at flush time

    Returns:
        A callable removing the listeners again.
    """

    def _service():
        if edge_flush is not None:
            return edge_flush

        from edge_flush.cache.service import get_edge_flush
        return get_edge_flush()

    def _track(target: Any) -> None:
        indexer = current_indexer()

        if indexer is None or isinstance(target, OWN_MODELS):
            return

        indexer.add_entity(target)

    def on_load(target, context):
        _track(target)

    def on_refresh(target, context, attrs):
        _track(target)

    def before_flush(session, flush_context, instances):
        dirty = [
            entity for entity in session.dirty
            if not isinstance(entity, OWN_MODELS) and session.is_modified(entity)
        ]
        deleted = [entity for entity in session.deleted if not isinstance(entity, OWN_MODELS)]

        if not dirty and not deleted:
            return

        orchestrator = _service().orchestrator

        if dirty:
            orchestrator.dispatch_invalidations_for_model(dirty)

        if deleted:
            orchestrator.dispatch_invalidations_for_deleted_model(deleted)

    event.listen(base, "load", on_load, propagate=True)
    event.listen(base, "refresh", on_refresh, propagate=True)
    event.listen(session_cls, "before_flush", before_flush)

    logger.debug(f"Edge Flush listeners registered on {getattr(base, '__name__', base)}")

    def remove() -> None:
        event.remove(base, "load", on_load)
        event.remove(base, "refresh", on_refresh)
        event.remove(session_cls, "before_flush", before_flush)

    return remove
