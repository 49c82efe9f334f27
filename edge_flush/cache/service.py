"""
Edge Flush service container.

Wires settings, store, CDN service and dispatcher once per process and
hands out request-scoped CacheControl / TagIndexer instances.

Usage:
    from edge_flush.cache import get_edge_flush

    edge_flush = get_edge_flush()
    edge_flush.orchestrator.invalidate_obsolete_tags()
"""

import logging
from typing import Dict, Optional

from fastapi import Request
from sqlalchemy.orm import sessionmaker

from edge_flush.cache.cdn import CDNService, resolve_cdn_service
from edge_flush.cache.config import EdgeFlushSettings, get_settings
from edge_flush.cache.control import CacheControl, make_frontend_checker
from edge_flush.cache.dispatch import TaskDispatcher, TaskHandler, ThreadPoolDispatcher
from edge_flush.cache.orchestrator import InvalidationOrchestrator
from edge_flush.cache.tags import TagIndexer
from edge_flush.database.repository import UrlTagRepository
from edge_flush.database.session import get_session_factory


logger = logging.getLogger(__name__)


class EdgeFlush:
    """Process-wide services. Configuration errors surface here, at construction."""

    def __init__(
        self,
        settings: Optional[EdgeFlushSettings] = None,
        session_factory: Optional[sessionmaker] = None,
        cdn: Optional[CDNService] = None,
        dispatcher: Optional[TaskDispatcher] = None,
    ):
        self.settings = settings or get_settings()
        self.frontend_checker = make_frontend_checker(self.settings.frontend_checker)
        self.cdn = cdn or resolve_cdn_service(self.settings)
        self.store = UrlTagRepository(session_factory or get_session_factory())

        self.dispatcher = dispatcher or ThreadPoolDispatcher()
        for name, handler in self.handlers.items():
            self.dispatcher.register(name, handler)

        self.orchestrator = InvalidationOrchestrator(
            self.settings,
            self.store,
            self.cdn,
            self.dispatcher,
        )

        logger.info(
            f"Edge Flush ready (enabled={self.settings.enabled}, "
            f"cdn={type(self.cdn).__name__}, invalidations={self.settings.invalidations.type})"
        )

    @property
    def handlers(self) -> Dict[str, TaskHandler]:
        return {
            "store_tags": self.store_cache_tags,
            "invalidate_tags": self.invalidate_tags,
        }

    # Task handlers

    def store_cache_tags(self, entities, tags, url):
        return self.tags().store_cache_tags(entities, tags, url)

    def invalidate_tags(self, invalidation):
        return self.orchestrator.invalidate_tags(invalidation)

    # Request-scoped engines

    def cache_control(self, request: Optional[Request] = None) -> CacheControl:
        return CacheControl(self.settings, request, self.frontend_checker)

    def tags(
        self,
        cache_control: Optional[CacheControl] = None,
        dispatcher: Optional[TaskDispatcher] = None,
    ) -> TagIndexer:
        return TagIndexer(
            self.settings,
            self.store,
            dispatcher or self.dispatcher,
            cache_control,
        )

    def enabled(self) -> bool:
        return self.settings.enabled

    def store_tags_service_is_enabled(self) -> bool:
        return self.settings.enabled and self.settings.store_tags.enabled

    def invalidation_service_is_enabled(self) -> bool:
        return self.orchestrator.enabled()


_edge_flush: Optional[EdgeFlush] = None


def get_edge_flush() -> EdgeFlush:
    """Get (or lazily build) the process-wide container."""
    global _edge_flush

    if _edge_flush is None:
        _edge_flush = EdgeFlush()

    return _edge_flush


def set_edge_flush(instance: Optional[EdgeFlush]) -> Optional[EdgeFlush]:
    """Install a configured container (or None to reset). Returns the previous one."""
    global _edge_flush

    previous, _edge_flush = _edge_flush, instance

    return previous
