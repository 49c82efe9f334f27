"""
Edge Flush Caching Layer

Key components:
- CacheControl: per-response cachability matrix and Cache-Control header
- TagIndexer: entity tags per URL and the aggregate edge tag
- InvalidationOrchestrator: batch/immediate invalidation, sweeps, full flush
- CDNService: provider clients (Cloudflare, Null)
- EdgeFlushRoute: FastAPI integration

Usage:
    # Route integration
    router = APIRouter(route_class=EdgeFlushRoute)

    # Tag entities as they are loaded, invalidate as they change
    register_listeners(Base, SessionLocal)

    # Periodic sweep (cron, worker)
    get_edge_flush().orchestrator.invalidate_obsolete_tags()
"""

from edge_flush.cache.config import EdgeFlushSettings, get_settings, ANY_TAG, WARMED_URL_HEADER
from edge_flush.cache.exceptions import (
    EdgeFlushError,
    FrontendCheckerError,
    CDNServiceError,
    UnsupportedInvalidationError,
)
from edge_flush.cache.invalidation import Invalidation, InvalidationType
from edge_flush.cache.cdn import CDNService, CloudflareCDN, NullCDN, resolve_cdn_service
from edge_flush.cache.control import (
    CacheControl,
    StaticFrontendChecker,
    CallableFrontendChecker,
    DelegateFrontendChecker,
    make_frontend_checker,
    do_not_cache_response,
)
from edge_flush.cache.dispatch import (
    TaskDispatcher,
    InlineDispatcher,
    BackgroundTasksDispatcher,
    ThreadPoolDispatcher,
)
from edge_flush.cache.tags import TagIndexer
from edge_flush.cache.orchestrator import InvalidationOrchestrator
from edge_flush.cache.service import EdgeFlush, get_edge_flush, set_edge_flush
from edge_flush.cache.listeners import register_listeners
from edge_flush.cache.routing import (
    EdgeFlushRoute,
    cache_strategy,
    max_age,
    get_cache_control,
    get_tag_indexer,
)

__all__ = [
    # Config
    "EdgeFlushSettings",
    "get_settings",
    "ANY_TAG",
    "WARMED_URL_HEADER",
    # Errors
    "EdgeFlushError",
    "FrontendCheckerError",
    "CDNServiceError",
    "UnsupportedInvalidationError",
    # Invalidations
    "Invalidation",
    "InvalidationType",
    "InvalidationOrchestrator",
    # CDN
    "CDNService",
    "CloudflareCDN",
    "NullCDN",
    "resolve_cdn_service",
    # Cache control
    "CacheControl",
    "StaticFrontendChecker",
    "CallableFrontendChecker",
    "DelegateFrontendChecker",
    "make_frontend_checker",
    # Tags
    "TagIndexer",
    # Dispatch
    "TaskDispatcher",
    "InlineDispatcher",
    "BackgroundTasksDispatcher",
    "ThreadPoolDispatcher",
    # Integration
    "EdgeFlush",
    "get_edge_flush",
    "set_edge_flush",
    "register_listeners",
    "EdgeFlushRoute",
    "do_not_cache_response",
    "cache_strategy",
    "max_age",
    "get_cache_control",
    "get_tag_indexer",
]
