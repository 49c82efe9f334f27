"""
FastAPI route integration.

Usage:
    from fastapi import APIRouter, Depends
    from edge_flush.cache.routing import EdgeFlushRoute, do_not_cache_response, max_age

    router = APIRouter(route_class=EdgeFlushRoute)

    @router.get("/posts/{post_id}", name="posts.show", dependencies=[Depends(max_age(300))])
    def show_post(post_id: int, db: Session = Depends(get_db)):
        ...

    @router.get("/account", name="account", dependencies=[Depends(do_not_cache_response)])
    def account():
        ...
"""

import logging
from typing import Callable

from fastapi import Request, Response
from fastapi.routing import APIRoute
from starlette.background import BackgroundTasks

from edge_flush.cache.control import CacheControl, do_not_cache_response
from edge_flush.cache.dispatch import BackgroundTasksDispatcher
from edge_flush.cache.listeners import bind_indexer, unbind_indexer
from edge_flush.cache.service import get_edge_flush
from edge_flush.cache.tags import TagIndexer


logger = logging.getLogger(__name__)

CACHE_CONTROL_STATE = "edge_flush_cache_control"
TAG_INDEXER_STATE = "edge_flush_tags"

__all__ = [
    "EdgeFlushRoute",
    "do_not_cache_response",
    "cache_strategy",
    "max_age",
    "get_cache_control",
    "get_tag_indexer",
]


class EdgeFlushRoute(APIRoute):
    """
    Route class applying Cache-Control and edge tag headers.

    Entities loaded while the endpoint runs are tagged; tag storage runs as
    a background task once the response has been sent.
    """

    def get_route_handler(self) -> Callable:
        original_route_handler = super().get_route_handler()

        async def edge_flush_route_handler(request: Request) -> Response:
            edge_flush = get_edge_flush()
            request.scope.setdefault("route", self)

            background = BackgroundTasks()
            cache_control = edge_flush.cache_control(request)
            tags = edge_flush.tags(
                cache_control,
                BackgroundTasksDispatcher(edge_flush.handlers, background),
            )

            setattr(request.state, CACHE_CONTROL_STATE, cache_control)
            setattr(request.state, TAG_INDEXER_STATE, tags)

            token = bind_indexer(tags)
            try:
                response = await original_route_handler(request)
            finally:
                unbind_indexer(token)

            return apply_edge_flush(response, request, cache_control, tags, background)

        return edge_flush_route_handler


def apply_edge_flush(
    response: Response,
    request: Request,
    cache_control: CacheControl,
    tags: TagIndexer,
    background: BackgroundTasks,
) -> Response:
    response = cache_control.make_response(response)

    edge_tag = tags.get_tags_hash(response, request)

    if cache_control.is_cachable(response):
        response.headers.update(get_edge_flush().cdn.tag_headers(edge_tag))

    if background.tasks:
        # Keep the endpoint's own background work, and run it first
        if response.background is not None:
            background.tasks.insert(0, response.background)
        response.background = background

    return response


# =============================================================================
# DEPENDENCIES
# =============================================================================

def get_cache_control(request: Request) -> CacheControl:
    """The request's CacheControl (created on demand outside EdgeFlushRoute)."""
    cache_control = getattr(request.state, CACHE_CONTROL_STATE, None)

    if cache_control is None:
        cache_control = get_edge_flush().cache_control(request)
        setattr(request.state, CACHE_CONTROL_STATE, cache_control)

    return cache_control


def get_tag_indexer(request: Request) -> TagIndexer:
    """The request's TagIndexer, e.g. to tag entities explicitly."""
    tags = getattr(request.state, TAG_INDEXER_STATE, None)

    if tags is None:
        tags = get_edge_flush().tags(get_cache_control(request))
        setattr(request.state, TAG_INDEXER_STATE, tags)

    return tags


def cache_strategy(name: str) -> Callable[[Request], None]:
    """Dependency forcing a named strategy, e.g. Depends(cache_strategy("do-not-cache"))."""

    def dependency(request: Request) -> None:
        get_cache_control(request).set_strategy(name)

    return dependency


def max_age(seconds: int) -> Callable[[Request], None]:
    """Dependency proposing a max-age (merged with the configured strategy)."""

    def dependency(request: Request) -> None:
        get_cache_control(request).set_max_age(seconds)

    return dependency
