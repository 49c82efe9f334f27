"""
CDN Management API

Endpoints for edge cache operations and monitoring.

Endpoints:
- Full CDN flush (emergencies, deploys)
- Obsolete sweep (cron / scheduler)
- Manual tag invalidation for debugging
- Warm-up confirmation from the warming agent
- Store statistics for dashboards
"""

import logging
from datetime import datetime
from typing import List, Union

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from edge_flush.cache.invalidation import Invalidation
from edge_flush.cache.service import EdgeFlush, get_edge_flush


logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/cdn", tags=["CDN Management"])


# =============================================================================
# REQUEST / RESPONSE MODELS
# =============================================================================

class TagsInvalidationRequest(BaseModel):
    """Entity tag names, e.g. ["Post-1@title", "Post-2@*"]."""
    tags: List[str] = Field(..., description="Entity tag names to invalidate")


class WarmedRequest(BaseModel):
    """URLs re-fetched by the warming agent (ids or full URLs)."""
    urls: List[Union[int, str]]


class InvalidationResponse(BaseModel):
    """CDN invalidation response."""
    success: bool
    invalidation_id: str
    type: str = ""
    items: int = 0
    duration_ms: float
    errors: List[str] = []


class WarmedResponse(BaseModel):
    success: bool
    urls_warmed: int


class CDNStatusResponse(BaseModel):
    """Edge Flush status and URL counts per state."""
    enabled: bool
    invalidations_enabled: bool
    invalidation_mode: str
    cdn: str
    urls: int
    tags: int
    fresh: int
    obsolete: int
    purged: int
    timestamp: datetime = Field(default_factory=datetime.utcnow)


def to_response(invalidation: Invalidation, start: datetime) -> InvalidationResponse:
    elapsed = (datetime.utcnow() - start).total_seconds() * 1000

    return InvalidationResponse(
        success=invalidation.success,
        invalidation_id=invalidation.id,
        type=invalidation.type.value if invalidation.type else "",
        items=len(invalidation.items),
        duration_ms=elapsed,
        errors=[],
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.post("/invalidate/all", response_model=InvalidationResponse)
def invalidate_all(
    force: bool = Query(False, description="Flush even when invalidations are disabled"),
    edge_flush: EdgeFlush = Depends(get_edge_flush),
):
    """
    Flush the ENTIRE CDN cache and reset every stored URL.

    CAUTION: the origin takes the full traffic until the edge is warm again.
    """
    start = datetime.utcnow()

    invalidation = edge_flush.orchestrator.invalidate_all(force=force)

    if not invalidation.success:
        raise HTTPException(status_code=502, detail="CDN flush failed")

    return to_response(invalidation, start)


@router.post("/invalidate/obsolete", response_model=InvalidationResponse)
def invalidate_obsolete(edge_flush: EdgeFlush = Depends(get_edge_flush)):
    """
    Purge every URL marked obsolete.

    Run periodically in batch mode. Failed purges stay obsolete and are
    retried by the next call.
    """
    start = datetime.utcnow()

    invalidation = edge_flush.orchestrator.invalidate_obsolete_tags()

    if invalidation is None:
        invalidation = Invalidation.unsuccessful()
        return InvalidationResponse(
            success=False,
            invalidation_id=invalidation.id,
            duration_ms=0,
            errors=["Invalidations are disabled"],
        )

    # An empty sweep has nothing to confirm
    if invalidation.is_empty():
        invalidation.set_success(True)

    return to_response(invalidation, start)


@router.post("/invalidate/tags", response_model=InvalidationResponse)
def invalidate_tags(
    request: TagsInvalidationRequest,
    edge_flush: EdgeFlush = Depends(get_edge_flush),
):
    """
    Invalidate pages rendered from the given entity tags.

    Batch mode marks them obsolete; immediate mode purges right away.
    """
    tags = [tag for tag in request.tags if tag and tag.strip()]

    if not tags:
        raise HTTPException(status_code=400, detail="No tags given")

    start = datetime.utcnow()

    invalidation = Invalidation.for_tags(tags)

    try:
        edge_flush.orchestrator.invalidate_tags(invalidation)
    except Exception as e:
        logger.error(f"Failed to invalidate tags {tags}: {e}")
        raise HTTPException(status_code=500, detail=str(e))

    if edge_flush.settings.is_batch_mode:
        invalidation.set_success(True)

    return to_response(invalidation, start)


@router.post("/warmed", response_model=WarmedResponse)
def mark_warmed(
    request: WarmedRequest,
    edge_flush: EdgeFlush = Depends(get_edge_flush),
):
    """Warming agent confirmation: the URLs are fresh again."""
    count = edge_flush.orchestrator.mark_urls_as_warmed(request.urls)

    return WarmedResponse(success=True, urls_warmed=count)


@router.get("/status", response_model=CDNStatusResponse)
def cdn_status(edge_flush: EdgeFlush = Depends(get_edge_flush)):
    """
    Edge Flush status for monitoring.

    Counts come straight from the store; a growing obsolete count means the
    sweep is not running or the CDN keeps rejecting purges.
    """
    stats = edge_flush.store.stats()

    return CDNStatusResponse(
        enabled=edge_flush.enabled(),
        invalidations_enabled=edge_flush.invalidation_service_is_enabled(),
        invalidation_mode=edge_flush.settings.invalidations.type,
        cdn=type(edge_flush.cdn).__name__,
        **stats,
    )
