"""
WikiBlocks Backend — History Route Handlers
=============================================

What:  Page history listing, the timeline feed, snapshots, viewing a page
       at a past version, restoring a snapshot, and retention cleanup.
Who:   The editor's history side panel and version preview.

Caching:
    History records never change once written, but new ones arrive on
    every save, so listings are served with `Cache-Control: no-store`.
"""

import logging
from typing import List

from fastapi import APIRouter, Depends, Query, Response

from wikiblocks.config import settings
from wikiblocks.dependencies import ServiceContainer, get_owner_id, get_services
from wikiblocks.exceptions import NotFoundError
from wikiblocks.schemas.common import ErrorResponse
from wikiblocks.schemas.history import (
    CleanupResponse,
    PageAtHistory,
    PageHistory,
    RestoreResult,
    SnapshotSummary,
    TimelineEntry,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["History"])

_NOT_FOUND = {404: {"description": "Page or history entry not found", "model": ErrorResponse}}


@router.get(
    "/pages/{page_id}/history",
    response_model=PageHistory,
    responses=_NOT_FOUND,
    summary="Paginated history of a page",
)
async def get_page_history(
    page_id: int,
    response: Response,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=settings.history_page_size, ge=1, le=settings.history_max_limit),
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageHistory:
    result = await services.timeline.get_page_history(page_id, owner_id, page=page, limit=limit)
    response.headers["Cache-Control"] = "no-store"
    response.headers["X-Total-Count"] = str(result.total)
    return result


@router.get(
    "/pages/{page_id}/history/timeline",
    response_model=List[TimelineEntry],
    responses=_NOT_FOUND,
    summary="Timeline feed for the history panel",
)
async def get_timeline(
    page_id: int,
    response: Response,
    limit: int = Query(default=settings.timeline_default_limit, ge=1, le=settings.history_max_limit),
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> List[TimelineEntry]:
    response.headers["Cache-Control"] = "no-store"
    return await services.timeline.get_timeline_entries(page_id, owner_id, limit=limit)


@router.get(
    "/pages/{page_id}/history/snapshots",
    response_model=List[SnapshotSummary],
    responses=_NOT_FOUND,
    summary="Most recent full-page snapshots",
)
async def get_snapshots(
    page_id: int,
    response: Response,
    limit: int = Query(default=settings.snapshot_default_limit, ge=1, le=settings.history_max_limit),
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> List[SnapshotSummary]:
    response.headers["Cache-Control"] = "no-store"
    return await services.timeline.get_recent_snapshots(page_id, owner_id, limit=limit)


@router.get(
    "/pages/{page_id}/history/{history_id}",
    response_model=PageAtHistory,
    responses=_NOT_FOUND,
    summary="View a page as of a history entry",
    description=(
        "Snapshot entries return the saved block array (`is_full_snapshot: true`). "
        "Other entries return the page's current blocks (`is_full_snapshot: false`)."
    ),
)
async def get_page_at_history(
    page_id: int,
    history_id: int,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> PageAtHistory:
    result = await services.timeline.get_page_at_history(page_id, history_id, owner_id)
    if result is None:
        raise NotFoundError(resource="history entry", resource_id=str(history_id))
    return result


@router.post(
    "/history/{history_id}/restore",
    response_model=RestoreResult,
    responses=_NOT_FOUND,
    summary="Restore a page to a snapshot",
)
async def restore_snapshot(
    history_id: int,
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> RestoreResult:
    return await services.blocks.restore_snapshot(owner_id, history_id)


@router.delete(
    "/history/cleanup",
    response_model=CleanupResponse,
    summary="Delete the caller's history older than N days",
)
async def cleanup_history(
    days: int = Query(default=settings.history_retention_days, ge=0),
    owner_id: int = Depends(get_owner_id),
    services: ServiceContainer = Depends(get_services),
) -> CleanupResponse:
    deleted = await services.retention.cleanup_old_history(days, owner_id=owner_id)
    return CleanupResponse(
        message=f"Deleted {deleted} history entries older than {days} days",
        deleted_count=deleted,
        days_to_keep=days,
    )
