"""
WikiBlocks Backend — Health Check Route
=========================================

What:  Health check endpoint for monitoring and load balancer checks.
How:   Runs SELECT 1 through the application's session factory and reports
       the history write queue counters.

Status levels:
    - healthy:   database reachable, no history writes lost
    - degraded:  database reachable, but history writes have failed or been
                 dropped since startup (HTTP 200, flag for monitoring)
    - unhealthy: database unreachable (HTTP 503)
"""

import logging
import time

from fastapi import APIRouter, Request, Response, status
from sqlalchemy import text

from wikiblocks import __version__
from wikiblocks.schemas.common import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Health"])

_start_time = time.time()


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Service health check",
)
async def health_check(request: Request, response: Response) -> HealthResponse:
    db_status = "connected"
    overall = "healthy"

    try:
        async with request.app.state.session_factory() as session:
            await session.execute(text("SELECT 1"))
    except Exception as e:
        db_status = "disconnected"
        overall = "unhealthy"
        logger.warning("Health check: database unreachable: %s", str(e))

    queue_stats = request.app.state.services.history_queue.snapshot_stats()
    if overall == "healthy" and (queue_stats["failed"] or queue_stats["dropped"]):
        overall = "degraded"

    if overall == "unhealthy":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE

    return HealthResponse(
        status=overall,
        version=__version__,
        database=db_status,
        history_queue=queue_stats,
        uptime_seconds=round(time.time() - _start_time, 2),
    )
