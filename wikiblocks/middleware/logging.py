"""
WikiBlocks Backend — Request Logging Middleware
=================================================

What:  One access-log line per API request with status and duration.
Why:   Editor saves are frequent and bursty; slow or failing saves need to
       be visible per owner and per request id.
How:   Times the downstream handler and logs on the `wikiblocks.access`
       logger, choosing the level from the status code.

Logged fields:
    request_id, owner_id (X-User-ID, "-" when absent), method, path,
    status, duration_ms, client_ip

Not logged: request bodies (block content is user data) and any other headers.
"""

import logging
import time

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from wikiblocks.middleware.request_id import request_id_var

logger = logging.getLogger("wikiblocks.access")

# Polled every few seconds by load balancers
_UNLOGGED_PATHS = frozenset({"/health"})


def _status_level(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        path = request.url.path
        if path in _UNLOGGED_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        client_ip = request.client.host if request.client else "unknown"
        owner_id = request.headers.get("X-User-ID", "-")
        rid = request_id_var.get("")
        status = response.status_code

        logger.log(
            _status_level(status),
            "%s %s %d %.1fms owner=%s from %s",
            request.method,
            path,
            status,
            duration_ms,
            owner_id,
            client_ip,
            extra={
                "request_id": rid,
                "owner_id": owner_id,
                "method": request.method,
                "path": path,
                "status": status,
                "duration_ms": round(duration_ms, 2),
                "client_ip": client_ip,
            },
        )
        return response
