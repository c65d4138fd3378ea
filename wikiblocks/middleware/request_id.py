"""
WikiBlocks Backend — Request ID Middleware
===========================================

What:  Assigns every request a short correlation id, exposes it to loggers,
       and echoes it in the X-Request-ID response header.
Why:   One editor save fans out into a block write, a queued history write
       on a background worker, and several log lines. The id ties them
       together.
How:   The id lives in a ContextVar. RequestIDLogFilter copies it onto every
       log record; HistoryRecorder copies it onto each queued history job so
       the worker can log failures under the id of the request that caused
       them.
When:  Outermost application middleware (runs before logging).
"""

import logging
import re
import uuid
from contextvars import ContextVar

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

# ── Context Variable ──────────────────────────────────────────────────────
# Coroutine-local: concurrent requests on one event loop each see their own id
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Client-supplied ids end up in logs; only accept short, plain tokens
_VALID_REQUEST_ID = re.compile(r"^[A-Za-z0-9._-]{1,64}$")


def new_request_id() -> str:
    return uuid.uuid4().hex[:8]


def resolve_request_id(header_value: str | None) -> str:
    """Reuse the caller's X-Request-ID when it is safe to log, else mint one."""
    if header_value and _VALID_REQUEST_ID.match(header_value):
        return header_value
    return new_request_id()


class RequestIDLogFilter(logging.Filter):
    """Adds `request_id` to every record so formatters can reference it."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "request_id", None):
            record.request_id = request_id_var.get("") or "-"
        return True


class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        rid = resolve_request_id(request.headers.get("X-Request-ID"))

        token = request_id_var.set(rid)
        request.state.request_id = rid
        try:
            response = await call_next(request)
        finally:
            request_id_var.reset(token)

        response.headers["X-Request-ID"] = rid
        return response
