# Middleware package init
"""
WikiBlocks Backend — Middleware Package
========================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [Request ID] → [Logging] → [CORS] → Route Handler

    1. Request ID: sets the correlation id before anything logs
    2. Logging: access line with status and duration, tagged with that id
    3. CORS: FastAPI's CORSMiddleware (handles preflight)

    Responses pass back through in reverse, so the X-Request-ID header is
    added last and the logged duration covers the whole handler.
"""
