"""
WikiBlocks Backend — FastAPI Application Factory
==================================================

What:  Creates and configures the FastAPI application instance.
Why:   Centralizes app configuration, middleware registration, route mounting,
       service wiring and lifecycle management in one place.
How:   Factory pattern: create_app() returns a configured FastAPI instance.
Who:   Called by uvicorn (uvicorn wikiblocks.main:app) and by the route tests,
       which pass their own session factory and clock.

Application Architecture:
    ┌──────────────────────────────────────────────────────────┐
    │                      FastAPI App                         │
    │                                                          │
    │  Middleware:   Request ID → Logging → GZip → CORS        │
    │                                                          │
    │  Routes:       /api/pages   /api/blocks   /api/history   │
    │                /health                                   │
    │                                                          │
    │  app.state:    session_factory, services (container)     │
    │                                                          │
    │  Exception Handlers:                                     │
    │    ValidationError→400  Authentication→401  NotFound→404 │
    │    FatalTransaction/Database→500                         │
    └──────────────────────────────────────────────────────────┘

Lifecycle:
    Startup:  logging, configuration check, start history writers
    Shutdown: flush and stop history writers, dispose the engine
"""

import logging
import sys
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from wikiblocks import __version__
from wikiblocks.config import settings
from wikiblocks.database import async_session_factory, dispose_engine
from wikiblocks.dependencies import build_services
from wikiblocks.exceptions import (
    AuthenticationError,
    DatabaseError,
    FatalTransactionError,
    NotFoundError,
    ValidationError,
    WikiBlocksError,
)
from wikiblocks.middleware.logging import RequestLoggingMiddleware
from wikiblocks.middleware.request_id import (
    RequestIDLogFilter,
    RequestIDMiddleware,
    request_id_var,
)
from wikiblocks.routes import blocks, health, history, pages
from wikiblocks.utils import Clock, utcnow

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Logging Configuration
# ══════════════════════════════════════════════════════════════════════════

def setup_logging() -> None:
    """
    Configure the root logger once at startup.

    Every line carries the request id (or "-" outside a request), including
    lines from history writer tasks, which log with the id of the request
    that queued the job.
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.addFilter(RequestIDLogFilter())

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s [%(request_id)s] %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[handler],
        force=True,
    )

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


# ══════════════════════════════════════════════════════════════════════════
# Application Lifespan (Startup & Shutdown)
# ══════════════════════════════════════════════════════════════════════════

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    # ── Startup ───────────────────────────────────────────────────────────
    setup_logging()
    logger.info("=" * 60)
    logger.info("WikiBlocks Backend starting up...")

    try:
        settings.validate_required_for_production()
    except ValueError as e:
        logger.error("Configuration error: %s", str(e))
        logger.error("Fix the configuration and restart the server.")

    app.state.services.history_queue.start()

    logger.info("Server ready at http://%s:%d", settings.backend_host, settings.backend_port)
    logger.info("=" * 60)

    yield

    # ── Shutdown ──────────────────────────────────────────────────────────
    logger.info("WikiBlocks Backend shutting down...")

    # Flush queued history writes before the pool goes away
    await app.state.services.history_queue.stop()
    await dispose_engine()

    logger.info("Shutdown complete.")


# ══════════════════════════════════════════════════════════════════════════
# Exception Handlers
# ══════════════════════════════════════════════════════════════════════════

def _error_response(
    status_code: int, error: str, message: str, details: Optional[dict] = None
) -> JSONResponse:
    content = {"error": error, "message": message, "request_id": request_id_var.get("")}
    if details:
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    """
    Map application exceptions to HTTP responses.

    Handler hierarchy:
        ValidationError        → 400 (with field details)
        AuthenticationError    → 401
        NotFoundError          → 404 (also for other owners' resources)
        FatalTransactionError  → 500 (mutation rolled back)
        DatabaseError          → 500
        WikiBlocksError (base) → 500
        Exception (fallback)   → 500

    Storage errors never expose SQL or driver messages; those are logged.
    """

    @app.exception_handler(ValidationError)
    async def handle_validation_error(request: Request, exc: ValidationError):
        logger.warning("Validation error: %s", exc.message)
        return _error_response(400, "validation_error", exc.message, exc.context)

    @app.exception_handler(AuthenticationError)
    async def handle_authentication_error(request: Request, exc: AuthenticationError):
        return _error_response(401, "authentication_required", exc.message)

    @app.exception_handler(NotFoundError)
    async def handle_not_found(request: Request, exc: NotFoundError):
        return _error_response(404, "not_found", exc.message)

    @app.exception_handler(FatalTransactionError)
    async def handle_fatal_transaction(request: Request, exc: FatalTransactionError):
        logger.error("Transaction rolled back: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "transaction_failed", exc.message)

    @app.exception_handler(DatabaseError)
    async def handle_database_error(request: Request, exc: DatabaseError):
        logger.error("Database error: %s | Context: %s", exc.message, exc.context)
        return _error_response(
            500, "server_error", "An internal error occurred. Please try again later."
        )

    @app.exception_handler(WikiBlocksError)
    async def handle_application_error(request: Request, exc: WikiBlocksError):
        logger.error("Application error: %s | Context: %s", exc.message, exc.context)
        return _error_response(500, "server_error", exc.message)

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.error("Unexpected error: %s", str(exc), exc_info=True)
        return _error_response(
            500,
            "internal_server_error",
            "An unexpected error occurred. Please try again or contact support.",
        )


# ══════════════════════════════════════════════════════════════════════════
# Application Factory
# ══════════════════════════════════════════════════════════════════════════

def create_app(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
    clock: Clock = utcnow,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        session_factory: Storage access for every service. Defaults to the
                         module-level factory bound to DATABASE_URL.
        clock:           Source of "now" for history timestamps and
                         retention cutoffs.
    """
    app = FastAPI(
        title="WikiBlocks API",
        description=(
            "Block-based notes and wiki backend: pages made of ordered blocks, "
            "with a per-page history timeline, snapshots and restore."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    factory = session_factory or async_session_factory
    app.state.session_factory = factory
    app.state.services = build_services(factory, settings, clock=clock)

    # ── Register Middleware ───────────────────────────────────────────────
    # Last added runs first: RequestID → Logging → GZip → CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Total-Count"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=500)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    register_exception_handlers(app)

    app.include_router(pages.router)
    app.include_router(blocks.router)
    app.include_router(history.router)
    app.include_router(health.router)

    return app


app = create_app()
