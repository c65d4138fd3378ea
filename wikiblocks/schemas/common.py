"""
WikiBlocks Backend — Shared Response Schemas
==============================================

What:  Error envelope and health check response used across all routes.
"""

from typing import Dict, Optional

from pydantic import BaseModel, Field


class ErrorResponse(BaseModel):
    """
    Standardized error response format for all API errors.

    Example:
        {
            "error": "not_found",
            "message": "page with ID '42' was not found",
            "request_id": "a1b2c3d4"
        }
    """
    error: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error description")
    details: Optional[dict] = Field(default=None, description="Additional error context")
    request_id: Optional[str] = Field(default=None, description="Request correlation ID")


class HealthResponse(BaseModel):
    """
    Health check response.

    history_queue exposes the write queue counters (submitted, succeeded,
    failed, retried, dropped, skipped, pending) so lost best-effort history writes
    are visible to monitoring.
    """
    status: str = Field(description="Overall service status: healthy, degraded, unhealthy")
    version: str
    database: str = Field(description="Database connectivity: connected, disconnected")
    history_queue: Dict[str, int]
    uptime_seconds: float
