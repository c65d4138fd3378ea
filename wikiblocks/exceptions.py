"""
WikiBlocks Backend — Custom Exception Hierarchy
=================================================

What:  Application-specific exceptions for the different failure modes.
Why:   Custom exceptions enable targeted error handling with appropriate HTTP
       status codes and user-friendly messages, and let services express
       "best-effort" vs "mandatory" failures explicitly.
How:   Each exception class carries a message and optional context dict.
       Global exception handlers (registered in main.py) catch these and
       return structured JSON error responses.

Exception Hierarchy:
    WikiBlocksError (base)
    ├── ValidationError              → 400 Bad Request (client can fix)
    ├── AuthenticationError          → 401 Unauthorized
    ├── NotFoundError                → 404 Not Found (also cross-owner access)
    ├── DatabaseError                → 500 Internal Server Error
    │   └── FatalTransactionError    → 500 (primary mutation rolled back)
    └── TransientHistoryWriteError   → never reaches a client; logged only
"""

from typing import Any, Dict, Optional


class WikiBlocksError(Exception):
    """
    Base exception for all WikiBlocks application errors.

    Attributes:
        message:  User-facing error description (safe to return in API response)
        context:  Additional debug info (logged but NOT returned to client
                  except for validation details)
    """

    def __init__(
        self,
        message: str = "An unexpected error occurred",
        context: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.context = context or {}
        super().__init__(self.message)


class ValidationError(WikiBlocksError):
    """
    Raised when caller input fails validation.

    When: Missing owner/page ids, non-list block payloads, empty update sets,
          out-of-range pagination, restoring a non-snapshot history entry.
    HTTP: 400 Bad Request
    """

    def __init__(
        self,
        message: str = "Validation failed",
        field: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        ctx = context or {}
        if field:
            ctx["field"] = field
        super().__init__(message=message, context=ctx)
        self.field = field


class AuthenticationError(WikiBlocksError):
    """
    Raised when a request carries no authenticated owner id.

    Token issuance lives upstream; this backend only requires that the
    gateway forwarded a user id.
    """

    def __init__(
        self,
        message: str = "Authentication required",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class NotFoundError(WikiBlocksError):
    """
    Raised when a requested resource does not exist for the caller.

    Entities owned by other users are reported exactly like missing ones,
    so the response never reveals that another user's page exists.
    """

    def __init__(
        self,
        resource: str = "resource",
        resource_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        message = f"The requested {resource} was not found"
        if resource_id:
            message = f"{resource} with ID '{resource_id}' was not found"
        ctx = context or {}
        ctx["resource"] = resource
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message=message, context=ctx)


class DatabaseError(WikiBlocksError):
    """
    Raised when a database read fails unexpectedly.

    Security Note:
        The message returned to the client is always generic. SQL, constraint
        names and driver messages are logged server-side only.
    """

    def __init__(
        self,
        message: str = "A database error occurred. Please try again later.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class FatalTransactionError(DatabaseError):
    """
    Raised when a primary mutation fails and its transaction was rolled back.

    Covers block/page writes and the block-delete history record, which is
    written in the same transaction as the delete: if either fails, neither
    is persisted.
    """

    def __init__(
        self,
        message: str = "The change could not be saved. Please try again.",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)


class TransientHistoryWriteError(WikiBlocksError):
    """
    A best-effort history write (create/update/snapshot) could not be stored.

    Produced by the history write queue after retries are exhausted or when
    the queue is full. It is logged and counted, never raised to the caller
    of the mutation that triggered it.
    """

    def __init__(
        self,
        message: str = "History entry could not be recorded",
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message=message, context=context)
