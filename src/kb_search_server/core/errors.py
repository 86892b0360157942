"""
Error Taxonomy and Global Error Handling

This module defines the retrieval error taxonomy and the application-wide
exception handlers for the knowledge-base search server.

Design Goals
------------
- Keep "no relevant knowledge" (an empty list) distinct from provider failure
- Never leak provider error text to clients
- Always return deterministic, machine-readable error responses
- Log full stack traces internally for debugging
"""

from __future__ import annotations

import logging
from typing import Dict, Any

from fastapi import Request
from fastapi.responses import JSONResponse

logger = logging.getLogger("kb.errors")


# ---------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------

class RetrievalError(RuntimeError):
    """
    Base class for all typed retrieval failures.

    ``transient`` marks errors worth retrying (quota, timeouts, 5xx).
    """

    code = "retrieval_error"
    status_code = 503

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class EmbeddingError(RetrievalError):
    """Raised when the provider fails to produce a usable vector."""

    code = "embedding_unavailable"


class IndexUnavailableError(RetrievalError):
    """Raised when the nearest-neighbour backend cannot be reached or is misconfigured."""

    code = "index_unavailable"


class IndexQueryError(RetrievalError):
    """Raised when the nearest-neighbour backend rejects a query."""

    code = "index_query_failed"


class ConfigurationError(RetrievalError):
    """Raised when a required setting is missing or invalid."""

    code = "configuration_error"
    status_code = 500

    def __init__(self, message: str, *, setting: str | None = None) -> None:
        super().__init__(message)
        self.setting = setting


class RetrievalTimeoutError(RetrievalError):
    """Raised when a search exceeds its overall time budget."""

    code = "retrieval_timeout"
    status_code = 504


class SourceNotFoundError(LookupError):
    """Raised when a knowledge source id does not exist."""


class SourceBusyError(RuntimeError):
    """Raised when a source is already being (re)indexed."""


class InvalidLevelError(ValueError):
    """Raised when a write path receives an unknown priority level."""


def is_transient(exc: BaseException) -> bool:
    """Return True when ``exc`` is a retryable provider failure."""
    return isinstance(exc, RetrievalError) and exc.transient


# ---------------------------------------------------------------------
# Public Exception Handlers
# ---------------------------------------------------------------------

def _error_response(status_code: int, code: str, detail: str) -> JSONResponse:
    payload: Dict[str, Any] = {"error": code, "detail": detail}
    return JSONResponse(status_code=status_code, content=payload)


async def retrieval_exception_handler(
    request: Request,
    exc: RetrievalError,
) -> JSONResponse:
    """
    Convert a typed retrieval failure into a stable JSON error.

    The provider message is logged but never returned; clients branch on
    the ``error`` code only.
    """
    logger.error(
        "Retrieval failure during %s %s: %s (%s)",
        request.method,
        request.url.path,
        type(exc).__name__,
        exc,
    )

    detail = "Knowledge base is temporarily unavailable"
    if isinstance(exc, ConfigurationError):
        detail = f"Server misconfiguration: {exc.setting or 'unknown setting'}"
    elif isinstance(exc, RetrievalTimeoutError):
        detail = "Knowledge base search timed out"

    return _error_response(exc.status_code, exc.code, detail)


async def source_not_found_handler(request: Request, exc: SourceNotFoundError) -> JSONResponse:
    return _error_response(404, "source_not_found", str(exc))


async def source_busy_handler(request: Request, exc: SourceBusyError) -> JSONResponse:
    return _error_response(409, "source_busy", str(exc))


async def invalid_level_handler(request: Request, exc: InvalidLevelError) -> JSONResponse:
    return _error_response(422, "invalid_level", str(exc))


async def unhandled_exception_handler(
    request: Request,
    exc: Exception,
) -> JSONResponse:
    """
    Catch-all handler for uncaught exceptions.

    Behavior
    --------
    - Logs the full exception stack trace for internal diagnostics.
    - Returns a generic 500 error to the client with no internal details.
    """

    # Log full traceback internally (never returned to client)
    logger.exception(
        "Unhandled exception during request: %s %s",
        request.method,
        request.url.path,
        exc_info=exc,
    )

    return _error_response(500, "internal_server_error", "Internal server error")
