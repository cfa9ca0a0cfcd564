"""Custom exceptions and FastAPI error handler registration."""
from __future__ import annotations

import logging
import traceback
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from .schemas.envelope import ApiResponse

logger = logging.getLogger(__name__)


# ── Custom Exceptions ────────────────────────────────────────────────


class BulkEngineError(Exception):
    """Base class for job-engine errors surfaced to callers."""

    details: Optional[Dict[str, Any]] = None


class ValidationError(BulkEngineError):
    """Malformed create request (empty item list, bad options, too many items)."""


class NoEligibleItemsError(ValidationError):
    """Every requested item was excluded by the eligibility classifier."""

    def __init__(self, message: str, summary: Dict[str, Any]) -> None:
        super().__init__(message)
        self.summary = summary
        self.details = {"summary": summary}


class JobNotFoundError(BulkEngineError):
    """Requested job ID does not exist."""


class ForbiddenError(BulkEngineError):
    """Job exists but belongs to another owner."""


class JobAlreadyRunningError(BulkEngineError):
    """Owner already has a pending or running job."""


class InvalidTransitionError(BulkEngineError):
    """Requested status change is not an edge of the job state machine."""


class JobQueueFullError(BulkEngineError):
    """Raised when the job runner is at capacity."""


class JobSystemicError(BulkEngineError):
    """Orchestration failure outside any single item (e.g. lost job store)."""


# ── Error → HTTP mapping ────────────────────────────────────────────

# Subclasses must precede their bases: handlers are looked up by MRO but the
# table is also used for the name-based fallback below.
_EXCEPTION_STATUS = {
    NoEligibleItemsError: 400,
    ValidationError: 400,
    JobNotFoundError: 404,
    # Another tenant's job is reported as missing so ids cannot be probed.
    ForbiddenError: 404,
    JobAlreadyRunningError: 409,
    InvalidTransitionError: 409,
    JobQueueFullError: 429,
    JobSystemicError: 500,
}


def _make_handler(status_code: int):
    """Create a handler that wraps an exception in ApiResponse."""

    async def _handler(request: Request, exc: Exception) -> JSONResponse:
        message = str(exc)
        if isinstance(exc, ForbiddenError):
            message = "Job not found"
        resp = ApiResponse.fail(message, details=getattr(exc, "details", None))
        return JSONResponse(status_code=status_code, content=resp.model_dump())

    return _handler


def register_error_handlers(app: FastAPI) -> None:
    """Register custom exception handlers on the FastAPI app."""
    for exc_cls, status in _EXCEPTION_STATUS.items():
        app.add_exception_handler(exc_cls, _make_handler(status))

    @app.exception_handler(RequestValidationError)
    async def _request_invalid(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = [
            {"loc": list(e.get("loc", ())), "msg": e.get("msg", ""), "type": e.get("type", "")}
            for e in exc.errors()
        ]
        resp = ApiResponse.fail("Invalid request", details={"errors": errors})
        return JSONResponse(status_code=422, content=resp.model_dump())

    _NAME_STATUS = {cls.__name__: code for cls, code in _EXCEPTION_STATUS.items()}

    @app.exception_handler(Exception)
    async def _unhandled(request: Request, exc: Exception) -> JSONResponse:
        status = _NAME_STATUS.get(type(exc).__name__)
        if status is not None:
            resp = ApiResponse.fail(str(exc), details=getattr(exc, "details", None))
            return JSONResponse(status_code=status, content=resp.model_dump())
        logger.error("Unhandled error: %s\n%s", exc, traceback.format_exc())
        resp = ApiResponse.fail("Internal server error")
        return JSONResponse(status_code=500, content=resp.model_dump())
