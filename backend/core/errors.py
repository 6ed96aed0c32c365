"""Error taxonomy and FastAPI handlers.

Every engine failure surfaces as a distinct AppError subclass so callers can
react differently (upgrade prompt, permission message, "come back later").
"""

import logging
import builtins
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from backend.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Dict[str, Any]] = None,
        request_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = dict(details or {})
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError):
    """No acting identity on the request."""
    code = "unauthorized"
    status_code = 401


class ForbiddenError(AppError, builtins.PermissionError):
    """Actor is not authorized for this transition on this entity."""
    code = "forbidden"
    status_code = 403


class QuotaExceededError(AppError):
    """Recoverable by waiting for the period reset or upgrading tier."""
    code = "quota_exceeded"
    status_code = 403


class PreconditionFailedError(AppError):
    """Caller must satisfy an eligibility condition first."""
    code = "precondition_failed"
    status_code = 412


class InvalidTransitionError(AppError):
    code = "invalid_transition"
    status_code = 409


class ImmutableError(AppError):
    code = "immutable"
    status_code = 409


class TooEarlyError(AppError):
    """Temporal precondition not met yet; retry after details['available_at']."""
    code = "too_early"
    status_code = 425


class ConflictError(AppError):
    """Optimistic concurrency retries exhausted; safe to retry."""
    code = "conflict"
    status_code = 409


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, details: Optional[Dict[str, Any]] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if details:
        error["details"] = details
    return {
        "error": error,
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc.details)
    logger = logging.getLogger("creatorhub")
    log_level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        log_level,
        "app.error",
        extra={"request_id": rid, "error_code": exc.code, "error_message": exc.message, "status": exc.status_code},
    )
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def http_error_handler(request: Request, exc: HTTPException):
    rid = _extract_request_id(request)
    code = "not_found" if exc.status_code == 404 else "http_error"
    message = exc.detail if exc.detail else "HTTP error"
    payload = _error_payload(code, message, rid)
    logger = logging.getLogger("creatorhub")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("creatorhub")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
