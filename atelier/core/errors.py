"""Error taxonomy for the metering engine and its HTTP handlers."""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from atelier.core.logging import get_request_id


class AppError(Exception):
    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None, request_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.request_id = request_id


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, ValueError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError):
    code = "admin_unauthorized"
    status_code = 401


class AdminAuthUnconfiguredError(AppError):
    code = "admin_auth_unconfigured"
    status_code = 503


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class InvalidAmountError(ValidationError):
    code = "invalid_amount"


class UnknownPlanError(ValidationError):
    code = "unknown_plan"


class NotCancelledError(ConflictError):
    """Reactivate was called on a subscription that is not cancelled."""
    code = "not_cancelled"


class LockTimeoutError(ConflictError):
    """The per-user critical section could not be entered in time."""
    code = "lock_timeout"


class QuotaExceededError(AppError):
    code = "quota_exceeded"
    status_code = 403


class InsufficientTokensError(QuotaExceededError):
    code = "insufficient_tokens"

    def __init__(self, message: Optional[str] = None, *, remaining: int = 0, required: int = 0, **kwargs):
        self.remaining = remaining
        self.required = required
        if message is None:
            message = f"Insufficient tokens: {remaining} remaining, {required} required"
        super().__init__(message, **kwargs)


class PlanInactiveError(QuotaExceededError):
    code = "plan_inactive"


class StoreUnavailableError(AppError):
    """Transient storage failure. Never retried by the engine itself."""
    code = "store_unavailable"
    status_code = 503


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str, exc: Optional[AppError] = None) -> dict:
    error = {"code": code, "message": message, "request_id": request_id}
    if isinstance(exc, InsufficientTokensError):
        error["remaining"] = exc.remaining
        error["required"] = exc.required
    return {"error": error, "detail": message}


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid, exc)
    logger = logging.getLogger("atelier")
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
    logger = logging.getLogger("atelier")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("atelier")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
