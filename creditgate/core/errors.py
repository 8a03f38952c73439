"""Error normalization and handlers."""

import logging
from typing import Optional
from uuid import uuid4

from starlette.exceptions import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from creditgate.core.logging import get_request_id


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


class StoreError(AppError):
    """Raised when the entitlement store cannot complete a read or write."""
    code = "store_unavailable"
    status_code = 503


class InsufficientCreditsError(AppError):
    """Raised by HTTP callers that turn a denied deduction into an error response."""
    code = "insufficient_credits"
    status_code = 402

    def __init__(self, message: str, *, remaining: Optional[int] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.remaining = remaining


class CreditCheckFailedError(AppError):
    code = "credit_check_failed"
    status_code = 503


class BillingEventError(AppError):
    """A billing event could not be applied; the processor is expected to redeliver."""
    code = "billing_event_failed"
    status_code = 500


class BillingNotConfiguredError(AppError):
    code = "billing_disabled"
    status_code = 503


class WebhookSignatureError(AppError):
    code = "invalid_signature"
    status_code = 400


def _extract_request_id(request: Request, fallback: Optional[str] = None) -> str:
    return (
        getattr(request.state, "request_id", None)
        or get_request_id()
        or fallback
        or str(uuid4())
    )


def _error_payload(code: str, message: str, request_id: str) -> dict:
    return {
        "error": {"code": code, "message": message, "request_id": request_id},
        "detail": message,
    }


async def app_error_handler(request: Request, exc: AppError):
    rid = exc.request_id or _extract_request_id(request)
    payload = _error_payload(exc.code, exc.message, rid)
    remaining = getattr(exc, "remaining", None)
    if remaining is not None:
        payload["error"]["remaining"] = remaining
    logger = logging.getLogger("creditgate")
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
    logger = logging.getLogger("creditgate")
    logger.warning("http.error", extra={"request_id": rid, "error_code": code, "status": exc.status_code})
    response = JSONResponse(status_code=exc.status_code, content=payload)
    response.headers["x-request-id"] = rid
    return response


async def unhandled_exception_handler(request: Request, exc: Exception):
    rid = _extract_request_id(request)
    logger = logging.getLogger("creditgate")
    logger.error("unhandled.exception", exc_info=True, extra={"request_id": rid, "error_code": "internal_error"})
    payload = _error_payload("internal_error", "Unexpected error", rid)
    response = JSONResponse(status_code=500, content=payload)
    response.headers["x-request-id"] = rid
    return response
