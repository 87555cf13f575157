"""
Billing error taxonomy and the FastAPI handlers that render it.

Every error response has the same body:

    {"error": {"code": ..., "message": ..., "request_id": ...}, "detail": message}

and echoes the request id in the `x-request-id` header.
"""

import logging
from typing import Optional
from uuid import uuid4

from fastapi import HTTPException
from fastapi.responses import JSONResponse
from starlette.requests import Request

from workspace_billing.core.logging import LOGGER_NAME, get_request_id

logger = logging.getLogger(LOGGER_NAME)


class AppError(Exception):
    """Base class; subclasses pin `code` and `status_code`."""

    code = "app_error"
    status_code = 500

    def __init__(self, message: str, *, code: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code


class ConfigurationError(AppError):
    """Malformed or missing plan/limit configuration. Never recovered."""
    code = "configuration_error"


class ValidationError(AppError, ValueError):
    code = "validation_error"
    status_code = 400


class NotFoundError(AppError, LookupError):
    code = "not_found"
    status_code = 404


class UnauthorizedError(AppError):
    code = "unauthorized"
    status_code = 401


class ConflictError(AppError):
    code = "conflict"
    status_code = 409


class GatewayStateError(AppError):
    """Gateway subscription is in a state the automation does not handle."""
    code = "gateway_state_error"
    status_code = 409


class CurrencyMismatchError(AppError):
    code = "currency_mismatch"
    status_code = 422


class BillingDisabledError(AppError):
    code = "billing_disabled"
    status_code = 503

    def __init__(self, message: str = "Billing is disabled: STRIPE_SECRET_KEY is not configured", **kwargs):
        super().__init__(message, **kwargs)


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", None) or get_request_id() or str(uuid4())


def _respond(request: Request, status: int, code: str, message: str) -> JSONResponse:
    rid = _request_id(request)
    level = logging.ERROR if status >= 500 else logging.WARNING
    logger.log(
        level,
        "request.failed",
        extra={"request_id": rid, "error_code": code, "status": status, "path": request.url.path},
    )
    return JSONResponse(
        status_code=status,
        content={"error": {"code": code, "message": message, "request_id": rid}, "detail": message},
        headers={"x-request-id": rid},
    )


async def app_error_handler(request: Request, exc: AppError):
    return _respond(request, exc.status_code, exc.code, exc.message)


async def http_error_handler(request: Request, exc: HTTPException):
    code = "not_found" if exc.status_code == 404 else "http_error"
    return _respond(request, exc.status_code, code, str(exc.detail or "HTTP error"))


async def gateway_error_handler(request: Request, exc: Exception):
    """Gateway failures surface as 502; provider details stay in the log."""
    logger.error("gateway.failed", extra={"request_id": _request_id(request), "error_message": str(exc)})
    return _respond(request, 502, "gateway_error", "Payment gateway request failed")


async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("unhandled.exception", exc_info=exc, extra={"request_id": _request_id(request)})
    return _respond(request, 500, "internal_error", "Unexpected error")
