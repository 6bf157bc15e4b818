"""OnceOnly API error handling.

Every error response uses one envelope:
- code: str - machine-readable error code (e.g., "OPERATION_IN_PROGRESS")
- message: str - human-readable error message
- details: dict | None - optional additional context (no sensitive data)
- request_id: str - request correlation ID (always present)

Coordinator outcomes map to HTTP as:
- OperationInProgressError -> 409 OPERATION_IN_PROGRESS
- PersistenceError -> 500 IDEMPOTENCY_STORE_FAILED
- WebhookDeliveryError -> 502 WEBHOOK_DELIVERY_FAILED
"""

from __future__ import annotations

import logging
import uuid
from typing import Any

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from onceonly.api.middleware.request_id import REQUEST_ID_HEADER
from onceonly.idempotency.errors import (
    IdempotencyError,
    OperationInProgressError,
    PersistenceError,
)
from onceonly.webhooks.delivery import WebhookDeliveryError

logger = logging.getLogger(__name__)

HTTP_STATUS_TO_CODE: dict[int, str] = {
    400: "BAD_REQUEST",
    404: "NOT_FOUND",
    405: "METHOD_NOT_ALLOWED",
    409: "CONFLICT",
    415: "UNSUPPORTED_MEDIA_TYPE",
    422: "UNPROCESSABLE_ENTITY",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}


class ErrorResponse(BaseModel):
    """Error envelope schema."""

    code: str
    message: str
    details: dict[str, Any] | None = None
    request_id: str | None = None


class OnceOnlyHttpError(Exception):
    """Application-level HTTP error with structured error envelope.

    Attributes:
        status_code: HTTP status code (e.g., 404, 500).
        code: Machine-readable error code.
        message: Human-readable error message.
        details: Optional dict with additional error context.
    """

    def __init__(
        self,
        status_code: int,
        code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message
        self.details = details


def _get_request_id(request: Request) -> str:
    """Return the request's correlation ID, generating one if absent."""
    request_id: str | None = getattr(request.state, "request_id", None)
    if request_id is not None:
        return str(request_id)

    header_id: str | None = request.headers.get(REQUEST_ID_HEADER)
    if header_id:
        return header_id

    return str(uuid.uuid4())


def make_error_response(
    request: Request,
    *,
    code: str,
    message: str,
    http_status: int,
    details: dict[str, Any] | None = None,
) -> JSONResponse:
    """Build an error JSON response with the X-Request-Id header set."""
    request_id = _get_request_id(request)

    body = ErrorResponse(code=code, message=message, details=details, request_id=request_id)

    response = JSONResponse(status_code=http_status, content=body.model_dump())
    response.headers[REQUEST_ID_HEADER] = request_id

    return response


async def onceonly_http_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, OnceOnlyHttpError)

    return make_error_response(
        request,
        code=exc.code,
        message=exc.message,
        http_status=exc.status_code,
        details=exc.details,
    )


async def idempotency_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map coordinator errors to HTTP responses.

    Store failure details are logged, never returned to the client.
    """
    assert isinstance(exc, IdempotencyError)

    if isinstance(exc, OperationInProgressError):
        details = {"expires_at": exc.expires_at} if exc.expires_at is not None else None
        return make_error_response(
            request,
            code="OPERATION_IN_PROGRESS",
            message="An operation with this idempotency key is already in progress",
            http_status=409,
            details=details,
        )

    if isinstance(exc, PersistenceError):
        logger.error(
            "Idempotency store failure: %s",
            exc.message,
            extra={"request_id": getattr(request.state, "request_id", None)},
        )
        return make_error_response(
            request,
            code="IDEMPOTENCY_STORE_FAILED",
            message="Idempotency store is unavailable",
            http_status=500,
        )

    logger.error("Unexpected idempotency error: %s", type(exc).__name__)
    return make_error_response(
        request,
        code="INTERNAL_ERROR",
        message="An internal error occurred",
        http_status=500,
    )


async def webhook_delivery_error_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, WebhookDeliveryError)

    details = {"upstream_status": exc.status_code} if exc.status_code is not None else None
    return make_error_response(
        request,
        code="WEBHOOK_DELIVERY_FAILED",
        message=exc.message,
        http_status=502,
        details=details,
    )


async def http_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    assert isinstance(exc, HTTPException)

    return make_error_response(
        request,
        code=HTTP_STATUS_TO_CODE.get(exc.status_code, "ERROR"),
        message=str(exc.detail) if exc.detail else f"HTTP {exc.status_code}",
        http_status=exc.status_code,
    )


async def request_validation_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map pydantic validation errors without exposing raw internals."""
    assert isinstance(exc, RequestValidationError)

    safe_details: list[dict[str, Any]] = []
    for error in exc.errors():
        loc = error.get("loc", ())
        safe_loc = [str(part) for part in loc if part not in ("body", "query", "path")]
        safe_details.append(
            {
                "field": ".".join(safe_loc) if safe_loc else "request",
                "message": error.get("msg", "Validation error"),
            }
        )

    return make_error_response(
        request,
        code="REQUEST_VALIDATION_FAILED",
        message="Request validation failed",
        http_status=422,
        details={"errors": safe_details} if safe_details else None,
    )


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler: 500 with a safe generic message, exception logged."""
    logger.exception(
        "Unhandled exception: %s",
        type(exc).__name__,
        extra={"request_id": getattr(request.state, "request_id", None)},
    )

    return make_error_response(
        request,
        code="INTERNAL_ERROR",
        message="An internal error occurred",
        http_status=500,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all OnceOnly exception handlers on app."""
    app.add_exception_handler(OnceOnlyHttpError, onceonly_http_error_handler)
    app.add_exception_handler(IdempotencyError, idempotency_error_handler)
    app.add_exception_handler(WebhookDeliveryError, webhook_delivery_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)
