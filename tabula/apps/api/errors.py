from __future__ import annotations

import logging
from typing import Any

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tabula.apps.api.response import error_response, is_versioned_request
from tabula.core.errors import (
    CircularDependencyError,
    InvalidOperatorError,
    InvalidSortColumnError,
    MissingRangeValueError,
    NotFoundError,
    PageSizeExceededError,
    PermissionDeniedError,
    PlanLimitError,
    ReferenceResolutionError,
    RequiredFieldError,
    TabulaError,
    TenantPredicateError,
    ValidationError,
)


logger = logging.getLogger(__name__)

_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    402: "PLAN_LIMIT_EXCEEDED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    429: "RATE_LIMITED",
    500: "INTERNAL_ERROR",
    503: "SERVICE_UNAVAILABLE",
}

# Most specific classes first; lookup walks this list with isinstance.
_STATUS_BY_ERROR: tuple[tuple[type[TabulaError], int], ...] = (
    (PlanLimitError, 402),
    (PermissionDeniedError, 403),
    (NotFoundError, 404),
    (RequiredFieldError, 422),
    (InvalidOperatorError, 400),
    (MissingRangeValueError, 400),
    (InvalidSortColumnError, 400),
    (PageSizeExceededError, 400),
    (ReferenceResolutionError, 400),
    (CircularDependencyError, 400),
    (ValidationError, 400),
    (TenantPredicateError, 500),
)


def _default_code(status_code: int) -> str:
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def status_for_error(exc: TabulaError) -> int:
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return status_code
    return 400


def _detail_parts(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Dependencies raise HTTPException with {"code", "message", **extra} details.
    if isinstance(detail, dict):
        extra = {key: value for key, value in detail.items() if key not in {"code", "message"}}
        return (
            str(detail.get("code") or _default_code(status_code)),
            str(detail.get("message") or "Request failed"),
            extra or None,
        )
    message = detail if isinstance(detail, str) else "Request failed"
    return _default_code(status_code), message, None


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    """Envelope for HTTP errors raised by FastAPI, Starlette routing and auth dependencies."""
    headers = getattr(exc, "headers", None)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": exc.detail}, status_code=exc.status_code, headers=headers)
    code, message, details = _detail_parts(exc.detail, exc.status_code)
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=exc.status_code, headers=headers)


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": jsonable_encoder(exc.errors())}, status_code=422)
    payload = error_response(
        request=request,
        code="VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )
    return JSONResponse(content=payload, status_code=422)


async def tabula_error_handler(request: Request, exc: TabulaError) -> JSONResponse:
    # Domain errors carry their own stable code; only the status is decided here.
    status_code = status_for_error(exc)
    if status_code >= 500:
        logger.error("tabula_error code=%s path=%s message=%s", exc.code, request.url.path, exc.message)
    payload = error_response(
        request=request,
        code=exc.code,
        message=exc.message,
        details=jsonable_encoder(exc.details) or None,
    )
    return JSONResponse(content=payload, status_code=status_code)


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Never leak stack traces; the log keeps them.
    logger.exception("unhandled_exception path=%s", request.url.path, exc_info=exc)
    if not is_versioned_request(request):
        return JSONResponse(content={"detail": "Internal Server Error"}, status_code=500)
    payload = error_response(
        request=request,
        code="INTERNAL_ERROR",
        message="Internal server error",
    )
    return JSONResponse(content=payload, status_code=500)
