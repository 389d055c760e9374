from __future__ import annotations

from typing import Any

from tabula.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int | str, dict[str, Any]] = {
    400: _response(
        "Invalid input",
        _error_example(
            code="INVALID_OPERATOR",
            message="Operator 'greater_than' is not valid for text column 'name'",
            details={"column_id": 12, "operator": "greater_than"},
        ),
    ),
    401: _response(
        "Missing identity headers",
        _error_example(code="AUTH_UNAUTHORIZED", message="X-Tenant-Id and X-User-Id headers are required"),
    ),
    402: _response(
        "Plan limit exceeded",
        _error_example(
            code="PLAN_LIMIT_EXCEEDED",
            message="Plan limit reached for tables: 50/50",
            details={"resource": "tables", "current": 50, "limit": 50},
        ),
    ),
    403: _response("Forbidden", _error_example(code="PERMISSION_DENIED", message="Access denied")),
    404: _response("Not found", _error_example(code="NOT_FOUND", message="Table not found")),
    422: _response(
        "Required fields missing or request malformed",
        _error_example(
            code="REQUIRED_FIELD_MISSING",
            message="Missing required columns: email",
            details={"columns": ["email"]},
        ),
    ),
    429: _response(
        "Rate limited",
        _error_example(
            code="RATE_LIMITED",
            message="Rate limit exceeded",
            details={"scope": "user", "route_class": "read", "retry_after_ms": 1200},
        ),
    ),
    500: _response("Internal server error", _error_example(code="INTERNAL_ERROR", message="Internal server error")),
}
