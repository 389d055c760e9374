from __future__ import annotations

from typing import Any
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
_VERSION_PREFIX = f"/{API_VERSION}"


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class ErrorEnvelope(BaseModel):
    # Documents the error shape in OpenAPI; handlers build the dict directly.
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    """Request id for envelopes and audit rows.

    The middleware normally assigns it; handlers reached without the middleware
    (tests mounting routers directly) fall back to the header or a fresh uuid.
    """
    request_id = getattr(request.state, "request_id", None)
    if not request_id:
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
    return request_id


def is_versioned_request(request: Request) -> bool:
    return request.url.path.startswith(_VERSION_PREFIX)


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json", by_alias=True)
    # Load-balancer probes on unversioned paths get the bare payload.
    if not is_versioned_request(request):
        return data
    return {"data": data, "meta": _meta(request)}


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    error = ErrorDetail(code=code, message=message, details=details)
    return {"error": error.model_dump(exclude_none=True), "meta": _meta(request)}
