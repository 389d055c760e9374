from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.rate_limit import RateLimiter, enforce_rate_limit
from tabula.persistence.db import get_session
from tabula.services.filter_cache import FilterCache
from tabula.services.permissions import ROLE_ADMIN, Caller


ROLE_MEMBER = "member"
_KNOWN_ROLES = {ROLE_ADMIN, ROLE_MEMBER}


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def _auth_error(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
    )


def _forbidden_error(message: str) -> HTTPException:
    # Use 403 for identified callers lacking permissions.
    return HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail={"code": "AUTH_FORBIDDEN", "message": message},
    )


def caller_from_headers(request: Request) -> Caller:
    """Read the identity forwarded by the session provider.

    The provider authenticates users upstream; this service trusts
    ``X-Tenant-Id``, ``X-User-Id`` and ``X-Role`` as given.
    """
    tenant_id = (request.headers.get("X-Tenant-Id") or "").strip()
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not tenant_id or not user_id:
        raise _auth_error("X-Tenant-Id and X-User-Id headers are required")
    role = (request.headers.get("X-Role") or ROLE_MEMBER).strip().lower()
    if role not in _KNOWN_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "AUTH_INVALID_ROLE", "message": f"Unknown role '{role}'"},
        )
    return Caller(tenant_id=tenant_id, user_id=user_id, role=role)


def get_filter_cache(request: Request) -> FilterCache | None:
    return getattr(request.app.state, "filter_cache", None)


def get_rate_limiter(request: Request) -> RateLimiter | None:
    return getattr(request.app.state, "rate_limiter", None)


async def get_caller(
    tenant_id: str,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db),
) -> Caller:
    # Tenant-scoped routes must match the caller's own tenant.
    caller = caller_from_headers(request)
    if caller.tenant_id != tenant_id:
        raise _forbidden_error("Tenant mismatch")
    request.state.caller = caller
    await enforce_rate_limit(
        request=request,
        response=response,
        caller=caller,
        limiter=get_rate_limiter(request),
        db=db,
    )
    return caller


async def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if caller.role != ROLE_ADMIN:
        raise _forbidden_error("Admin role required")
    return caller
