from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.deps import get_caller, get_db, require_admin
from tabula.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tabula.apps.api.response import success_response
from tabula.core.errors import NotFoundError, PermissionDeniedError
from tabula.services.permissions import (
    RESOURCE_COLUMN,
    RESOURCE_DASHBOARD,
    RESOURCE_TABLE,
    Caller,
    authorize,
    grant_column_permission,
    grant_dashboard_permission,
    grant_table_permission,
    has_admin_bypass,
    list_expiring_soon,
    revoke_permission,
)


router = APIRouter(prefix="/tenants/{tenant_id}/permissions", tags=["permissions"], responses=DEFAULT_ERROR_RESPONSES)

_RESOURCE_PATHS = {
    "tables": RESOURCE_TABLE,
    "columns": RESOURCE_COLUMN,
    "dashboards": RESOURCE_DASHBOARD,
}


class _GrantBase(BaseModel):
    expires_at: datetime | None = Field(default=None, alias="expiresAt")

    model_config = {"extra": "forbid", "populate_by_name": True}


class TableGrantRequest(_GrantBase):
    can_read: bool = Field(default=True, alias="canRead")
    can_edit: bool = Field(default=False, alias="canEdit")
    can_delete: bool = Field(default=False, alias="canDelete")


class ColumnGrantRequest(_GrantBase):
    can_read: bool = Field(default=True, alias="canRead")
    can_edit: bool = Field(default=False, alias="canEdit")


class DashboardGrantRequest(_GrantBase):
    can_view: bool = Field(default=True, alias="canView")
    can_edit: bool = Field(default=False, alias="canEdit")
    can_delete: bool = Field(default=False, alias="canDelete")
    can_share: bool = Field(default=False, alias="canShare")


class AuthorizeRequest(BaseModel):
    resource_type: str = Field(alias="resourceType")
    resource_id: int = Field(alias="resourceId")
    action: str
    # Admins may check on behalf of another user; members only for themselves.
    user_id: str | None = Field(default=None, alias="userId")

    model_config = {"extra": "forbid", "populate_by_name": True}


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _grant_payload(resource_type: str, resource_id: int, grant, flags: tuple[str, ...]) -> dict:
    return {
        "id": grant.id,
        "resourceType": resource_type,
        "resourceId": resource_id,
        "userId": grant.user_id,
        "grantedBy": grant.granted_by,
        "expiresAt": _iso(grant.expires_at),
        **{flag: bool(getattr(grant, flag)) for flag in flags},
    }


@router.put("/tables/{table_id}/users/{user_id}")
async def grant_table_route(
    table_id: int,
    user_id: str,
    request: Request,
    payload: TableGrantRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await grant_table_permission(
        db,
        tenant_id=caller.tenant_id,
        table_id=table_id,
        user_id=user_id,
        can_read=payload.can_read,
        can_edit=payload.can_edit,
        can_delete=payload.can_delete,
        expires_at=payload.expires_at,
        granted_by=caller.user_id,
    )
    data = _grant_payload(RESOURCE_TABLE, table_id, grant, ("can_read", "can_edit", "can_delete"))
    return success_response(request=request, data=data)


@router.put("/columns/{column_id}/users/{user_id}")
async def grant_column_route(
    column_id: int,
    user_id: str,
    request: Request,
    payload: ColumnGrantRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await grant_column_permission(
        db,
        tenant_id=caller.tenant_id,
        column_id=column_id,
        user_id=user_id,
        can_read=payload.can_read,
        can_edit=payload.can_edit,
        expires_at=payload.expires_at,
        granted_by=caller.user_id,
    )
    data = _grant_payload(RESOURCE_COLUMN, column_id, grant, ("can_read", "can_edit"))
    return success_response(request=request, data=data)


@router.put("/dashboards/{dashboard_id}/users/{user_id}")
async def grant_dashboard_route(
    dashboard_id: int,
    user_id: str,
    request: Request,
    payload: DashboardGrantRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grant = await grant_dashboard_permission(
        db,
        tenant_id=caller.tenant_id,
        dashboard_id=dashboard_id,
        user_id=user_id,
        can_view=payload.can_view,
        can_edit=payload.can_edit,
        can_delete=payload.can_delete,
        can_share=payload.can_share,
        expires_at=payload.expires_at,
        granted_by=caller.user_id,
    )
    data = _grant_payload(
        RESOURCE_DASHBOARD,
        dashboard_id,
        grant,
        ("can_view", "can_edit", "can_delete", "can_share"),
    )
    return success_response(request=request, data=data)


@router.delete("/{resource_path}/{resource_id}/users/{user_id}")
async def revoke_route(
    resource_path: str,
    resource_id: int,
    user_id: str,
    request: Request,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    resource_type = _RESOURCE_PATHS.get(resource_path)
    if resource_type is None:
        raise NotFoundError("Unknown permission resource", resource=resource_path)
    revoked = await revoke_permission(
        db,
        tenant_id=caller.tenant_id,
        resource_type=resource_type,
        resource_id=resource_id,
        user_id=user_id,
        revoked_by=caller.user_id,
    )
    if not revoked:
        raise NotFoundError("Grant not found", resource_type=resource_type, resource_id=resource_id)
    return success_response(
        request=request,
        data={"resourceType": resource_type, "resourceId": resource_id, "userId": user_id, "revoked": True},
    )


@router.get("/expiring")
async def expiring_route(
    request: Request,
    within_days: int | None = Query(default=None, alias="withinDays", ge=0),
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    grants = await list_expiring_soon(db, tenant_id=caller.tenant_id, within_days=within_days)
    data = [
        {
            "resourceType": grant.resource_type,
            "resourceId": grant.resource_id,
            "grantId": grant.grant_id,
            "userId": grant.user_id,
            "expiresAt": _iso(grant.expires_at),
        }
        for grant in grants
    ]
    return success_response(request=request, data=data)


@router.post("/check")
async def authorize_route(
    request: Request,
    payload: AuthorizeRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Decision endpoint for collaborators such as dashboard rendering.
    user_id = payload.user_id or caller.user_id
    if user_id != caller.user_id and not caller.is_admin:
        raise PermissionDeniedError()
    if user_id == caller.user_id and has_admin_bypass(caller) and payload.resource_type != RESOURCE_DASHBOARD:
        allowed = True
    else:
        allowed = await authorize(
            db,
            user_id=user_id,
            tenant_id=caller.tenant_id,
            resource_type=payload.resource_type,
            resource_id=payload.resource_id,
            action=payload.action,
        )
    return success_response(
        request=request,
        data={
            "userId": user_id,
            "resourceType": payload.resource_type,
            "resourceId": payload.resource_id,
            "action": payload.action,
            "allowed": allowed,
        },
    )
