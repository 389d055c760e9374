from __future__ import annotations

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.deps import get_caller, get_db, require_admin
from tabula.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tabula.apps.api.response import success_response
from tabula.persistence.repos import schema as schema_repo
from tabula.services.permissions import (
    ACTION_READ,
    RESOURCE_TABLE,
    Caller,
    authorize,
    has_admin_bypass,
)
from tabula.services.schema_registry import create_database


router = APIRouter(prefix="/tenants/{tenant_id}/databases", tags=["databases"], responses=DEFAULT_ERROR_RESPONSES)


class DatabaseCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)

    model_config = {"extra": "forbid"}


def _database_payload(database) -> dict:
    return {
        "id": database.id,
        "name": database.name,
        "createdAt": database.created_at.isoformat() if database.created_at else None,
    }


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_database_route(
    request: Request,
    payload: DatabaseCreateRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    database = await create_database(db, tenant_id=caller.tenant_id, name=payload.name)
    return success_response(request=request, data=_database_payload(database))


@router.get("")
async def list_databases(
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    databases = await schema_repo.list_databases(db, caller.tenant_id)
    return success_response(request=request, data=[_database_payload(item) for item in databases])


@router.get("/{database_id}/tables")
async def list_tables(
    database_id: int,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Members only see tables they hold a live read grant on.
    tables = await schema_repo.list_tables(db, caller.tenant_id, database_id)
    if not has_admin_bypass(caller):
        visible = []
        for table in tables:
            if await authorize(
                db,
                user_id=caller.user_id,
                tenant_id=caller.tenant_id,
                resource_type=RESOURCE_TABLE,
                resource_id=table.id,
                action=ACTION_READ,
            ):
                visible.append(table)
        tables = visible
    data = [
        {
            "id": table.id,
            "name": table.name,
            "description": table.description,
            "isPublic": table.is_public,
            "isProtected": table.is_protected,
        }
        for table in tables
    ]
    return success_response(request=request, data=data)
