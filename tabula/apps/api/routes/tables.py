from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.deps import get_caller, get_db, get_filter_cache, require_admin
from tabula.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tabula.apps.api.response import success_response
from tabula.core.errors import PermissionDeniedError
from tabula.domain.payloads import ColumnSpec, TemplateSpec
from tabula.services.filter_cache import FilterCache
from tabula.services.permissions import (
    ACTION_DELETE,
    ACTION_READ,
    Caller,
    column_scope,
    ensure_table_access,
)
from tabula.services.provisioning import provision_template_batch
from tabula.services.schema_registry import (
    create_columns,
    create_table,
    delete_column,
    delete_table,
    describe_table,
)


router = APIRouter(prefix="/tenants/{tenant_id}", tags=["tables"], responses=DEFAULT_ERROR_RESPONSES)


class TableCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    description: str = ""
    is_public: bool = Field(default=False, alias="isPublic")
    columns: list[ColumnSpec] = Field(default_factory=list)

    model_config = {"extra": "forbid", "populate_by_name": True}


class ColumnsCreateRequest(BaseModel):
    columns: list[ColumnSpec] = Field(min_length=1)

    model_config = {"extra": "forbid"}


class TemplateBatchRequest(BaseModel):
    templates: list[TemplateSpec] = Field(min_length=1)

    model_config = {"extra": "forbid"}


def column_payload(column) -> dict:
    return {
        "id": column.id,
        "tableId": column.table_id,
        "name": column.name,
        "type": column.type,
        "semanticType": column.semantic_type,
        "description": column.description,
        "required": column.required,
        "primary": column.primary,
        "unique": column.unique,
        "order": column.order,
        "referenceTableId": column.reference_table_id,
        "customOptions": column.custom_options,
        "defaultValue": column.default_value,
        "isLocked": column.is_locked,
    }


def table_payload(table, columns) -> dict:
    return {
        "id": table.id,
        "databaseId": table.database_id,
        "name": table.name,
        "description": table.description,
        "isPublic": table.is_public,
        "isProtected": table.is_protected,
        "protectedType": table.protected_type,
        "createdAt": table.created_at.isoformat() if table.created_at else None,
        "columns": [column_payload(column) for column in columns],
    }


@router.post("/databases/{database_id}/tables", status_code=status.HTTP_201_CREATED)
async def create_table_route(
    database_id: int,
    request: Request,
    payload: TableCreateRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Table and initial columns land in one transaction.
    try:
        table = await create_table(
            db,
            tenant_id=caller.tenant_id,
            database_id=database_id,
            name=payload.name,
            description=payload.description,
            is_public=payload.is_public,
            actor_id=caller.user_id,
            commit=False,
        )
        columns = []
        if payload.columns:
            columns = await create_columns(
                db,
                tenant_id=caller.tenant_id,
                table_id=table.id,
                columns=payload.columns,
                commit=False,
            )
        await db.commit()
    except Exception:
        await db.rollback()
        raise
    return success_response(request=request, data=table_payload(table, columns))


@router.post("/databases/{database_id}/templates", status_code=status.HTTP_201_CREATED)
async def provision_templates_route(
    database_id: int,
    request: Request,
    payload: TemplateBatchRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    result = await provision_template_batch(
        db,
        tenant_id=caller.tenant_id,
        database_id=database_id,
        templates=payload.templates,
        actor_id=caller.user_id,
    )
    data = {
        "created": [
            {
                "templateId": item.template_id,
                "tableId": item.table_id,
                "name": item.name,
                "columnIds": item.column_ids,
            }
            for item in result.created
        ],
        "errors": [
            {"templateId": item.template_id, "code": item.code, "message": item.message}
            for item in result.errors
        ],
    }
    return success_response(request=request, data=data)


@router.get("/tables/{table_id}")
async def describe_table_route(
    table_id: int,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_table_access(db, caller, table_id, ACTION_READ)
    description = await describe_table(db, tenant_id=caller.tenant_id, table_id=table_id)
    readable = await column_scope(db, caller, table_id, description.columns)
    columns = [column for column in description.columns if readable is None or column.id in readable]
    return success_response(request=request, data=table_payload(description.table, columns))


@router.delete("/tables/{table_id}")
async def delete_table_route(
    table_id: int,
    request: Request,
    force: bool = Query(default=False),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    cache: FilterCache | None = Depends(get_filter_cache),
) -> dict:
    await ensure_table_access(db, caller, table_id, ACTION_DELETE)
    if force and not caller.is_admin:
        raise PermissionDeniedError("Only admins can force-delete protected tables")
    await delete_table(
        db,
        tenant_id=caller.tenant_id,
        table_id=table_id,
        actor_id=caller.user_id,
        force=force,
        cache=cache,
    )
    return success_response(request=request, data={"id": table_id, "deleted": True})


@router.post("/tables/{table_id}/columns", status_code=status.HTTP_201_CREATED)
async def create_columns_route(
    table_id: int,
    request: Request,
    payload: ColumnsCreateRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    columns = await create_columns(
        db,
        tenant_id=caller.tenant_id,
        table_id=table_id,
        columns=payload.columns,
    )
    return success_response(request=request, data=[column_payload(column) for column in columns])


@router.delete("/tables/{table_id}/columns/{column_id}")
async def delete_column_route(
    table_id: int,
    column_id: int,
    request: Request,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
    cache: FilterCache | None = Depends(get_filter_cache),
) -> dict:
    await delete_column(
        db,
        tenant_id=caller.tenant_id,
        table_id=table_id,
        column_id=column_id,
        cache=cache,
    )
    return success_response(request=request, data={"id": column_id, "deleted": True})
