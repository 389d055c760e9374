from __future__ import annotations

from datetime import datetime, timezone
import json
from typing import Any

from fastapi import APIRouter, Depends, Query, Request, Response, status
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.deps import get_caller, get_db, get_filter_cache
from tabula.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tabula.apps.api.response import success_response
from tabula.core.errors import NotFoundError, ValidationError
from tabula.domain.payloads import FilterPayload
from tabula.persistence.repos import schema as schema_repo
from tabula.services.filter_cache import FilterCache
from tabula.services.permissions import (
    ACTION_DELETE,
    ACTION_EDIT,
    ACTION_READ,
    Caller,
    column_scope,
    ensure_column_access,
    ensure_table_access,
)
from tabula.services.row_store import (
    RowRecord,
    create_row,
    delete_row,
    import_rows,
    read_rows,
    update_row,
)
from tabula.services.rows_query import EXPORT_FORMAT_CSV, EXPORT_FORMAT_JSON, export_rows, list_rows


router = APIRouter(
    prefix="/tenants/{tenant_id}/tables/{table_id}/rows",
    tags=["rows"],
    responses=DEFAULT_ERROR_RESPONSES,
)


class RowWriteRequest(BaseModel):
    # Keys are column ids; JSON object keys arrive as strings.
    values: dict[str, Any] = Field(default_factory=dict)

    model_config = {"extra": "forbid"}


class RowImportRequest(BaseModel):
    rows: list[RowWriteRequest] = Field(default_factory=list)

    model_config = {"extra": "forbid"}


def _column_ids(values: dict[str, Any]) -> list[int]:
    ids = []
    for key in values:
        try:
            ids.append(int(key))
        except (TypeError, ValueError):
            continue
    return ids


def _json_value(value: Any) -> Any:
    return value.isoformat() if hasattr(value, "isoformat") else value


def _row_payload(record: RowRecord, readable: set[int] | None) -> dict:
    return {
        "id": record.id,
        "tableId": record.table_id,
        "createdAt": _json_value(record.created_at),
        "updatedAt": _json_value(record.updated_at),
        "values": {
            str(column_id): _json_value(value)
            for column_id, value in sorted(record.values().items())
            if readable is None or column_id in readable
        },
    }


async def _readable_columns(db: AsyncSession, caller: Caller, table_id: int) -> set[int] | None:
    columns = await schema_repo.list_columns(db, table_id)
    return await column_scope(db, caller, table_id, columns)


def _parse_filters(raw: str | None) -> list[Any]:
    if raw is None or not raw.strip():
        return []
    try:
        parsed = json.loads(raw)
    except ValueError as exc:
        raise ValidationError("filters must be valid JSON", reason=str(exc)) from None
    if not isinstance(parsed, list):
        raise ValidationError("filters must be a JSON array")
    return parsed


def _filter_payload(fields: dict[str, Any]) -> FilterPayload:
    try:
        return FilterPayload.model_validate(fields)
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid filter request",
            errors=exc.errors(include_url=False, include_context=False),
        ) from None


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_row_route(
    table_id: int,
    request: Request,
    payload: RowWriteRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    cache: FilterCache | None = Depends(get_filter_cache),
) -> dict:
    await ensure_table_access(db, caller, table_id, ACTION_EDIT)
    await ensure_column_access(db, caller, table_id, _column_ids(payload.values), ACTION_EDIT)
    record = await create_row(
        db,
        tenant_id=caller.tenant_id,
        table_id=table_id,
        values=payload.values,
        cache=cache,
    )
    readable = await _readable_columns(db, caller, table_id)
    return success_response(request=request, data=_row_payload(record, readable))


@router.get("/filtered")
async def list_filtered_rows(
    table_id: int,
    request: Request,
    page: int = Query(default=1),
    page_size: int | None = Query(default=None, alias="pageSize"),
    include_cells: bool = Query(default=True, alias="includeCells"),
    global_search: str = Query(default="", alias="globalSearch"),
    filters: str | None = Query(default=None),
    sort_by: str = Query(default="id", alias="sortBy"),
    sort_order: str = Query(default="asc", alias="sortOrder"),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    cache: FilterCache | None = Depends(get_filter_cache),
) -> dict:
    payload = _filter_payload(
        {
            "page": page,
            "pageSize": page_size,
            "includeCells": include_cells,
            "globalSearch": global_search,
            "filters": _parse_filters(filters),
            "sortBy": sort_by,
            "sortOrder": sort_order.lower(),
        }
    )
    result = await list_rows(db, caller=caller, table_id=table_id, payload=payload, cache=cache)
    return success_response(request=request, data=result.to_dict())


@router.get("/export", response_model=None)
async def export_rows_route(
    table_id: int,
    request: Request,
    export_format: str = Query(default=EXPORT_FORMAT_CSV, alias="format"),
    limit: int | None = Query(default=None),
    global_search: str = Query(default="", alias="globalSearch"),
    filters: str | None = Query(default=None),
    sort_by: str = Query(default="id", alias="sortBy"),
    sort_order: str = Query(default="asc", alias="sortOrder"),
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> Response | dict:
    payload = _filter_payload(
        {
            "globalSearch": global_search,
            "filters": _parse_filters(filters),
            "sortBy": sort_by,
            "sortOrder": sort_order.lower(),
        }
    )
    export = await export_rows(
        db,
        caller=caller,
        table_id=table_id,
        payload=payload,
        export_format=export_format.lower(),
        limit=limit,
    )
    if export_format.lower() == EXPORT_FORMAT_JSON:
        return success_response(request=request, data={"headers": export.headers, "rows": export.records})
    stamp = datetime.now(timezone.utc).strftime("%Y%m%d")
    return Response(
        content=export.to_csv(),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="table_{table_id}_export_{stamp}.csv"'},
    )


@router.post("/import")
async def import_rows_route(
    table_id: int,
    request: Request,
    payload: RowImportRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    cache: FilterCache | None = Depends(get_filter_cache),
) -> dict:
    await ensure_table_access(db, caller, table_id, ACTION_EDIT)
    column_ids = sorted({column_id for row in payload.rows for column_id in _column_ids(row.values)})
    await ensure_column_access(db, caller, table_id, column_ids, ACTION_EDIT)
    result = await import_rows(
        db,
        tenant_id=caller.tenant_id,
        table_id=table_id,
        rows=[row.values for row in payload.rows],
        cache=cache,
    )
    return success_response(request=request, data=result.to_dict())


@router.get("/{row_id}")
async def read_row_route(
    table_id: int,
    row_id: int,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await ensure_table_access(db, caller, table_id, ACTION_READ)
    records = await read_rows(db, tenant_id=caller.tenant_id, table_id=table_id, row_ids=[row_id])
    if not records:
        raise NotFoundError("Row not found", row_id=row_id)
    readable = await _readable_columns(db, caller, table_id)
    return success_response(request=request, data=_row_payload(records[0], readable))


@router.patch("/{row_id}")
async def update_row_route(
    table_id: int,
    row_id: int,
    request: Request,
    payload: RowWriteRequest,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    cache: FilterCache | None = Depends(get_filter_cache),
) -> dict:
    await ensure_table_access(db, caller, table_id, ACTION_EDIT)
    await ensure_column_access(db, caller, table_id, _column_ids(payload.values), ACTION_EDIT)
    record = await update_row(
        db,
        tenant_id=caller.tenant_id,
        table_id=table_id,
        row_id=row_id,
        values=payload.values,
        cache=cache,
    )
    readable = await _readable_columns(db, caller, table_id)
    return success_response(request=request, data=_row_payload(record, readable))


@router.delete("/{row_id}")
async def delete_row_route(
    table_id: int,
    row_id: int,
    request: Request,
    caller: Caller = Depends(get_caller),
    db: AsyncSession = Depends(get_db),
    cache: FilterCache | None = Depends(get_filter_cache),
) -> dict:
    await ensure_table_access(db, caller, table_id, ACTION_DELETE)
    await delete_row(db, tenant_id=caller.tenant_id, table_id=table_id, row_id=row_id, cache=cache)
    return success_response(request=request, data={"id": row_id, "deleted": True})
