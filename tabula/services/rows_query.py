from __future__ import annotations

import csv
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
import io
import logging
import math
import time
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.core.config import get_settings
from tabula.core.errors import ValidationError
from tabula.domain.models import DataColumn, DataRow
from tabula.domain.payloads import FilterPayload
from tabula.persistence.repos import rows as rows_repo
from tabula.persistence.repos import schema as schema_repo
from tabula.services.coercion import COLUMN_TYPE_REFERENCE, coerce_value, parse_reference
from tabula.services.filter_cache import (
    CacheEntry,
    FilterCache,
    build_cache_key,
    build_filter_hash,
)
from tabula.services.filter_engine import (
    ValidatedQuery,
    build_order_by,
    build_where,
    validate_payload,
)
from tabula.services.permissions import (
    ACTION_READ,
    RESOURCE_TABLE,
    Caller,
    authorize,
    column_scope,
    ensure_table_access,
    has_admin_bypass,
)
from tabula.services.schema_registry import get_table


logger = logging.getLogger(__name__)


@dataclass
class FilteredRowsResponse:
    data: list[dict[str, Any]]
    pagination: dict[str, Any]
    filters: dict[str, Any]
    performance: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "data": self.data,
            "pagination": self.pagination,
            "filters": self.filters,
            "performance": self.performance,
        }


def _json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def build_pagination(page: int, page_size: int, total_rows: int) -> dict[str, Any]:
    total_pages = math.ceil(total_rows / page_size) if total_rows else 0
    return {
        "page": page,
        "pageSize": page_size,
        "totalRows": total_rows,
        "totalPages": total_pages,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


def _filters_summary(payload: FilterPayload, query: ValidatedQuery) -> dict[str, Any]:
    return {
        "applied": bool(query.filters) or bool(query.global_search),
        "globalSearch": query.global_search,
        "columnFilters": [item.model_dump(by_alias=True) for item in payload.filters],
        "validFiltersCount": len(query.filters),
    }


def _column_summary(column: DataColumn) -> dict[str, Any]:
    return {
        "id": column.id,
        "name": column.name,
        "type": column.type,
        "order": column.order,
        "referenceTableId": column.reference_table_id,
        "semanticType": column.semantic_type,
    }


async def readable_reference_tables(
    session: AsyncSession,
    caller: Caller,
    columns: list[DataColumn],
    readable: set[int] | None,
) -> set[int]:
    """Tables targeted by the caller's readable reference columns that the caller may read."""
    targets = {
        column.reference_table_id
        for column in columns
        if column.type == COLUMN_TYPE_REFERENCE
        and column.reference_table_id is not None
        and (readable is None or column.id in readable)
    }
    if has_admin_bypass(caller):
        return targets
    allowed: set[int] = set()
    for table_id in sorted(targets):
        if await authorize(
            session,
            user_id=caller.user_id,
            tenant_id=caller.tenant_id,
            resource_type=RESOURCE_TABLE,
            resource_id=table_id,
            action=ACTION_READ,
        ):
            allowed.add(table_id)
    return allowed


async def _display_values(
    session: AsyncSession,
    references: dict[int, set[int]],
    reference_tables: set[int],
) -> dict[tuple[int, int], Any]:
    """Resolve display values for referenced rows, keyed by (table id, row id).

    The display column is the referenced table's primary column, else its first
    column by order. Tables outside ``reference_tables`` resolve to nothing.
    """
    resolved: dict[tuple[int, int], Any] = {}
    visible = sorted(table_id for table_id in references if table_id in reference_tables)
    if not visible:
        return resolved
    target_columns = await schema_repo.list_columns_for_tables(session, visible)
    display_by_table: dict[int, DataColumn] = {}
    for column in target_columns:
        current = display_by_table.get(column.table_id)
        if current is None or (column.primary and not current.primary):
            display_by_table[column.table_id] = column

    for table_id in visible:
        display = display_by_table.get(table_id)
        if display is None:
            continue
        for cell in await rows_repo.list_cells(session, references[table_id], [display.id]):
            resolved[(table_id, cell.row_id)] = _json_value(coerce_value(display.type, cell.value))
    return resolved


async def _serialize_rows(
    session: AsyncSession,
    rows: list[DataRow],
    columns: list[DataColumn],
    readable: set[int] | None,
    include_cells: bool,
    reference_tables: set[int],
) -> list[dict[str, Any]]:
    serialized = [
        {
            "id": row.id,
            "tableId": row.table_id,
            "createdAt": _json_value(row.created_at),
            "updatedAt": _json_value(row.updated_at),
        }
        for row in rows
    ]
    if not include_cells:
        return serialized

    visible = [column for column in columns if readable is None or column.id in readable]
    by_id = {column.id: column for column in visible}
    cells = await rows_repo.list_cells(session, [row.id for row in rows], list(by_id))

    references: dict[int, set[int]] = {}
    for cell in cells:
        column = by_id[cell.column_id]
        if column.type == COLUMN_TYPE_REFERENCE and column.reference_table_id is not None:
            ref = parse_reference(cell.value)
            if ref is not None:
                references.setdefault(column.reference_table_id, set()).add(ref)
    display = await _display_values(session, references, reference_tables) if references else {}

    by_row: dict[int, list[dict[str, Any]]] = {}
    for cell in cells:
        column = by_id[cell.column_id]
        value = coerce_value(column.type, cell.value)
        item = {
            "id": cell.id,
            "rowId": cell.row_id,
            "columnId": cell.column_id,
            "value": _json_value(value),
            "column": _column_summary(column),
        }
        if column.type == COLUMN_TYPE_REFERENCE:
            item["displayValue"] = display.get((column.reference_table_id, value))
        by_row.setdefault(cell.row_id, []).append(item)

    for row in serialized:
        # Cells follow the table's column order.
        row["cells"] = sorted(
            by_row.get(row["id"], []),
            key=lambda item: (item["column"]["order"], item["columnId"]),
        )
    return serialized


async def _run_query(
    session: AsyncSession,
    table_id: int,
    query: ValidatedQuery,
    now: datetime,
) -> tuple[int, list[DataRow]]:
    conditions = build_where(table_id, query, now)
    total = await session.execute(select(func.count()).select_from(DataRow).where(*conditions))
    total_rows = int(total.scalar_one())
    result = await session.execute(
        select(DataRow)
        .where(*conditions)
        .order_by(*build_order_by(query))
        .offset(query.offset)
        .limit(query.page_size)
    )
    return total_rows, list(result.scalars().all())


async def list_rows(
    session: AsyncSession,
    *,
    caller: Caller,
    table_id: int,
    payload: FilterPayload,
    cache: FilterCache | None = None,
    now: datetime | None = None,
) -> FilteredRowsResponse:
    """Filtered, sorted and paginated listing of one table's rows.

    Authorization runs first, then validation, so nothing touches cell data for
    a request that is denied or malformed. Cached pages are keyed per caller
    column scope and per readable referenced table.
    """
    started = time.perf_counter()
    now = now or datetime.now(timezone.utc)

    await ensure_table_access(session, caller, table_id, ACTION_READ, now=now)
    table = await get_table(session, tenant_id=caller.tenant_id, table_id=table_id)
    columns = await schema_repo.list_columns(session, table.id)
    readable = await column_scope(session, caller, table.id, columns, now=now)
    query = validate_payload(payload, columns, readable=readable)

    reference_tables = await readable_reference_tables(session, caller, columns, readable)
    key = build_cache_key(
        table.id,
        payload,
        page_size=query.page_size,
        sort_by=query.sort_by,
        column_scope=readable,
        reference_scope=reference_tables,
    )
    filters = _filters_summary(payload, query)
    if cache is not None:
        entry = await cache.get(key)
        if entry is not None:
            logger.debug("filter_cache_hit table_id=%s key=%s", table.id, key)
            return FilteredRowsResponse(
                data=entry.data,
                pagination=entry.pagination,
                filters=filters,
                performance={
                    "queryTimeMs": round((time.perf_counter() - started) * 1000, 3),
                    "filteredRows": entry.pagination["totalRows"],
                    "originalTableSize": entry.original_table_size,
                    "cacheHit": True,
                },
            )

    total_rows, rows = await _run_query(session, table.id, query, now)
    data = await _serialize_rows(
        session, rows, columns, readable, query.include_cells, reference_tables
    )
    pagination = build_pagination(query.page, query.page_size, total_rows)
    original_size = await rows_repo.count_rows_for_table(session, table.id)

    if cache is not None:
        await cache.set(
            key,
            CacheEntry(
                data=data,
                pagination=pagination,
                inserted_at=cache.now(),
                filter_hash=build_filter_hash(payload.filters),
                table_id=table.id,
                filter_column_ids=sorted({item.column.id for item in query.filters}),
                sort_by=query.sort_by,
                include_cells=query.include_cells,
                global_search=bool(query.global_search),
                original_table_size=original_size,
            ),
        )

    elapsed_ms = round((time.perf_counter() - started) * 1000, 3)
    logger.debug(
        "rows_listed tenant_id=%s table_id=%s total=%s page=%s elapsed_ms=%s",
        caller.tenant_id,
        table.id,
        total_rows,
        query.page,
        elapsed_ms,
    )
    return FilteredRowsResponse(
        data=data,
        pagination=pagination,
        filters=filters,
        performance={
            "queryTimeMs": elapsed_ms,
            "filteredRows": total_rows,
            "originalTableSize": original_size,
            "cacheHit": False,
        },
    )


EXPORT_FORMAT_CSV = "csv"
EXPORT_FORMAT_JSON = "json"
EXPORT_FORMATS = (EXPORT_FORMAT_CSV, EXPORT_FORMAT_JSON)
CSV_DELIMITER = ";"


@dataclass
class RowExport:
    table_id: int
    headers: list[str]
    records: list[dict[str, Any]]

    def to_csv(self) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, delimiter=CSV_DELIMITER, lineterminator="\n")
        writer.writerow(self.headers)
        for record in self.records:
            writer.writerow([_csv_value(record["values"].get(header)) for header in self.headers])
        return buffer.getvalue()


def _csv_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _export_limit(limit: int | None) -> int:
    settings = get_settings()
    if limit is None:
        limit = settings.export_default_limit
    return min(max(1, int(limit)), settings.export_max_limit)


async def export_rows(
    session: AsyncSession,
    *,
    caller: Caller,
    table_id: int,
    payload: FilterPayload,
    export_format: str = EXPORT_FORMAT_CSV,
    limit: int | None = None,
    now: datetime | None = None,
) -> RowExport:
    """Rows matching a filtered listing request, flattened to column names.

    Access, column scope, filters, search and sort behave exactly as in
    ``list_rows``; pagination is replaced by a single bounded batch. Reference
    cells export their display value when the caller can read the referenced
    table, else the referenced row id.
    """
    if export_format not in EXPORT_FORMATS:
        raise ValidationError(
            f"Unsupported export format '{export_format}'",
            supported=list(EXPORT_FORMATS),
        )
    now = now or datetime.now(timezone.utc)

    await ensure_table_access(session, caller, table_id, ACTION_READ, now=now)
    table = await get_table(session, tenant_id=caller.tenant_id, table_id=table_id)
    columns = await schema_repo.list_columns(session, table.id)
    readable = await column_scope(session, caller, table.id, columns, now=now)
    query = validate_payload(payload, columns, readable=readable)
    query = replace(query, page=1, page_size=_export_limit(limit))

    _, rows = await _run_query(session, table.id, query, now)
    reference_tables = await readable_reference_tables(session, caller, columns, readable)
    serialized = await _serialize_rows(session, rows, columns, readable, True, reference_tables)

    visible = [column for column in columns if readable is None or column.id in readable]
    records = []
    for row in serialized:
        values: dict[str, Any] = {column.name: None for column in visible}
        for cell in row["cells"]:
            value = cell["value"]
            if cell.get("displayValue") is not None:
                value = cell["displayValue"]
            values[cell["column"]["name"]] = value
        records.append(
            {
                "id": row["id"],
                "createdAt": row["createdAt"],
                "updatedAt": row["updatedAt"],
                "values": values,
            }
        )
    logger.info(
        "rows_exported tenant_id=%s table_id=%s format=%s rows=%s",
        caller.tenant_id,
        table.id,
        export_format,
        len(records),
    )
    return RowExport(
        table_id=table.id,
        headers=[column.name for column in visible],
        records=records,
    )
