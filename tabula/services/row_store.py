from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import logging
from typing import Any, Mapping, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from tabula.core.config import get_settings
from tabula.core.errors import NotFoundError, RequiredFieldError, TabulaError, ValidationError
from tabula.domain.models import DataCell, DataColumn, DataRow
from tabula.persistence.repos import rows as rows_repo
from tabula.persistence.repos import schema as schema_repo
from tabula.services.coercion import (
    COLUMN_TYPE_CUSTOM_ARRAY,
    COLUMN_TYPE_REFERENCE,
    EncodedValue,
    coerce_value,
    encode_value,
    is_empty_value,
    parse_reference,
)
from tabula.services.filter_cache import FilterCache
from tabula.services.plan_limits import check_row_quota
from tabula.services.schema_registry import get_table, invalidate_cached_pages


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CellRecord:
    column_id: int
    value: Any
    raw: str | None


@dataclass(frozen=True)
class RowRecord:
    id: int
    table_id: int
    created_at: datetime | None
    updated_at: datetime | None
    cells: dict[int, CellRecord] = field(default_factory=dict)

    def values(self) -> dict[int, Any]:
        return {column_id: cell.value for column_id, cell in self.cells.items()}


def _parse_column_key(raw_key: Any) -> int:
    # JSON bodies carry column ids as strings.
    try:
        return int(raw_key)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid column id '{raw_key}'", column_id=str(raw_key)) from None


async def _prepare_values(
    session: AsyncSession,
    *,
    table_id: int,
    columns: dict[int, DataColumn],
    values: Mapping[Any, Any],
    row_id: int | None = None,
) -> dict[int, EncodedValue | None]:
    """Validate a write and encode each value; ``None`` marks a cell to clear.

    Every check runs before anything is written so a rejected write leaves the
    row untouched.
    """
    prepared: dict[int, EncodedValue | None] = {}
    references: dict[int, list[int]] = {}
    for raw_key, raw_value in values.items():
        column_id = _parse_column_key(raw_key)
        column = columns.get(column_id)
        if column is None:
            raise ValidationError(
                f"Column {column_id} does not belong to table {table_id}",
                column_id=column_id,
                table_id=table_id,
            )
        if is_empty_value(raw_value):
            prepared[column_id] = None
            continue
        if column.type == COLUMN_TYPE_REFERENCE:
            ref = parse_reference(raw_value)
            if ref is None:
                raise ValidationError(
                    f"Reference value for column '{column.name}' must be a row id",
                    column_id=column_id,
                )
            references.setdefault(column.reference_table_id, []).append(ref)
        elif column.type == COLUMN_TYPE_CUSTOM_ARRAY:
            if str(raw_value).strip() not in (column.custom_options or []):
                raise ValidationError(
                    f"Value '{raw_value}' is not an option of column '{column.name}'",
                    column_id=column_id,
                    options=column.custom_options,
                )
            raw_value = str(raw_value).strip()
        encoded = encode_value(column.type, raw_value)
        if column.unique and await rows_repo.value_taken(
            session, column_id, encoded.text or "", exclude_row_id=row_id
        ):
            raise ValidationError(
                f"Value '{encoded.text}' already exists in unique column '{column.name}'",
                column_id=column_id,
            )
        prepared[column_id] = encoded

    for target_table_id, ref_ids in references.items():
        if target_table_id is None:
            raise ValidationError("Reference column has no target table")
        found = await rows_repo.existing_row_ids(session, target_table_id, ref_ids)
        missing = sorted(set(ref_ids) - found)
        if missing:
            raise ValidationError(
                f"Referenced rows {missing} do not exist in table {target_table_id}",
                reference_table_id=target_table_id,
                missing=missing,
            )
    return prepared


def _apply(cell: DataCell, encoded: EncodedValue) -> None:
    cell.value = encoded.text
    cell.number_value = encoded.number
    cell.date_value = encoded.date
    cell.boolean_value = encoded.boolean


def _to_record(row: DataRow, cells: list[DataCell], columns: dict[int, DataColumn]) -> RowRecord:
    records = {}
    for cell in cells:
        column = columns.get(cell.column_id)
        if column is None:
            continue
        records[cell.column_id] = CellRecord(
            column_id=cell.column_id,
            value=coerce_value(column.type, cell.value),
            raw=cell.value,
        )
    return RowRecord(
        id=row.id,
        table_id=row.table_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        cells=records,
    )


async def _columns_by_id(session: AsyncSession, table_id: int) -> dict[int, DataColumn]:
    return {column.id: column for column in await schema_repo.list_columns(session, table_id)}


def _missing_required(
    columns: dict[int, DataColumn], prepared: Mapping[int, EncodedValue | None]
) -> list[str]:
    return [
        column.name
        for column in columns.values()
        if column.required and prepared.get(column.id) is None
    ]


async def _insert_row(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    prepared: Mapping[int, EncodedValue | None],
) -> tuple[DataRow, list[DataCell]]:
    # Flushes without committing; callers own the transaction.
    row = DataRow(tenant_id=tenant_id, table_id=table_id)
    session.add(row)
    await session.flush()
    cells = []
    for column_id, encoded in prepared.items():
        if encoded is None:
            continue
        cell = DataCell(row_id=row.id, column_id=column_id)
        _apply(cell, encoded)
        cells.append(cell)
    session.add_all(cells)
    await session.flush()
    return row, cells


async def create_row(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    values: Mapping[Any, Any],
    cache: FilterCache | None = None,
) -> RowRecord:
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    columns = await _columns_by_id(session, table.id)
    prepared = await _prepare_values(session, table_id=table.id, columns=columns, values=values)
    missing = _missing_required(columns, prepared)
    if missing:
        raise RequiredFieldError(missing)
    await check_row_quota(session, tenant_id)

    try:
        row, cells = await _insert_row(session, tenant_id=tenant_id, table_id=table.id, prepared=prepared)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(row)

    await invalidate_cached_pages(session, cache, table.id)
    logger.debug("row_created tenant_id=%s table_id=%s row_id=%s", tenant_id, table.id, row.id)
    return _to_record(row, cells, columns)


async def read_rows(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    row_ids: list[int] | None = None,
) -> list[RowRecord]:
    # Typed read path; values are coerced per column type and never raise.
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    columns = await _columns_by_id(session, table.id)
    rows = await rows_repo.list_rows(session, table.id, row_ids)
    cells = await rows_repo.list_cells(session, [row.id for row in rows])
    by_row: dict[int, list[DataCell]] = {}
    for cell in cells:
        by_row.setdefault(cell.row_id, []).append(cell)
    return [_to_record(row, by_row.get(row.id, []), columns) for row in rows]


async def update_row(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    row_id: int,
    values: Mapping[Any, Any],
    cache: FilterCache | None = None,
) -> RowRecord:
    """Apply a partial update to one row; empty values clear the cell.

    Either every cell change is committed or none is.
    """
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    row = await rows_repo.get_row(session, table.id, row_id)
    if row is None:
        raise NotFoundError("Row not found", row_id=row_id)
    columns = await _columns_by_id(session, table.id)
    prepared = await _prepare_values(
        session, table_id=table.id, columns=columns, values=values, row_id=row.id
    )
    cleared_required = [
        columns[column_id].name
        for column_id, encoded in prepared.items()
        if encoded is None and columns[column_id].required
    ]
    if cleared_required:
        raise RequiredFieldError(cleared_required)

    existing = {cell.column_id: cell for cell in await rows_repo.list_cells(session, [row.id])}
    try:
        for column_id, encoded in prepared.items():
            cell = existing.get(column_id)
            if encoded is None:
                if cell is not None:
                    await session.delete(cell)
                    del existing[column_id]
                continue
            if cell is None:
                cell = DataCell(row_id=row.id, column_id=column_id)
                session.add(cell)
                existing[column_id] = cell
            _apply(cell, encoded)
        # Touch the row so updated_at moves even when only cells changed.
        row.updated_at = datetime.now(timezone.utc)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await session.refresh(row)

    await invalidate_cached_pages(session, cache, table.id)
    logger.debug("row_updated tenant_id=%s table_id=%s row_id=%s", tenant_id, table.id, row.id)
    return _to_record(row, list(existing.values()), columns)


async def delete_row(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    row_id: int,
    cache: FilterCache | None = None,
) -> None:
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    row = await rows_repo.get_row(session, table.id, row_id)
    if row is None:
        raise NotFoundError("Row not found", row_id=row_id)
    try:
        await rows_repo.delete_cells_for_rows(session, [row.id])
        await session.delete(row)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await invalidate_cached_pages(session, cache, table.id)
    logger.debug("row_deleted tenant_id=%s table_id=%s row_id=%s", tenant_id, table.id, row_id)


@dataclass
class ImportResult:
    imported: list[int] = field(default_factory=list)
    # 1-based positions in the submitted batch.
    skipped: list[int] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "imported": len(self.imported),
            "rowIds": self.imported,
            "skipped": self.skipped,
            "errors": self.errors,
        }


async def import_rows(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    rows: Sequence[Mapping[Any, Any]],
    cache: FilterCache | None = None,
) -> ImportResult:
    """Bulk insert rows, each validated like a single create.

    A row is written whole or not at all: rows that fail validation are
    reported and left out, empty rows are skipped. When more than half of the
    batch fails, or nothing is left to write, the whole import is rejected and
    nothing is committed.
    """
    settings = get_settings()
    if not rows:
        raise ValidationError("No rows provided for import")
    if len(rows) > settings.import_max_rows:
        raise ValidationError(
            f"Import of {len(rows)} rows exceeds the maximum of {settings.import_max_rows}",
            max_rows=settings.import_max_rows,
        )
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    columns = await _columns_by_id(session, table.id)

    result = ImportResult()
    candidates: list[tuple[int, Mapping[Any, Any]]] = []
    for position, values in enumerate(rows, start=1):
        if all(is_empty_value(value) for value in values.values()):
            result.skipped.append(position)
        else:
            candidates.append((position, values))
    if candidates:
        await check_row_quota(session, tenant_id, adding=len(candidates))

    try:
        for position, values in candidates:
            try:
                prepared = await _prepare_values(
                    session, table_id=table.id, columns=columns, values=values
                )
                missing = _missing_required(columns, prepared)
                if missing:
                    raise RequiredFieldError(missing)
            except TabulaError as exc:
                result.errors.append(
                    {"row": position, "code": exc.code, "message": exc.message, "details": exc.details}
                )
                continue
            row, _ = await _insert_row(session, tenant_id=tenant_id, table_id=table.id, prepared=prepared)
            result.imported.append(row.id)

        threshold = max(1, len(rows) // 2)
        if len(result.errors) > threshold or not result.imported:
            raise ValidationError(
                "Import rejected: no rows were written",
                total_errors=len(result.errors),
                errors=result.errors[:10],
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise

    await invalidate_cached_pages(session, cache, table.id)
    logger.info(
        "rows_imported tenant_id=%s table_id=%s imported=%s skipped=%s failed=%s",
        tenant_id,
        table.id,
        len(result.imported),
        len(result.skipped),
        len(result.errors),
    )
    return result
