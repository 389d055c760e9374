from __future__ import annotations

from collections.abc import Iterable

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.domain.models import DataCell, DataRow


async def get_row(session: AsyncSession, table_id: int, row_id: int) -> DataRow | None:
    result = await session.execute(
        select(DataRow).where(DataRow.id == row_id, DataRow.table_id == table_id)
    )
    return result.scalar_one_or_none()


async def list_rows(
    session: AsyncSession, table_id: int, row_ids: Iterable[int] | None = None
) -> list[DataRow]:
    stmt = select(DataRow).where(DataRow.table_id == table_id)
    if row_ids is not None:
        ids = list(row_ids)
        if not ids:
            return []
        stmt = stmt.where(DataRow.id.in_(ids))
    result = await session.execute(stmt.order_by(DataRow.id))
    return list(result.scalars().all())


async def count_rows_for_table(session: AsyncSession, table_id: int) -> int:
    result = await session.execute(
        select(func.count()).select_from(DataRow).where(DataRow.table_id == table_id)
    )
    return int(result.scalar_one())


async def existing_row_ids(session: AsyncSession, table_id: int, row_ids: Iterable[int]) -> set[int]:
    # Resolve which referenced ids actually exist in the target table.
    ids = list(set(row_ids))
    if not ids:
        return set()
    result = await session.execute(
        select(DataRow.id).where(DataRow.table_id == table_id, DataRow.id.in_(ids))
    )
    return {int(row_id) for row_id in result.scalars().all()}


async def list_cells(
    session: AsyncSession,
    row_ids: Iterable[int],
    column_ids: Iterable[int] | None = None,
) -> list[DataCell]:
    ids = list(row_ids)
    if not ids:
        return []
    stmt = select(DataCell).where(DataCell.row_id.in_(ids))
    if column_ids is not None:
        stmt = stmt.where(DataCell.column_id.in_(list(column_ids)))
    result = await session.execute(stmt.order_by(DataCell.row_id, DataCell.column_id))
    return list(result.scalars().all())


async def delete_cells_for_rows(session: AsyncSession, row_ids: Iterable[int]) -> int:
    ids = list(row_ids)
    if not ids:
        return 0
    result = await session.execute(delete(DataCell).where(DataCell.row_id.in_(ids)))
    return int(result.rowcount or 0)


async def delete_cells_for_column(session: AsyncSession, column_id: int) -> int:
    result = await session.execute(delete(DataCell).where(DataCell.column_id == column_id))
    return int(result.rowcount or 0)


async def delete_rows_for_table(session: AsyncSession, table_id: int) -> int:
    # Delete cells first so no cell outlives its row.
    row_ids = select(DataRow.id).where(DataRow.table_id == table_id)
    await session.execute(delete(DataCell).where(DataCell.row_id.in_(row_ids)))
    result = await session.execute(delete(DataRow).where(DataRow.table_id == table_id))
    return int(result.rowcount or 0)


async def value_taken(
    session: AsyncSession, column_id: int, value: str, *, exclude_row_id: int | None = None
) -> bool:
    stmt = select(DataCell.id).where(DataCell.column_id == column_id, DataCell.value == value)
    if exclude_row_id is not None:
        stmt = stmt.where(DataCell.row_id != exclude_row_id)
    result = await session.execute(stmt.limit(1))
    return result.scalar_one_or_none() is not None
