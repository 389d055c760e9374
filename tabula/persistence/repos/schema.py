from __future__ import annotations

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.domain.models import DataColumn, DataTable, Database
from tabula.persistence.guards import tenant_predicate


async def get_database_for_tenant(
    session: AsyncSession, tenant_id: str, database_id: int
) -> Database | None:
    # Ensure tenant scoping to prevent cross-tenant database access.
    result = await session.execute(
        select(Database).where(Database.id == database_id, tenant_predicate(Database, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_database_by_name(session: AsyncSession, tenant_id: str, name: str) -> Database | None:
    result = await session.execute(
        select(Database).where(tenant_predicate(Database, tenant_id), Database.name == name)
    )
    return result.scalar_one_or_none()


async def list_databases(session: AsyncSession, tenant_id: str) -> list[Database]:
    result = await session.execute(
        select(Database).where(tenant_predicate(Database, tenant_id)).order_by(Database.id)
    )
    return list(result.scalars().all())


async def get_table_for_tenant(session: AsyncSession, tenant_id: str, table_id: int) -> DataTable | None:
    result = await session.execute(
        select(DataTable).where(DataTable.id == table_id, tenant_predicate(DataTable, tenant_id))
    )
    return result.scalar_one_or_none()


async def get_table_by_name(session: AsyncSession, database_id: int, name: str) -> DataTable | None:
    # Table names are unique per database, compared case-insensitively.
    result = await session.execute(
        select(DataTable).where(
            DataTable.database_id == database_id,
            func.lower(DataTable.name) == name.strip().lower(),
        )
    )
    return result.scalars().first()


async def list_tables(session: AsyncSession, tenant_id: str, database_id: int) -> list[DataTable]:
    # Stable ordering avoids non-deterministic API responses for the same tenant.
    result = await session.execute(
        select(DataTable)
        .where(tenant_predicate(DataTable, tenant_id), DataTable.database_id == database_id)
        .order_by(DataTable.id)
    )
    return list(result.scalars().all())


async def list_columns(session: AsyncSession, table_id: int) -> list[DataColumn]:
    result = await session.execute(
        select(DataColumn)
        .where(DataColumn.table_id == table_id)
        .order_by(DataColumn.order, DataColumn.id)
    )
    return list(result.scalars().all())


async def list_columns_for_tables(session: AsyncSession, table_ids: list[int]) -> list[DataColumn]:
    if not table_ids:
        return []
    result = await session.execute(
        select(DataColumn)
        .where(DataColumn.table_id.in_(table_ids))
        .order_by(DataColumn.table_id, DataColumn.order, DataColumn.id)
    )
    return list(result.scalars().all())


async def get_column(session: AsyncSession, table_id: int, column_id: int) -> DataColumn | None:
    result = await session.execute(
        select(DataColumn).where(DataColumn.id == column_id, DataColumn.table_id == table_id)
    )
    return result.scalar_one_or_none()


async def next_column_order(session: AsyncSession, table_id: int) -> int:
    result = await session.execute(
        select(func.max(DataColumn.order)).where(DataColumn.table_id == table_id)
    )
    current = result.scalar_one_or_none()
    return 0 if current is None else int(current) + 1


async def list_inbound_reference_columns(session: AsyncSession, table_id: int) -> list[DataColumn]:
    # Reference columns on other tables that point at this table.
    result = await session.execute(
        select(DataColumn).where(
            DataColumn.reference_table_id == table_id,
            DataColumn.table_id != table_id,
        )
    )
    return list(result.scalars().all())


async def get_column_for_tenant(session: AsyncSession, tenant_id: str, column_id: int) -> DataColumn | None:
    result = await session.execute(
        select(DataColumn).where(DataColumn.id == column_id, tenant_predicate(DataColumn, tenant_id))
    )
    return result.scalar_one_or_none()
