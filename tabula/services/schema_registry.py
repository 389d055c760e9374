from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Mapping

from sqlalchemy import delete
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.core.errors import NotFoundError, ReferenceResolutionError, ValidationError
from tabula.domain.models import DataColumn, DataTable, Database
from tabula.domain.payloads import ColumnSpec
from tabula.persistence.repos import permissions as permissions_repo
from tabula.persistence.repos import rows as rows_repo
from tabula.persistence.repos import schema as schema_repo
from tabula.services.audit import EVENT_TABLE_CREATED, EVENT_TABLE_DELETED, record_event
from tabula.services.coercion import (
    COLUMN_TYPE_CUSTOM_ARRAY,
    COLUMN_TYPE_REFERENCE,
    normalize_column_type,
)
from tabula.services.filter_cache import FilterCache
from tabula.services.plan_limits import check_table_quota


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TableDescription:
    table: DataTable
    columns: list[DataColumn]


def _normalize_name(name: str) -> str:
    cleaned = (name or "").strip()
    if not cleaned:
        raise ValidationError("Name must not be empty")
    return cleaned


async def create_database(
    session: AsyncSession,
    *,
    tenant_id: str,
    name: str,
    commit: bool = True,
) -> Database:
    cleaned = _normalize_name(name)
    if await schema_repo.get_database_by_name(session, tenant_id, cleaned) is not None:
        raise ValidationError(f"Database '{cleaned}' already exists", name=cleaned)
    database = Database(tenant_id=tenant_id, name=cleaned)
    session.add(database)
    await session.flush()
    if commit:
        await session.commit()
    logger.info("database_created tenant_id=%s database_id=%s", tenant_id, database.id)
    return database


async def get_table(session: AsyncSession, *, tenant_id: str, table_id: int) -> DataTable:
    # Tables outside the tenant are indistinguishable from missing ones.
    table = await schema_repo.get_table_for_tenant(session, tenant_id, table_id)
    if table is None:
        raise NotFoundError("Table not found", table_id=table_id)
    return table


async def invalidate_cached_pages(
    session: AsyncSession, cache: FilterCache | None, table_id: int
) -> None:
    """Drop cached pages of a table and of every table whose reference columns point at it."""
    if cache is None:
        return
    await cache.invalidate_table(table_id)
    inbound = await schema_repo.list_inbound_reference_columns(session, table_id)
    for referencing_table_id in sorted({column.table_id for column in inbound}):
        await cache.invalidate_table(referencing_table_id)


async def create_table(
    session: AsyncSession,
    *,
    tenant_id: str,
    database_id: int,
    name: str,
    description: str = "",
    is_public: bool = False,
    is_protected: bool = False,
    protected_type: str | None = None,
    actor_id: str | None = None,
    commit: bool = True,
) -> DataTable:
    database = await schema_repo.get_database_for_tenant(session, tenant_id, database_id)
    if database is None:
        raise NotFoundError("Database not found", database_id=database_id)
    cleaned = _normalize_name(name)
    if await schema_repo.get_table_by_name(session, database_id, cleaned) is not None:
        raise ValidationError(
            f"Table '{cleaned}' already exists in this database",
            name=cleaned,
            database_id=database_id,
        )
    await check_table_quota(session, tenant_id)

    table = DataTable(
        tenant_id=tenant_id,
        database_id=database_id,
        name=cleaned,
        description=description or "",
        is_public=is_public,
        is_protected=is_protected,
        protected_type=protected_type,
    )
    session.add(table)
    await session.flush()
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="user",
        actor_id=actor_id,
        event_type=EVENT_TABLE_CREATED,
        outcome="success",
        resource_type="table",
        resource_id=str(table.id),
        metadata={"database_id": database_id, "name": cleaned},
    )
    if commit:
        await session.commit()
    logger.info(
        "table_created tenant_id=%s database_id=%s table_id=%s",
        tenant_id,
        database_id,
        table.id,
    )
    return table


async def _resolve_reference(
    session: AsyncSession,
    *,
    tenant_id: str,
    table: DataTable,
    spec: ColumnSpec,
    symbol_table: Mapping[str, int],
) -> int:
    # Targets are resolved now; a reference never points at a table that does not exist yet.
    if spec.reference_table_id is not None:
        target = await schema_repo.get_table_for_tenant(session, tenant_id, spec.reference_table_id)
        if target is None:
            raise ReferenceResolutionError(
                f"Referenced table {spec.reference_table_id} for column '{spec.name}' not found",
                column=spec.name,
                reference_table_id=spec.reference_table_id,
            )
        return target.id
    symbol = (spec.reference_table or "").strip()
    if not symbol:
        raise ReferenceResolutionError(
            f"Reference column '{spec.name}' must name a target table",
            column=spec.name,
        )
    if symbol in symbol_table:
        return symbol_table[symbol]
    by_name = await schema_repo.get_table_by_name(session, table.database_id, symbol)
    if by_name is not None:
        return by_name.id
    raise ReferenceResolutionError(
        f"Referenced table '{symbol}' for column '{spec.name}' not found",
        column=spec.name,
        reference_table=symbol,
    )


async def create_columns(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    columns: list[ColumnSpec],
    symbol_table: Mapping[str, int] | None = None,
    commit: bool = True,
) -> list[DataColumn]:
    """Create columns on a table, resolving reference targets.

    ``symbol_table`` maps symbolic names (template ids during batch provisioning)
    to table ids created earlier in the same batch. All columns are validated
    before any of them is written.
    """
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    existing = await schema_repo.list_columns(session, table.id)
    taken = {column.name.lower() for column in existing}
    symbols = symbol_table or {}

    prepared: list[DataColumn] = []
    next_order = await schema_repo.next_column_order(session, table.id)
    for spec in columns:
        name = _normalize_name(spec.name)
        if name.lower() in taken:
            raise ValidationError(f"Column '{name}' already exists", column=name, table_id=table.id)
        taken.add(name.lower())

        column_type = normalize_column_type(spec.type)
        reference_table_id: int | None = None
        if column_type == COLUMN_TYPE_REFERENCE:
            reference_table_id = await _resolve_reference(
                session,
                tenant_id=tenant_id,
                table=table,
                spec=spec,
                symbol_table=symbols,
            )

        options: list[str] | None = None
        if column_type == COLUMN_TYPE_CUSTOM_ARRAY:
            options = [str(option).strip() for option in spec.custom_options or [] if str(option).strip()]
            if not options:
                raise ValidationError(
                    f"Column '{name}' requires at least one custom option",
                    column=name,
                )

        if spec.order is not None:
            order = spec.order
            next_order = max(next_order, order + 1)
        else:
            order = next_order
            next_order += 1

        prepared.append(
            DataColumn(
                tenant_id=tenant_id,
                table_id=table.id,
                name=name,
                type=column_type,
                semantic_type=spec.semantic_type,
                description=spec.description,
                required=spec.required,
                primary=spec.primary,
                unique=spec.unique,
                order=order,
                reference_table_id=reference_table_id,
                custom_options=options,
                default_value=spec.default_value,
                is_locked=spec.is_locked,
            )
        )

    session.add_all(prepared)
    await session.flush()
    if commit:
        await session.commit()
    logger.info(
        "columns_created tenant_id=%s table_id=%s count=%s",
        tenant_id,
        table.id,
        len(prepared),
    )
    return prepared


async def describe_table(session: AsyncSession, *, tenant_id: str, table_id: int) -> TableDescription:
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    columns = await schema_repo.list_columns(session, table.id)
    return TableDescription(table=table, columns=columns)


async def delete_table(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    actor_id: str | None = None,
    force: bool = False,
    cache: FilterCache | None = None,
) -> None:
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    if table.is_protected and not force:
        raise ValidationError("Protected tables cannot be deleted", table_id=table.id)
    inbound = await schema_repo.list_inbound_reference_columns(session, table.id)
    if inbound:
        raise ValidationError(
            "Table is referenced by other tables",
            table_id=table.id,
            referencing_columns=[column.id for column in inbound],
        )

    try:
        await rows_repo.delete_rows_for_table(session, table.id)
        await permissions_repo.delete_grants_for_table(session, table.id)
        await session.execute(delete(DataColumn).where(DataColumn.table_id == table.id))
        await session.delete(table)
        await record_event(
            session=session,
            tenant_id=tenant_id,
            actor_type="user",
            actor_id=actor_id,
            event_type=EVENT_TABLE_DELETED,
            outcome="success",
            resource_type="table",
            resource_id=str(table_id),
            metadata={"database_id": table.database_id, "name": table.name},
        )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    if cache is not None:
        await cache.invalidate_table(table_id)
    logger.info("table_deleted tenant_id=%s table_id=%s", tenant_id, table_id)


async def delete_column(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    column_id: int,
    cache: FilterCache | None = None,
) -> None:
    table = await get_table(session, tenant_id=tenant_id, table_id=table_id)
    column = await schema_repo.get_column(session, table.id, column_id)
    if column is None:
        raise NotFoundError("Column not found", column_id=column_id)
    if column.is_locked:
        raise ValidationError(f"Column '{column.name}' is locked", column_id=column_id)

    try:
        await rows_repo.delete_cells_for_column(session, column.id)
        await permissions_repo.delete_grants_for_column(session, column.id)
        await session.delete(column)
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    await invalidate_cached_pages(session, cache, table.id)
    logger.info(
        "column_deleted tenant_id=%s table_id=%s column_id=%s",
        tenant_id,
        table_id,
        column_id,
    )
