from __future__ import annotations

from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from tabula.domain.payloads import ColumnSpec
from tabula.services.schema_registry import create_columns, create_database, create_table


def tenant_id() -> str:
    # Use unique tenant ids to avoid cross-test interference.
    return f"t-{uuid4().hex[:12]}"


async def seed_table(
    session: AsyncSession,
    tenant: str,
    columns: list[dict],
    *,
    name: str = "Contacts",
    database_name: str = "Main",
):
    """Create a database, one table and its columns; returns (table, {name: column})."""
    database = await create_database(session, tenant_id=tenant, name=database_name)
    table = await create_table(session, tenant_id=tenant, database_id=database.id, name=name)
    created = await create_columns(
        session,
        tenant_id=tenant,
        table_id=table.id,
        columns=[ColumnSpec.model_validate(column) for column in columns],
    )
    return table, {column.name: column for column in created}
