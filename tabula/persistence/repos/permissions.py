from __future__ import annotations

from datetime import datetime

from sqlalchemy import delete, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.domain.models import ColumnPermission, DashboardPermission, TablePermission
from tabula.persistence.guards import tenant_predicate


PermissionModel = type[TablePermission] | type[ColumnPermission] | type[DashboardPermission]


def live_predicate(model: PermissionModel, now: datetime) -> object:
    # A grant whose expiry is at or before now never authorizes, swept or not.
    return or_(model.expires_at.is_(None), model.expires_at > now)


async def get_live_table_grant(
    session: AsyncSession, *, tenant_id: str, user_id: str, table_id: int, now: datetime
) -> TablePermission | None:
    result = await session.execute(
        select(TablePermission).where(
            tenant_predicate(TablePermission, tenant_id),
            TablePermission.user_id == user_id,
            TablePermission.table_id == table_id,
            live_predicate(TablePermission, now),
        )
    )
    return result.scalar_one_or_none()


async def get_live_column_grant(
    session: AsyncSession, *, tenant_id: str, user_id: str, column_id: int, now: datetime
) -> ColumnPermission | None:
    result = await session.execute(
        select(ColumnPermission).where(
            tenant_predicate(ColumnPermission, tenant_id),
            ColumnPermission.user_id == user_id,
            ColumnPermission.column_id == column_id,
            live_predicate(ColumnPermission, now),
        )
    )
    return result.scalar_one_or_none()


async def list_live_column_grants(
    session: AsyncSession, *, tenant_id: str, user_id: str, table_id: int, now: datetime
) -> list[ColumnPermission]:
    result = await session.execute(
        select(ColumnPermission).where(
            tenant_predicate(ColumnPermission, tenant_id),
            ColumnPermission.user_id == user_id,
            ColumnPermission.table_id == table_id,
            live_predicate(ColumnPermission, now),
        )
    )
    return list(result.scalars().all())


async def get_live_dashboard_grant(
    session: AsyncSession, *, tenant_id: str, user_id: str, dashboard_id: int, now: datetime
) -> DashboardPermission | None:
    result = await session.execute(
        select(DashboardPermission).where(
            tenant_predicate(DashboardPermission, tenant_id),
            DashboardPermission.user_id == user_id,
            DashboardPermission.dashboard_id == dashboard_id,
            live_predicate(DashboardPermission, now),
        )
    )
    return result.scalar_one_or_none()


async def get_grant(session: AsyncSession, model: PermissionModel, **criteria: object):
    # Fetch the single grant for a (user, resource) pair regardless of expiry.
    stmt = select(model)
    for field, value in criteria.items():
        stmt = stmt.where(getattr(model, field) == value)
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_expired(session: AsyncSession, model: PermissionModel, now: datetime) -> list:
    result = await session.execute(
        select(model)
        .where(model.expires_at.is_not(None), model.expires_at <= now)
        .order_by(model.id)
    )
    return list(result.scalars().all())


async def delete_by_ids(session: AsyncSession, model: PermissionModel, ids: list[int]) -> int:
    if not ids:
        return 0
    result = await session.execute(delete(model).where(model.id.in_(ids)))
    return int(result.rowcount or 0)


async def list_expiring_between(
    session: AsyncSession,
    model: PermissionModel,
    *,
    tenant_id: str,
    start: datetime,
    end: datetime,
) -> list:
    result = await session.execute(
        select(model)
        .where(
            tenant_predicate(model, tenant_id),
            model.expires_at.is_not(None),
            model.expires_at > start,
            model.expires_at <= end,
        )
        .order_by(model.expires_at, model.id)
    )
    return list(result.scalars().all())


async def delete_grants_for_table(session: AsyncSession, table_id: int) -> None:
    await session.execute(delete(ColumnPermission).where(ColumnPermission.table_id == table_id))
    await session.execute(delete(TablePermission).where(TablePermission.table_id == table_id))


async def delete_grants_for_column(session: AsyncSession, column_id: int) -> int:
    result = await session.execute(
        delete(ColumnPermission).where(ColumnPermission.column_id == column_id)
    )
    return int(result.rowcount or 0)
