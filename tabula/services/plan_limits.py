from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import time

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.core.config import get_settings
from tabula.core.errors import PlanLimitError
from tabula.domain.models import DataRow, DataTable, TenantPlanLimit
from tabula.persistence.guards import tenant_predicate


logger = logging.getLogger(__name__)

RESOURCE_TABLES = "tables"
RESOURCE_ROWS = "rows"


@dataclass(frozen=True)
class PlanLimits:
    # None means the tenant is unlimited for that resource.
    max_tables: int | None
    max_rows: int | None


_limits_cache: dict[str, tuple[float, PlanLimits]] = {}
_limits_cache_lock = asyncio.Lock()


async def get_plan_limits(session: AsyncSession, tenant_id: str) -> PlanLimits:
    # Resolve tenant overrides with settings defaults behind a short-lived cache.
    settings = get_settings()
    now = time.time()
    cached = _limits_cache.get(tenant_id)
    if cached and cached[0] > now:
        return cached[1]

    override = (
        await session.execute(select(TenantPlanLimit).where(TenantPlanLimit.tenant_id == tenant_id))
    ).scalar_one_or_none()
    if override is None:
        limits = PlanLimits(
            max_tables=settings.plan_default_max_tables,
            max_rows=settings.plan_default_max_rows,
        )
    else:
        limits = PlanLimits(max_tables=override.max_tables, max_rows=override.max_rows)

    ttl_s = max(0, int(settings.plan_limits_cache_ttl_s))
    if ttl_s > 0:
        async with _limits_cache_lock:
            _limits_cache[tenant_id] = (now + ttl_s, limits)
    return limits


def invalidate_plan_limits_cache(tenant_id: str) -> None:
    # Drop cached limits after an override changes.
    _limits_cache.pop(tenant_id, None)


def reset_plan_limits_cache() -> None:
    # Clear cached limits for deterministic tests.
    _limits_cache.clear()


async def set_plan_limits(
    session: AsyncSession,
    *,
    tenant_id: str,
    max_tables: int | None,
    max_rows: int | None,
) -> TenantPlanLimit:
    row = (
        await session.execute(select(TenantPlanLimit).where(TenantPlanLimit.tenant_id == tenant_id))
    ).scalar_one_or_none()
    if row is None:
        row = TenantPlanLimit(tenant_id=tenant_id, max_tables=max_tables, max_rows=max_rows)
        session.add(row)
    else:
        row.max_tables = max_tables
        row.max_rows = max_rows
    await session.flush()
    invalidate_plan_limits_cache(tenant_id)
    return row


async def count_tables(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(DataTable).where(tenant_predicate(DataTable, tenant_id))
    )
    return int(result.scalar_one())


async def count_rows(session: AsyncSession, tenant_id: str) -> int:
    result = await session.execute(
        select(func.count()).select_from(DataRow).where(tenant_predicate(DataRow, tenant_id))
    )
    return int(result.scalar_one())


async def check_table_quota(session: AsyncSession, tenant_id: str, *, adding: int = 1) -> None:
    # Reject table creation once the tenant would exceed its plan.
    limits = await get_plan_limits(session, tenant_id)
    if limits.max_tables is None:
        return
    current = await count_tables(session, tenant_id)
    if current + adding > limits.max_tables:
        logger.info(
            "plan_limit_blocked tenant_id=%s resource=%s current=%s limit=%s",
            tenant_id,
            RESOURCE_TABLES,
            current,
            limits.max_tables,
        )
        raise PlanLimitError(RESOURCE_TABLES, current=current, limit=limits.max_tables)


async def check_row_quota(session: AsyncSession, tenant_id: str, *, adding: int = 1) -> None:
    # Reject row creation once the tenant would exceed its plan.
    limits = await get_plan_limits(session, tenant_id)
    if limits.max_rows is None:
        return
    current = await count_rows(session, tenant_id)
    if current + adding > limits.max_rows:
        logger.info(
            "plan_limit_blocked tenant_id=%s resource=%s current=%s limit=%s",
            tenant_id,
            RESOURCE_ROWS,
            current,
            limits.max_rows,
        )
        raise PlanLimitError(RESOURCE_ROWS, current=current, limit=limits.max_rows)
