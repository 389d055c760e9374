from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.deps import get_db, require_admin
from tabula.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tabula.apps.api.response import success_response
from tabula.services.permissions import Caller
from tabula.services.plan_limits import count_rows, count_tables, get_plan_limits, set_plan_limits


router = APIRouter(prefix="/tenants/{tenant_id}/plan-limits", tags=["plan-limits"], responses=DEFAULT_ERROR_RESPONSES)


class PlanLimitsRequest(BaseModel):
    # Null keeps the resource unlimited.
    max_tables: int | None = Field(default=None, ge=0, alias="maxTables")
    max_rows: int | None = Field(default=None, ge=0, alias="maxRows")

    model_config = {"extra": "forbid", "populate_by_name": True}


async def _usage_payload(db: AsyncSession, tenant_id: str) -> dict:
    limits = await get_plan_limits(db, tenant_id)
    return {
        "tables": {"current": await count_tables(db, tenant_id), "limit": limits.max_tables},
        "rows": {"current": await count_rows(db, tenant_id), "limit": limits.max_rows},
    }


@router.get("")
async def get_plan_limits_route(
    request: Request,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    return success_response(request=request, data=await _usage_payload(db, caller.tenant_id))


@router.put("")
async def set_plan_limits_route(
    request: Request,
    payload: PlanLimitsRequest,
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    await set_plan_limits(
        db,
        tenant_id=caller.tenant_id,
        max_tables=payload.max_tables,
        max_rows=payload.max_rows,
    )
    await db.commit()
    return success_response(request=request, data=await _usage_payload(db, caller.tenant_id))
