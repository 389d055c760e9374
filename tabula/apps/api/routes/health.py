from __future__ import annotations

from fastapi import APIRouter, Request
from pydantic import BaseModel

from tabula.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tabula.apps.api.response import success_response
from tabula.persistence.db import pool_stats

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    db_pool: dict[str, int | None]
    maintenance_running: bool
    filter_cache: str | None
    rate_limiter: str | None


def _component(request: Request, name: str) -> str | None:
    # Report which backend class is wired in, or None when the component is off.
    component = getattr(request.app.state, name, None)
    return type(component).__name__ if component is not None else None


@router.get("/health")
async def health(request: Request) -> dict:
    # Liveness only; no database round trip.
    scheduler = getattr(request.app.state, "maintenance_scheduler", None)
    payload = HealthResponse(
        status="ok",
        db_pool=pool_stats(),
        maintenance_running=bool(scheduler is not None and scheduler.running),
        filter_cache=_component(request, "filter_cache"),
        rate_limiter=_component(request, "rate_limiter"),
    )
    return success_response(request=request, data=payload)
