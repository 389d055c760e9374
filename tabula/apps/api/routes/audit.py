from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.apps.api.deps import get_db, require_admin
from tabula.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tabula.apps.api.response import success_response
from tabula.persistence.repos import audit as audit_repo
from tabula.services.permissions import Caller


router = APIRouter(prefix="/tenants/{tenant_id}/audit", tags=["audit"], responses=DEFAULT_ERROR_RESPONSES)


def _to_payload(event) -> dict:
    return {
        "id": event.id,
        "occurredAt": event.occurred_at.isoformat(),
        "actorType": event.actor_type,
        "actorId": event.actor_id,
        "actorRole": event.actor_role,
        "eventType": event.event_type,
        "outcome": event.outcome,
        "resourceType": event.resource_type,
        "resourceId": event.resource_id,
        "requestId": event.request_id,
        "metadata": event.metadata_json,
        "errorCode": event.error_code,
    }


@router.get("/events")
async def list_audit_events(
    request: Request,
    event_type: str | None = Query(default=None, alias="eventType"),
    resource_type: str | None = Query(default=None, alias="resourceType"),
    resource_id: str | None = Query(default=None, alias="resourceId"),
    occurred_from: datetime | None = Query(default=None, alias="from"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=1, le=200),
    caller: Caller = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
) -> dict:
    # Fetch one extra row to know whether another page exists.
    events = await audit_repo.list_events(
        db,
        tenant_id=caller.tenant_id,
        event_type=event_type,
        resource_type=resource_type,
        resource_id=resource_id,
        occurred_from=occurred_from,
        offset=offset,
        limit=limit + 1,
    )
    next_offset = None
    if len(events) > limit:
        events = events[:limit]
        next_offset = offset + limit
    return success_response(
        request=request,
        data={"items": [_to_payload(event) for event in events], "nextOffset": next_offset},
    )
