from __future__ import annotations

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.domain.models import AuditEvent
from tabula.persistence.guards import tenant_predicate


async def list_events(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    occurred_from: datetime | None = None,
    offset: int = 0,
    limit: int = 50,
) -> list[AuditEvent]:
    """Newest-first page of a tenant's audit trail with optional exact-match filters."""
    conditions = [tenant_predicate(AuditEvent, tenant_id)]
    for column, value in (
        (AuditEvent.event_type, event_type),
        (AuditEvent.resource_type, resource_type),
        (AuditEvent.resource_id, resource_id),
    ):
        if value:
            conditions.append(column == value)
    if occurred_from is not None:
        conditions.append(AuditEvent.occurred_at >= occurred_from)
    result = await session.execute(
        select(AuditEvent)
        .where(*conditions)
        .order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars().all())
