from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tabula.domain.models import AuditEvent
from tabula.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

EVENT_PERMISSION_GRANTED = "permission.granted"
EVENT_PERMISSION_REVOKED = "permission.revoked"
EVENT_PERMISSION_EXPIRED = "permission.expired"
EVENT_TEMPLATE_FAILED = "schema.template.failed"
EVENT_TABLE_CREATED = "schema.table.created"
EVENT_TABLE_DELETED = "schema.table.deleted"
EVENT_RATE_LIMITED = "security.rate_limited"
EVENT_RATE_LIMIT_DEGRADED = "system.rate_limit.degraded"

# Metadata keys containing any of these fragments never reach the audit table.
_SENSITIVE_KEY_FRAGMENTS = ("api_key", "authorization", "cookie", "token", "secret", "password")
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(fragment in lowered for fragment in _SENSITIVE_KEY_FRAGMENTS)


def sanitize_metadata(value: Any) -> Any:
    """Make audit metadata safe and JSON-ready.

    Sensitive keys are redacted at any depth; datetimes become ISO strings and
    decimals (typed cell values) become strings so the JSON column accepts them.
    """
    if isinstance(value, dict):
        return {
            str(key): _REDACTED_VALUE if _is_sensitive_key(str(key)) else sanitize_metadata(item)
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple, set)):
        return [sanitize_metadata(item) for item in value]
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return str(value)
    return value


async def _write(
    session: AsyncSession,
    event: AuditEvent,
    *,
    commit: bool,
    best_effort: bool,
) -> None:
    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        if not best_effort:
            raise
        logger.warning(
            "audit_event_write_failed event_type=%s tenant_id=%s request_id=%s",
            event.event_type,
            event.tenant_id,
            event.request_id,
            exc_info=exc,
        )


async def record_event(
    *,
    session: AsyncSession | None = None,
    occurred_at: datetime | None = None,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    actor_role: str | None = None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | int | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
) -> None:
    """Append one audit row.

    With a caller session the row joins that transaction (committed only when
    ``commit`` is true); without one a short-lived session writes and commits it.
    Failures are logged and swallowed unless ``best_effort`` is false.
    """
    event = AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=None if resource_id is None else str(resource_id),
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )
    if session is not None:
        await _write(session, event, commit=bool(commit), best_effort=best_effort)
        return
    async with SessionLocal() as audit_session:
        await _write(audit_session, event, commit=True, best_effort=best_effort)
