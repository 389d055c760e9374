from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import logging
from typing import Iterable

from sqlalchemy.ext.asyncio import AsyncSession

from tabula.core.config import get_settings
from tabula.core.errors import NotFoundError, PermissionDeniedError, ValidationError
from tabula.domain.models import (
    ColumnPermission,
    DashboardPermission,
    DataColumn,
    DataTable,
    TablePermission,
)
from tabula.persistence.repos import permissions as permissions_repo
from tabula.persistence.repos import schema as schema_repo
from tabula.services.audit import (
    EVENT_PERMISSION_EXPIRED,
    EVENT_PERMISSION_GRANTED,
    EVENT_PERMISSION_REVOKED,
    record_event,
)


logger = logging.getLogger(__name__)

RESOURCE_TABLE = "table"
RESOURCE_COLUMN = "column"
RESOURCE_DASHBOARD = "dashboard"

ACTION_READ = "read"
ACTION_VIEW = "view"
ACTION_EDIT = "edit"
ACTION_DELETE = "delete"
ACTION_SHARE = "share"

ROLE_ADMIN = "admin"

_TABLE_FLAGS = {ACTION_READ: "can_read", ACTION_EDIT: "can_edit", ACTION_DELETE: "can_delete"}
_COLUMN_FLAGS = {ACTION_READ: "can_read", ACTION_EDIT: "can_edit"}
_DASHBOARD_FLAGS = {
    ACTION_READ: "can_view",
    ACTION_VIEW: "can_view",
    ACTION_EDIT: "can_edit",
    ACTION_DELETE: "can_delete",
    ACTION_SHARE: "can_share",
}

_MODELS = {
    RESOURCE_TABLE: TablePermission,
    RESOURCE_COLUMN: ColumnPermission,
    RESOURCE_DASHBOARD: DashboardPermission,
}
_RESOURCE_FIELDS = {
    RESOURCE_TABLE: "table_id",
    RESOURCE_COLUMN: "column_id",
    RESOURCE_DASHBOARD: "dashboard_id",
}
_SWEEP_KEYS = {
    RESOURCE_TABLE: "table_permissions",
    RESOURCE_COLUMN: "column_permissions",
    RESOURCE_DASHBOARD: "dashboard_permissions",
}


@dataclass(frozen=True)
class Caller:
    # Identity established by the external session provider.
    tenant_id: str
    user_id: str
    role: str = "member"

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


@dataclass(frozen=True)
class ExpiringGrant:
    resource_type: str
    resource_id: int
    grant_id: int
    user_id: str
    expires_at: datetime


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def has_admin_bypass(caller: Caller) -> bool:
    return caller.is_admin and get_settings().authz_admin_bypass


def _normalize_action(resource_type: str, action: str) -> str:
    if resource_type not in _MODELS:
        raise ValidationError(f"Unknown resource type '{resource_type}'", resource_type=resource_type)
    if action == ACTION_VIEW and resource_type != RESOURCE_DASHBOARD:
        action = ACTION_READ
    known = _DASHBOARD_FLAGS if resource_type == RESOURCE_DASHBOARD else _TABLE_FLAGS
    if action not in known:
        raise ValidationError(
            f"Action '{action}' is not defined for {resource_type} grants",
            resource_type=resource_type,
            action=action,
        )
    return action


async def authorize(
    session: AsyncSession,
    *,
    user_id: str,
    tenant_id: str,
    resource_type: str,
    resource_id: int,
    action: str,
    now: datetime | None = None,
) -> bool:
    """Return whether a live grant allows ``action`` on the resource.

    Grants with ``expires_at <= now`` never authorize, whether or not the sweep
    has removed them yet. For columns the column grant wins when it exists;
    otherwise the grant on the column's table decides.
    """
    now = now or _utc_now()
    action = _normalize_action(resource_type, action)

    if resource_type == RESOURCE_DASHBOARD:
        grant = await permissions_repo.get_live_dashboard_grant(
            session, tenant_id=tenant_id, user_id=user_id, dashboard_id=resource_id, now=now
        )
        return bool(grant is not None and getattr(grant, _DASHBOARD_FLAGS[action]))

    table_id = resource_id
    if resource_type == RESOURCE_COLUMN:
        column = await schema_repo.get_column_for_tenant(session, tenant_id, resource_id)
        if column is None:
            return False
        # Column grants carry no delete flag; that action always falls back to the table.
        if action in _COLUMN_FLAGS:
            column_grant = await permissions_repo.get_live_column_grant(
                session, tenant_id=tenant_id, user_id=user_id, column_id=resource_id, now=now
            )
            if column_grant is not None:
                return bool(getattr(column_grant, _COLUMN_FLAGS[action]))
        table_id = column.table_id

    grant = await permissions_repo.get_live_table_grant(
        session, tenant_id=tenant_id, user_id=user_id, table_id=table_id, now=now
    )
    return bool(grant is not None and getattr(grant, _TABLE_FLAGS[action]))


async def ensure_table_access(
    session: AsyncSession,
    caller: Caller,
    table_id: int,
    action: str,
    *,
    now: datetime | None = None,
) -> None:
    # Denials carry no hint about whether the table exists.
    if has_admin_bypass(caller):
        return
    allowed = await authorize(
        session,
        user_id=caller.user_id,
        tenant_id=caller.tenant_id,
        resource_type=RESOURCE_TABLE,
        resource_id=table_id,
        action=action,
        now=now,
    )
    if not allowed:
        logger.info(
            "table_access_denied tenant_id=%s user_id=%s table_id=%s action=%s",
            caller.tenant_id,
            caller.user_id,
            table_id,
            action,
        )
        raise PermissionDeniedError()


async def column_scope(
    session: AsyncSession,
    caller: Caller,
    table_id: int,
    columns: Iterable[DataColumn],
    action: str = ACTION_READ,
    *,
    now: datetime | None = None,
) -> set[int] | None:
    """Resolve which columns the caller may use for ``action``.

    Returns ``None`` when the caller is unrestricted (admin bypass). Column
    grants override the table grant column by column.
    """
    if has_admin_bypass(caller):
        return None
    now = now or _utc_now()
    flag = _COLUMN_FLAGS[action]
    table_grant = await permissions_repo.get_live_table_grant(
        session, tenant_id=caller.tenant_id, user_id=caller.user_id, table_id=table_id, now=now
    )
    default_allowed = bool(table_grant is not None and getattr(table_grant, flag))
    overrides = {
        grant.column_id: bool(getattr(grant, flag))
        for grant in await permissions_repo.list_live_column_grants(
            session, tenant_id=caller.tenant_id, user_id=caller.user_id, table_id=table_id, now=now
        )
    }
    return {column.id for column in columns if overrides.get(column.id, default_allowed)}


async def ensure_column_access(
    session: AsyncSession,
    caller: Caller,
    table_id: int,
    column_ids: Iterable[int],
    action: str = ACTION_EDIT,
    *,
    now: datetime | None = None,
) -> None:
    # Unknown ids are left for the row store to reject as invalid input.
    if has_admin_bypass(caller):
        return
    columns = await schema_repo.list_columns(session, table_id)
    known = {column.id for column in columns}
    allowed = await column_scope(session, caller, table_id, columns, action, now=now)
    denied = sorted({column_id for column_id in column_ids if column_id in known} - (allowed or set()))
    if denied:
        logger.info(
            "column_access_denied tenant_id=%s user_id=%s table_id=%s columns=%s action=%s",
            caller.tenant_id,
            caller.user_id,
            table_id,
            denied,
            action,
        )
        raise PermissionDeniedError()


async def _audit_grant(
    session: AsyncSession,
    *,
    tenant_id: str,
    event_type: str,
    resource_type: str,
    resource_id: int,
    user_id: str,
    actor_id: str | None,
    metadata: dict | None = None,
) -> None:
    await record_event(
        session=session,
        tenant_id=tenant_id,
        actor_type="user" if actor_id else "system",
        actor_id=actor_id,
        event_type=event_type,
        outcome="success",
        resource_type=resource_type,
        resource_id=str(resource_id),
        metadata={"user_id": user_id, **(metadata or {})},
    )


async def _upsert_grant(
    session: AsyncSession,
    *,
    resource_type: str,
    tenant_id: str,
    user_id: str,
    resource_id: int,
    flags: dict[str, bool],
    expires_at: datetime | None,
    granted_by: str | None,
    extra: dict | None = None,
):
    model = _MODELS[resource_type]
    field_name = _RESOURCE_FIELDS[resource_type]
    grant = await permissions_repo.get_grant(
        session, model, tenant_id=tenant_id, user_id=user_id, **{field_name: resource_id}
    )
    if grant is None:
        grant = model(tenant_id=tenant_id, user_id=user_id, **{field_name: resource_id}, **(extra or {}))
        session.add(grant)
    for flag, value in flags.items():
        setattr(grant, flag, value)
    # Expiry is stored in UTC; naive inputs are taken as UTC already.
    if expires_at is not None and expires_at.tzinfo is not None:
        expires_at = expires_at.astimezone(timezone.utc)
    grant.expires_at = expires_at
    grant.granted_by = granted_by
    await session.flush()
    await _audit_grant(
        session,
        tenant_id=tenant_id,
        event_type=EVENT_PERMISSION_GRANTED,
        resource_type=resource_type,
        resource_id=resource_id,
        user_id=user_id,
        actor_id=granted_by,
        metadata={**flags, "expires_at": expires_at},
    )
    await session.commit()
    logger.info(
        "permission_granted tenant_id=%s resource_type=%s resource_id=%s user_id=%s",
        tenant_id,
        resource_type,
        resource_id,
        user_id,
    )
    return grant


async def _require_table(session: AsyncSession, tenant_id: str, table_id: int) -> DataTable:
    table = await schema_repo.get_table_for_tenant(session, tenant_id, table_id)
    if table is None:
        raise NotFoundError("Table not found", table_id=table_id)
    return table


async def grant_table_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    table_id: int,
    user_id: str,
    can_read: bool = True,
    can_edit: bool = False,
    can_delete: bool = False,
    expires_at: datetime | None = None,
    granted_by: str | None = None,
) -> TablePermission:
    await _require_table(session, tenant_id, table_id)
    return await _upsert_grant(
        session,
        resource_type=RESOURCE_TABLE,
        tenant_id=tenant_id,
        user_id=user_id,
        resource_id=table_id,
        flags={"can_read": can_read, "can_edit": can_edit, "can_delete": can_delete},
        expires_at=expires_at,
        granted_by=granted_by,
    )


async def grant_column_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    column_id: int,
    user_id: str,
    can_read: bool = True,
    can_edit: bool = False,
    expires_at: datetime | None = None,
    granted_by: str | None = None,
) -> ColumnPermission:
    column = await schema_repo.get_column_for_tenant(session, tenant_id, column_id)
    if column is None:
        raise NotFoundError("Column not found", column_id=column_id)
    return await _upsert_grant(
        session,
        resource_type=RESOURCE_COLUMN,
        tenant_id=tenant_id,
        user_id=user_id,
        resource_id=column_id,
        flags={"can_read": can_read, "can_edit": can_edit},
        expires_at=expires_at,
        granted_by=granted_by,
        extra={"table_id": column.table_id},
    )


async def grant_dashboard_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    dashboard_id: int,
    user_id: str,
    can_view: bool = True,
    can_edit: bool = False,
    can_delete: bool = False,
    can_share: bool = False,
    expires_at: datetime | None = None,
    granted_by: str | None = None,
) -> DashboardPermission:
    return await _upsert_grant(
        session,
        resource_type=RESOURCE_DASHBOARD,
        tenant_id=tenant_id,
        user_id=user_id,
        resource_id=dashboard_id,
        flags={
            "can_view": can_view,
            "can_edit": can_edit,
            "can_delete": can_delete,
            "can_share": can_share,
        },
        expires_at=expires_at,
        granted_by=granted_by,
    )


async def revoke_permission(
    session: AsyncSession,
    *,
    tenant_id: str,
    resource_type: str,
    resource_id: int,
    user_id: str,
    revoked_by: str | None = None,
) -> bool:
    model = _MODELS.get(resource_type)
    if model is None:
        raise ValidationError(f"Unknown resource type '{resource_type}'", resource_type=resource_type)
    grant = await permissions_repo.get_grant(
        session,
        model,
        tenant_id=tenant_id,
        user_id=user_id,
        **{_RESOURCE_FIELDS[resource_type]: resource_id},
    )
    if grant is None:
        return False
    await session.delete(grant)
    await _audit_grant(
        session,
        tenant_id=tenant_id,
        event_type=EVENT_PERMISSION_REVOKED,
        resource_type=resource_type,
        resource_id=resource_id,
        user_id=user_id,
        actor_id=revoked_by,
    )
    await session.commit()
    logger.info(
        "permission_revoked tenant_id=%s resource_type=%s resource_id=%s user_id=%s",
        tenant_id,
        resource_type,
        resource_id,
        user_id,
    )
    return True


async def sweep_expired_grants(
    session: AsyncSession,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Delete grants whose expiry has passed, one audit record per grant.

    Re-running with nothing newly expired deletes nothing and writes no audit rows.
    """
    now = now or _utc_now()
    counts: dict[str, int] = {}
    try:
        for resource_type, model in _MODELS.items():
            field_name = _RESOURCE_FIELDS[resource_type]
            expired = await permissions_repo.list_expired(session, model, now)
            for grant in expired:
                await record_event(
                    session=session,
                    occurred_at=now,
                    tenant_id=grant.tenant_id,
                    actor_type="system",
                    actor_id="permission_sweep",
                    event_type=EVENT_PERMISSION_EXPIRED,
                    outcome="success",
                    resource_type=resource_type,
                    resource_id=str(getattr(grant, field_name)),
                    metadata={
                        "user_id": grant.user_id,
                        "grant_id": grant.id,
                        "expires_at": grant.expires_at,
                    },
                )
            counts[_SWEEP_KEYS[resource_type]] = await permissions_repo.delete_by_ids(
                session, model, [grant.id for grant in expired]
            )
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    if any(counts.values()):
        logger.info(
            "permission_sweep_completed table=%s column=%s dashboard=%s",
            counts["table_permissions"],
            counts["column_permissions"],
            counts["dashboard_permissions"],
        )
    return counts


async def list_expiring_soon(
    session: AsyncSession,
    *,
    tenant_id: str,
    within_days: int | None = None,
    now: datetime | None = None,
) -> list[ExpiringGrant]:
    # Read-only look-ahead for notification collaborators.
    now = now or _utc_now()
    days = within_days if within_days is not None else get_settings().permission_expiring_soon_days
    if days < 0:
        raise ValidationError("within_days must be non-negative", within_days=days)
    end = now + timedelta(days=days)
    grants: list[ExpiringGrant] = []
    for resource_type, model in _MODELS.items():
        field_name = _RESOURCE_FIELDS[resource_type]
        rows = await permissions_repo.list_expiring_between(
            session, model, tenant_id=tenant_id, start=now, end=end
        )
        grants.extend(
            ExpiringGrant(
                resource_type=resource_type,
                resource_id=int(getattr(row, field_name)),
                grant_id=row.id,
                user_id=row.user_id,
                expires_at=row.expires_at,
            )
            for row in rows
        )
    grants.sort(key=lambda grant: (grant.expires_at, grant.resource_type, grant.grant_id))
    return grants
