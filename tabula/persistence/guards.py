from __future__ import annotations

from tabula.core.config import get_settings
from tabula.core.errors import TenantPredicateError


def require_tenant_id(tenant_id: str | None) -> str:
    """Return the tenant id a scoped query filters on.

    Blank ids raise ``TenantPredicateError`` while the guard setting is on, so a
    missing identity can never widen a query to every tenant's rows.
    """
    if tenant_id and tenant_id.strip():
        return tenant_id
    if get_settings().authz_require_tenant_predicate:
        raise TenantPredicateError("Tenant-scoped query built without a tenant id")
    return tenant_id or ""


def tenant_predicate(model, tenant_id: str | None) -> object:
    # Cells and other child rows inherit scope from their parent and carry no tenant column.
    column = getattr(model, "tenant_id", None)
    if column is None:
        raise TenantPredicateError(f"{model.__name__} has no tenant_id column")
    return column == require_tenant_id(tenant_id)
