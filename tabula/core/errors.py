from __future__ import annotations

from typing import Any


class TabulaError(Exception):
    """Base error for Tabula."""

    code = "TABULA_ERROR"

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details = {key: value for key, value in details.items() if value is not None}


class ValidationError(TabulaError):
    """Malformed or duplicate input; the caller can fix it and retry."""

    code = "VALIDATION_ERROR"


class NotFoundError(TabulaError):
    """Resource does not exist inside the caller's tenant."""

    code = "NOT_FOUND"


class PlanLimitError(TabulaError):
    """Tenant quota exceeded; never retried automatically."""

    code = "PLAN_LIMIT_EXCEEDED"

    def __init__(self, resource: str, *, current: int, limit: int) -> None:
        super().__init__(
            f"Plan limit reached for {resource}: {current}/{limit}",
            resource=resource,
            current=current,
            limit=limit,
        )
        self.resource = resource
        self.current = current
        self.limit = limit


class ReferenceResolutionError(TabulaError):
    """Reference column target could not be resolved at creation time."""

    code = "REFERENCE_UNRESOLVED"


class CircularDependencyError(TabulaError):
    """Template batch contains a dependency cycle."""

    code = "CIRCULAR_DEPENDENCY"

    def __init__(self, template_id: str) -> None:
        super().__init__(
            f"Circular dependency detected at template '{template_id}'",
            template_id=template_id,
        )
        self.template_id = template_id


class RequiredFieldError(TabulaError):
    """Row write is missing one or more required columns."""

    code = "REQUIRED_FIELD_MISSING"

    def __init__(self, columns: list[str]) -> None:
        super().__init__(
            f"Missing required columns: {', '.join(columns)}",
            columns=columns,
        )
        self.columns = columns


class InvalidOperatorError(TabulaError):
    """Filter operator not allowed for the column type."""

    code = "INVALID_OPERATOR"


class MissingRangeValueError(TabulaError):
    """Range operator supplied without both bounds."""

    code = "MISSING_RANGE_VALUE"


class InvalidSortColumnError(TabulaError):
    """Sort requested on an unknown column."""

    code = "INVALID_SORT_COLUMN"


class PageSizeExceededError(TabulaError):
    """Requested page size is above the configured maximum."""

    code = "PAGE_SIZE_EXCEEDED"


class PermissionDeniedError(TabulaError):
    """Caller lacks a live grant for the requested action."""

    code = "PERMISSION_DENIED"

    def __init__(self, message: str = "Access denied") -> None:
        super().__init__(message)


class TenantPredicateError(TabulaError):
    """Tenant-scoped query built without a tenant id."""

    code = "TENANT_PREDICATE_REQUIRED"
