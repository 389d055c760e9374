from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
import logging
import re
from typing import Any

from sqlalchemy import and_, false, func, not_, nulls_last, select, true
from sqlalchemy.sql.elements import ColumnElement

from tabula.core.config import get_settings
from tabula.core.errors import (
    InvalidOperatorError,
    InvalidSortColumnError,
    MissingRangeValueError,
    PageSizeExceededError,
    PermissionDeniedError,
    ValidationError,
)
from tabula.domain.models import DataCell, DataColumn, DataRow
from tabula.domain.payloads import FilterConfig, FilterPayload
from tabula.services.coercion import (
    COLUMN_TYPE_BOOLEAN,
    COLUMN_TYPE_CUSTOM_ARRAY,
    COLUMN_TYPE_DATE,
    COLUMN_TYPE_NUMBER,
    COLUMN_TYPE_REFERENCE,
    COLUMN_TYPE_TEXT,
    is_date_only,
    parse_boolean,
    parse_datetime,
    parse_number,
    parse_reference,
)


logger = logging.getLogger(__name__)

OP_CONTAINS = "contains"
OP_NOT_CONTAINS = "not_contains"
OP_EQUALS = "equals"
OP_NOT_EQUALS = "not_equals"
OP_STARTS_WITH = "starts_with"
OP_ENDS_WITH = "ends_with"
OP_REGEX = "regex"
OP_IS_EMPTY = "is_empty"
OP_IS_NOT_EMPTY = "is_not_empty"
OP_GREATER_THAN = "greater_than"
OP_GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
OP_LESS_THAN = "less_than"
OP_LESS_THAN_OR_EQUAL = "less_than_or_equal"
OP_BETWEEN = "between"
OP_NOT_BETWEEN = "not_between"
OP_BEFORE = "before"
OP_AFTER = "after"
OP_TODAY = "today"
OP_YESTERDAY = "yesterday"
OP_THIS_WEEK = "this_week"
OP_THIS_MONTH = "this_month"
OP_THIS_YEAR = "this_year"
OP_LAST_WEEK = "last_week"
OP_LAST_MONTH = "last_month"
OP_LAST_YEAR = "last_year"

_PRESENCE_OPERATORS = (OP_IS_EMPTY, OP_IS_NOT_EMPTY)

OPERATORS_BY_TYPE: dict[str, frozenset[str]] = {
    COLUMN_TYPE_TEXT: frozenset(
        {
            OP_CONTAINS,
            OP_NOT_CONTAINS,
            OP_EQUALS,
            OP_NOT_EQUALS,
            OP_STARTS_WITH,
            OP_ENDS_WITH,
            OP_REGEX,
            *_PRESENCE_OPERATORS,
        }
    ),
    COLUMN_TYPE_NUMBER: frozenset(
        {
            OP_EQUALS,
            OP_NOT_EQUALS,
            OP_GREATER_THAN,
            OP_GREATER_THAN_OR_EQUAL,
            OP_LESS_THAN,
            OP_LESS_THAN_OR_EQUAL,
            OP_BETWEEN,
            OP_NOT_BETWEEN,
            *_PRESENCE_OPERATORS,
        }
    ),
    COLUMN_TYPE_BOOLEAN: frozenset({OP_EQUALS, OP_NOT_EQUALS, *_PRESENCE_OPERATORS}),
    COLUMN_TYPE_DATE: frozenset(
        {
            OP_EQUALS,
            OP_NOT_EQUALS,
            OP_BEFORE,
            OP_AFTER,
            OP_BETWEEN,
            OP_NOT_BETWEEN,
            OP_TODAY,
            OP_YESTERDAY,
            OP_THIS_WEEK,
            OP_THIS_MONTH,
            OP_THIS_YEAR,
            OP_LAST_WEEK,
            OP_LAST_MONTH,
            OP_LAST_YEAR,
            *_PRESENCE_OPERATORS,
        }
    ),
    COLUMN_TYPE_REFERENCE: frozenset({OP_EQUALS, OP_NOT_EQUALS, *_PRESENCE_OPERATORS}),
    COLUMN_TYPE_CUSTOM_ARRAY: frozenset({OP_EQUALS, OP_NOT_EQUALS, *_PRESENCE_OPERATORS}),
}

RELATIVE_DATE_OPERATORS = frozenset(
    {
        OP_TODAY,
        OP_YESTERDAY,
        OP_THIS_WEEK,
        OP_THIS_MONTH,
        OP_THIS_YEAR,
        OP_LAST_WEEK,
        OP_LAST_MONTH,
        OP_LAST_YEAR,
    }
)
RANGE_OPERATORS = frozenset({OP_BETWEEN, OP_NOT_BETWEEN})
VALUELESS_OPERATORS = RELATIVE_DATE_OPERATORS | frozenset(_PRESENCE_OPERATORS)

# Negative operators match rows where the positive form has no matching cell.
_NEGATIONS = {
    OP_NOT_CONTAINS: OP_CONTAINS,
    OP_NOT_EQUALS: OP_EQUALS,
    OP_NOT_BETWEEN: OP_BETWEEN,
}

SORT_ID = "id"
SORT_CREATED_AT = "createdAt"
SORT_UPDATED_AT = "updatedAt"
_ROW_SORT_FIELDS = {
    SORT_ID: DataRow.id,
    SORT_CREATED_AT: DataRow.created_at,
    SORT_UPDATED_AT: DataRow.updated_at,
}


@dataclass(frozen=True)
class Bound:
    # Parsed filter operand; ``date_only`` widens date bounds to whole days.
    value: Any
    date_only: bool = False


@dataclass(frozen=True)
class ValidatedFilter:
    column: DataColumn
    operator: str
    first: Bound | None = None
    second: Bound | None = None


@dataclass(frozen=True)
class ValidatedQuery:
    filters: list[ValidatedFilter]
    global_search: str
    search_column_ids: list[int]
    sort_by: str
    sort_column: DataColumn | None
    sort_order: str
    page: int
    page_size: int
    include_cells: bool
    applied_filters: list[FilterConfig] = field(default_factory=list)

    @property
    def offset(self) -> int:
        return (self.page - 1) * self.page_size


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _parse_operand(column: DataColumn, operator: str, raw: Any) -> Bound:
    # Parse one operand according to the stored column type.
    column_type = column.type
    if column_type == COLUMN_TYPE_NUMBER:
        number = parse_number(raw)
        if number is None:
            raise ValidationError(
                f"Value '{raw}' is not a number for column '{column.name}'",
                column_id=column.id,
                operator=operator,
            )
        return Bound(number)
    if column_type == COLUMN_TYPE_DATE:
        moment = parse_datetime(raw)
        if moment is None:
            raise ValidationError(
                f"Value '{raw}' is not an ISO-8601 date for column '{column.name}'",
                column_id=column.id,
                operator=operator,
            )
        return Bound(moment, date_only=is_date_only(raw))
    if column_type == COLUMN_TYPE_BOOLEAN:
        flag = parse_boolean(raw)
        if flag is None:
            raise ValidationError(
                f"Value '{raw}' is not a boolean for column '{column.name}'",
                column_id=column.id,
                operator=operator,
            )
        return Bound(flag)
    if column_type == COLUMN_TYPE_REFERENCE:
        ref = parse_reference(raw)
        if ref is None:
            raise ValidationError(
                f"Value '{raw}' is not a row id for column '{column.name}'",
                column_id=column.id,
                operator=operator,
            )
        return Bound(ref)
    text = str(raw).strip()
    if operator == OP_REGEX:
        try:
            re.compile(text)
        except re.error as exc:
            raise ValidationError(
                f"Invalid regular expression for column '{column.name}': {exc}",
                column_id=column.id,
            ) from None
    return Bound(text)


def validate_filter(
    config: FilterConfig,
    columns: dict[int, DataColumn],
    readable: set[int] | None = None,
) -> ValidatedFilter:
    column = columns.get(config.column_id)
    if column is None:
        raise ValidationError(f"Unknown column {config.column_id}", column_id=config.column_id)
    if readable is not None and column.id not in readable:
        raise PermissionDeniedError()
    allowed = OPERATORS_BY_TYPE.get(column.type, OPERATORS_BY_TYPE[COLUMN_TYPE_TEXT])
    if config.operator not in allowed:
        raise InvalidOperatorError(
            f"Operator '{config.operator}' is not valid for {column.type} column '{column.name}'",
            column_id=column.id,
            operator=config.operator,
            allowed=sorted(allowed),
        )
    if config.operator in VALUELESS_OPERATORS:
        return ValidatedFilter(column=column, operator=config.operator)
    if config.operator in RANGE_OPERATORS:
        if _is_missing(config.value) or _is_missing(config.second_value):
            raise MissingRangeValueError(
                f"Operator '{config.operator}' requires value and secondValue",
                column_id=column.id,
            )
        first = _parse_operand(column, config.operator, config.value)
        second = _parse_operand(column, config.operator, config.second_value)
        if first.value > second.value:
            first, second = second, first
        return ValidatedFilter(column=column, operator=config.operator, first=first, second=second)
    if _is_missing(config.value):
        raise ValidationError(
            f"Operator '{config.operator}' requires a value",
            column_id=column.id,
            operator=config.operator,
        )
    return ValidatedFilter(
        column=column,
        operator=config.operator,
        first=_parse_operand(column, config.operator, config.value),
    )


def validate_payload(
    payload: FilterPayload,
    columns: list[DataColumn],
    *,
    readable: set[int] | None = None,
) -> ValidatedQuery:
    """Validate a filtered listing request before any store query runs.

    ``readable`` restricts filtering, sorting and global search to the columns
    the caller may read; ``None`` means unrestricted.
    """
    settings = get_settings()
    by_id = {column.id: column for column in columns}
    filters = [validate_filter(config, by_id, readable) for config in payload.filters]

    page_size = payload.page_size or settings.filter_default_page_size
    if page_size > settings.filter_max_page_size:
        raise PageSizeExceededError(
            f"pageSize {page_size} exceeds the maximum of {settings.filter_max_page_size}",
            page_size=page_size,
            max_page_size=settings.filter_max_page_size,
        )

    sort_by = (payload.sort_by or SORT_ID).strip()
    sort_column: DataColumn | None = None
    if sort_by not in _ROW_SORT_FIELDS:
        try:
            sort_column = by_id.get(int(sort_by))
        except ValueError:
            sort_column = None
        if sort_column is None:
            raise InvalidSortColumnError(f"Unknown sort column '{sort_by}'", sort_by=sort_by)
        if readable is not None and sort_column.id not in readable:
            raise PermissionDeniedError()
        sort_by = str(sort_column.id)

    search_column_ids = [
        column.id
        for column in columns
        if column.type == COLUMN_TYPE_TEXT and (readable is None or column.id in readable)
    ]
    return ValidatedQuery(
        filters=filters,
        global_search=payload.global_search.strip(),
        search_column_ids=search_column_ids,
        sort_by=sort_by,
        sort_column=sort_column,
        sort_order=payload.sort_order,
        page=payload.page,
        page_size=page_size,
        include_cells=payload.include_cells,
        applied_filters=list(payload.filters),
    )


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _shift_month(moment: datetime, months: int) -> datetime:
    index = moment.year * 12 + (moment.month - 1) + months
    return moment.replace(year=index // 12, month=index % 12 + 1, day=1)


def relative_window(operator: str, now: datetime) -> tuple[datetime, datetime]:
    """Half-open UTC window ``[start, end)`` for a relative date operator.

    Weeks start on Monday.
    """
    now = now.astimezone(timezone.utc) if now.tzinfo else now.replace(tzinfo=timezone.utc)
    today = _start_of_day(now)
    if operator == OP_TODAY:
        return today, today + timedelta(days=1)
    if operator == OP_YESTERDAY:
        return today - timedelta(days=1), today
    week_start = today - timedelta(days=today.weekday())
    if operator == OP_THIS_WEEK:
        return week_start, week_start + timedelta(days=7)
    if operator == OP_LAST_WEEK:
        return week_start - timedelta(days=7), week_start
    month_start = today.replace(day=1)
    if operator == OP_THIS_MONTH:
        return month_start, _shift_month(month_start, 1)
    if operator == OP_LAST_MONTH:
        return _shift_month(month_start, -1), month_start
    year_start = month_start.replace(month=1)
    if operator == OP_THIS_YEAR:
        return year_start, year_start.replace(year=year_start.year + 1)
    if operator == OP_LAST_YEAR:
        return year_start.replace(year=year_start.year - 1), year_start
    raise InvalidOperatorError(f"Operator '{operator}' is not a relative date window", operator=operator)


def _cell_exists(column_id: int, *conditions: ColumnElement) -> ColumnElement:
    # Correlated EXISTS over the row's cell for one column.
    return (
        select(DataCell.id)
        .where(
            DataCell.row_id == DataRow.id,
            DataCell.column_id == column_id,
            *conditions,
        )
        .correlate(DataRow)
        .exists()
    )


def _non_empty() -> ColumnElement:
    return and_(DataCell.value.is_not(None), func.trim(DataCell.value) != "")


def _lower_date(bound: Bound) -> datetime:
    return _start_of_day(bound.value) if bound.date_only else bound.value


def _upper_date(bound: Bound) -> tuple[datetime, bool]:
    # Returns the upper limit and whether it is exclusive.
    if bound.date_only:
        return _start_of_day(bound.value) + timedelta(days=1), True
    return bound.value, False


def _positive_condition(item: ValidatedFilter, operator: str, now: datetime) -> ColumnElement:
    column = item.column
    first = item.first
    if column.type == COLUMN_TYPE_NUMBER:
        shadow = DataCell.number_value
        if operator == OP_EQUALS:
            return shadow == first.value
        if operator == OP_GREATER_THAN:
            return shadow > first.value
        if operator == OP_GREATER_THAN_OR_EQUAL:
            return shadow >= first.value
        if operator == OP_LESS_THAN:
            return shadow < first.value
        if operator == OP_LESS_THAN_OR_EQUAL:
            return shadow <= first.value
        if operator == OP_BETWEEN:
            return and_(shadow >= first.value, shadow <= item.second.value)
    elif column.type == COLUMN_TYPE_DATE:
        shadow = DataCell.date_value
        if operator in RELATIVE_DATE_OPERATORS:
            start, end = relative_window(operator, now)
            return and_(shadow >= start, shadow < end)
        if operator == OP_EQUALS:
            if first.date_only:
                start = _start_of_day(first.value)
                return and_(shadow >= start, shadow < start + timedelta(days=1))
            return shadow == first.value
        if operator == OP_BEFORE:
            return shadow < _lower_date(first)
        if operator == OP_AFTER:
            upper, exclusive = _upper_date(first)
            return shadow >= upper if exclusive else shadow > upper
        if operator == OP_BETWEEN:
            upper, exclusive = _upper_date(item.second)
            return and_(
                shadow >= _lower_date(first),
                shadow < upper if exclusive else shadow <= upper,
            )
    elif column.type == COLUMN_TYPE_BOOLEAN:
        if operator == OP_EQUALS:
            return DataCell.boolean_value == first.value
    elif column.type == COLUMN_TYPE_REFERENCE:
        if operator == OP_EQUALS:
            return DataCell.number_value == float(first.value)
    elif column.type == COLUMN_TYPE_CUSTOM_ARRAY:
        if operator == OP_EQUALS:
            return func.trim(DataCell.value) == first.value
    else:
        if operator == OP_CONTAINS:
            return DataCell.value.icontains(first.value, autoescape=True)
        if operator == OP_STARTS_WITH:
            return DataCell.value.istartswith(first.value, autoescape=True)
        if operator == OP_ENDS_WITH:
            return DataCell.value.iendswith(first.value, autoescape=True)
        if operator == OP_EQUALS:
            return func.trim(DataCell.value) == first.value
        if operator == OP_REGEX:
            return DataCell.value.regexp_match(first.value)
    raise InvalidOperatorError(
        f"Operator '{operator}' is not valid for {column.type} column '{column.name}'",
        column_id=column.id,
        operator=operator,
    )


def build_filter_condition(item: ValidatedFilter, now: datetime) -> ColumnElement:
    column_id = item.column.id
    if item.operator == OP_IS_EMPTY:
        return not_(_cell_exists(column_id, _non_empty()))
    if item.operator == OP_IS_NOT_EMPTY:
        return _cell_exists(column_id, _non_empty())
    positive = _NEGATIONS.get(item.operator)
    if positive is not None:
        return not_(_cell_exists(column_id, _positive_condition(item, positive, now)))
    return _cell_exists(column_id, _positive_condition(item, item.operator, now))


def build_search_condition(search: str, column_ids: list[int]) -> ColumnElement:
    # OR across text columns with contains semantics; no text columns matches nothing.
    if not search:
        return true()
    if not column_ids:
        return false()
    return (
        select(DataCell.id)
        .where(
            DataCell.row_id == DataRow.id,
            DataCell.column_id.in_(column_ids),
            DataCell.value.icontains(search, autoescape=True),
        )
        .correlate(DataRow)
        .exists()
    )


def build_where(table_id: int, query: ValidatedQuery, now: datetime) -> list[ColumnElement]:
    conditions: list[ColumnElement] = [DataRow.table_id == table_id]
    conditions.extend(build_filter_condition(item, now) for item in query.filters)
    if query.global_search:
        conditions.append(build_search_condition(query.global_search, query.search_column_ids))
    return conditions


def _sort_expression(column: DataColumn) -> ColumnElement:
    if column.type in (COLUMN_TYPE_NUMBER, COLUMN_TYPE_REFERENCE):
        target = DataCell.number_value
    elif column.type == COLUMN_TYPE_DATE:
        target = DataCell.date_value
    elif column.type == COLUMN_TYPE_BOOLEAN:
        target = DataCell.boolean_value
    else:
        target = func.lower(DataCell.value)
    return (
        select(target)
        .where(DataCell.row_id == DataRow.id, DataCell.column_id == column.id)
        .correlate(DataRow)
        .limit(1)
        .scalar_subquery()
    )


def build_order_by(query: ValidatedQuery) -> list[ColumnElement]:
    # Rows without a value sort last in either direction; ties fall back to row id.
    descending = query.sort_order == "desc"
    if query.sort_column is None:
        expression = _ROW_SORT_FIELDS[query.sort_by]
        ordered = expression.desc() if descending else expression.asc()
        if query.sort_by == SORT_ID:
            return [ordered]
        return [ordered, DataRow.id.asc()]
    expression = _sort_expression(query.sort_column)
    ordered = expression.desc() if descending else expression.asc()
    return [nulls_last(ordered), DataRow.id.asc()]
