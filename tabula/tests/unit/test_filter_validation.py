from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tabula.core.errors import (
    InvalidOperatorError,
    InvalidSortColumnError,
    MissingRangeValueError,
    PageSizeExceededError,
    PermissionDeniedError,
    ValidationError,
)
from tabula.domain.models import DataColumn
from tabula.domain.payloads import FilterPayload
from tabula.services.filter_engine import validate_payload


def _columns() -> list[DataColumn]:
    # Transient columns; validation never touches the session.
    return [
        DataColumn(id=1, table_id=10, tenant_id="t1", name="Name", type="text", order=0),
        DataColumn(id=2, table_id=10, tenant_id="t1", name="Score", type="number", order=1),
        DataColumn(id=3, table_id=10, tenant_id="t1", name="Joined", type="date", order=2),
        DataColumn(id=4, table_id=10, tenant_id="t1", name="Active", type="boolean", order=3),
        DataColumn(id=5, table_id=10, tenant_id="t1", name="Owner", type="reference", order=4),
    ]


def _payload(**fields) -> FilterPayload:
    return FilterPayload.model_validate(fields)


def test_defaults_apply_page_size_and_id_sort() -> None:
    query = validate_payload(_payload(), _columns())
    assert query.page == 1
    assert query.page_size == 25
    assert query.sort_by == "id"
    assert query.sort_column is None
    assert query.include_cells is True
    assert query.offset == 0
    assert query.search_column_ids == [1]


def test_offset_follows_page() -> None:
    query = validate_payload(_payload(page=5, pageSize=25), _columns())
    assert query.offset == 100


def test_page_size_above_maximum_is_rejected() -> None:
    with pytest.raises(PageSizeExceededError) as excinfo:
        validate_payload(_payload(pageSize=101), _columns())
    assert excinfo.value.details["max_page_size"] == 100


def test_unknown_column_is_a_validation_error() -> None:
    payload = _payload(filters=[{"columnId": 99, "operator": "equals", "value": "x"}])
    with pytest.raises(ValidationError):
        validate_payload(payload, _columns())


def test_operator_is_checked_against_stored_type() -> None:
    # The advisory columnType cannot unlock text operators on a number column.
    payload = _payload(
        filters=[{"columnId": 2, "columnType": "text", "operator": "contains", "value": "1"}]
    )
    with pytest.raises(InvalidOperatorError) as excinfo:
        validate_payload(payload, _columns())
    assert "greater_than" in excinfo.value.details["allowed"]
    assert "contains" not in excinfo.value.details["allowed"]


def test_boolean_column_rejects_ordering_operators() -> None:
    payload = _payload(filters=[{"columnId": 4, "operator": "greater_than", "value": "true"}])
    with pytest.raises(InvalidOperatorError):
        validate_payload(payload, _columns())


def test_range_requires_both_bounds() -> None:
    payload = _payload(filters=[{"columnId": 2, "operator": "between", "value": 10}])
    with pytest.raises(MissingRangeValueError):
        validate_payload(payload, _columns())


def test_reversed_range_bounds_are_swapped() -> None:
    payload = _payload(
        filters=[{"columnId": 2, "operator": "between", "value": 20, "secondValue": "10"}]
    )
    item = validate_payload(payload, _columns()).filters[0]
    assert item.first.value == 10.0
    assert item.second.value == 20.0


def test_date_bounds_remember_date_only_input() -> None:
    payload = _payload(
        filters=[
            {
                "columnId": 3,
                "operator": "between",
                "value": "2024-01-01",
                "secondValue": "2024-01-31T12:00:00Z",
            }
        ]
    )
    item = validate_payload(payload, _columns()).filters[0]
    assert item.first.value == datetime(2024, 1, 1, tzinfo=timezone.utc)
    assert item.first.date_only is True
    assert item.second.date_only is False


def test_value_must_parse_for_column_type() -> None:
    for config in (
        {"columnId": 2, "operator": "greater_than", "value": "1,5"},
        {"columnId": 3, "operator": "before", "value": "yesterday-ish"},
        {"columnId": 4, "operator": "equals", "value": "perhaps"},
        {"columnId": 5, "operator": "equals", "value": "row-7"},
    ):
        with pytest.raises(ValidationError):
            validate_payload(_payload(filters=[config]), _columns())


def test_missing_value_is_rejected_except_for_valueless_operators() -> None:
    with pytest.raises(ValidationError):
        validate_payload(
            _payload(filters=[{"columnId": 1, "operator": "contains", "value": "  "}]),
            _columns(),
        )
    query = validate_payload(
        _payload(
            filters=[
                {"columnId": 1, "operator": "is_empty"},
                {"columnId": 3, "operator": "this_week"},
            ]
        ),
        _columns(),
    )
    assert [item.operator for item in query.filters] == ["is_empty", "this_week"]


def test_invalid_regex_is_rejected() -> None:
    payload = _payload(filters=[{"columnId": 1, "operator": "regex", "value": "([a-z"}])
    with pytest.raises(ValidationError):
        validate_payload(payload, _columns())


def test_sort_accepts_row_fields_and_column_ids() -> None:
    assert validate_payload(_payload(sortBy="createdAt"), _columns()).sort_by == "createdAt"
    query = validate_payload(_payload(sortBy="2", sortOrder="desc"), _columns())
    assert query.sort_column.id == 2
    assert query.sort_order == "desc"


@pytest.mark.parametrize("sort_by", ["42", "Name", "created_at"])
def test_unknown_sort_column_is_rejected(sort_by: str) -> None:
    with pytest.raises(InvalidSortColumnError):
        validate_payload(_payload(sortBy=sort_by), _columns())


def test_hidden_columns_cannot_be_filtered_or_sorted() -> None:
    readable = {1, 3}
    with pytest.raises(PermissionDeniedError):
        validate_payload(
            _payload(filters=[{"columnId": 2, "operator": "equals", "value": 1}]),
            _columns(),
            readable=readable,
        )
    with pytest.raises(PermissionDeniedError):
        validate_payload(_payload(sortBy="2"), _columns(), readable=readable)


def test_global_search_is_trimmed_and_limited_to_readable_text_columns() -> None:
    query = validate_payload(_payload(globalSearch="  acme "), _columns(), readable={2, 3})
    assert query.global_search == "acme"
    assert query.search_column_ids == []
