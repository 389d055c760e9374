from __future__ import annotations

import pytest

from tabula.core.errors import PermissionDeniedError, PlanLimitError, ValidationError
from tabula.domain.payloads import ColumnSpec, FilterPayload
from tabula.services.filter_cache import CacheEntry, InMemoryFilterCache
from tabula.services.permissions import Caller, grant_column_permission, grant_table_permission
from tabula.services.plan_limits import set_plan_limits
from tabula.services.row_store import create_row, import_rows, read_rows
from tabula.services.rows_query import export_rows
from tabula.services.schema_registry import create_columns, create_table
from tabula.tests.utils.seed import seed_table, tenant_id


COLUMNS = [
    {"name": "Name", "required": True, "primary": True},
    {"name": "Email", "unique": True},
    {"name": "Score", "type": "number"},
    {"name": "Active", "type": "boolean"},
]


def _admin(tenant: str) -> Caller:
    return Caller(tenant_id=tenant, user_id="admin-1", role="admin")


@pytest.mark.asyncio
async def test_import_reports_failed_rows_and_writes_the_rest(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, COLUMNS)
    name, email, score = columns["Name"].id, columns["Email"].id, columns["Score"].id

    result = await import_rows(
        session,
        tenant_id=tenant,
        table_id=table.id,
        rows=[
            {str(name): "Ada", str(email): "ada@example.com", str(score): "4"},
            {str(name): "Ada Again", str(email): "ada@example.com"},
            {str(name): "  ", str(email): ""},
            {str(name): "Bob", str(score): 7},
            {"999": "unknown column"},
        ],
    )
    assert len(result.imported) == 2
    assert result.skipped == [3]
    assert [(error["row"], error["code"]) for error in result.errors] == [
        (2, "VALIDATION_ERROR"),
        (5, "VALIDATION_ERROR"),
    ]

    records = await read_rows(session, tenant_id=tenant, table_id=table.id)
    assert sorted(record.values()[name] for record in records) == ["Ada", "Bob"]
    assert {record.id for record in records} == set(result.imported)


@pytest.mark.asyncio
async def test_import_is_rejected_whole_when_most_rows_fail(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, COLUMNS)
    name, score = columns["Name"].id, columns["Score"].id

    with pytest.raises(ValidationError) as excinfo:
        await import_rows(
            session,
            tenant_id=tenant,
            table_id=table.id,
            rows=[{name: "Ada"}, {score: 1}, {score: 2}, {score: 3}],
        )
    assert excinfo.value.details["total_errors"] == 3
    assert await read_rows(session, tenant_id=tenant, table_id=table.id) == []

    with pytest.raises(ValidationError):
        await import_rows(session, tenant_id=tenant, table_id=table.id, rows=[])


@pytest.mark.asyncio
async def test_import_checks_the_row_quota_for_the_whole_batch(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, COLUMNS)
    await set_plan_limits(session, tenant_id=tenant, max_tables=None, max_rows=2)
    await session.commit()

    with pytest.raises(PlanLimitError):
        await import_rows(
            session,
            tenant_id=tenant,
            table_id=table.id,
            rows=[{columns["Name"].id: f"Row {index}"} for index in range(3)],
        )
    assert await read_rows(session, tenant_id=tenant, table_id=table.id) == []


@pytest.mark.asyncio
async def test_import_invalidates_cached_pages(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, COLUMNS)
    cache = InMemoryFilterCache(ttl_s=300)
    await cache.set(
        "page",
        CacheEntry(
            data=[],
            pagination={"totalRows": 0},
            inserted_at=cache.now(),
            filter_hash="h",
            table_id=table.id,
        ),
    )
    await import_rows(
        session,
        tenant_id=tenant,
        table_id=table.id,
        rows=[{columns["Name"].id: "Ada"}],
        cache=cache,
    )
    assert len(cache) == 0


@pytest.mark.asyncio
async def test_export_applies_filters_sort_and_formats(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, COLUMNS)
    for index, active in ((1, True), (2, False), (3, True)):
        await create_row(
            session,
            tenant_id=tenant,
            table_id=table.id,
            values={
                columns["Name"].id: f"Contact {index}",
                columns["Score"].id: index,
                columns["Active"].id: active,
            },
        )

    export = await export_rows(
        session,
        caller=_admin(tenant),
        table_id=table.id,
        payload=FilterPayload.model_validate(
            {
                "filters": [{"columnId": columns["Active"].id, "operator": "equals", "value": True}],
                "sortBy": str(columns["Score"].id),
                "sortOrder": "desc",
            }
        ),
    )
    assert export.headers == ["Name", "Email", "Score", "Active"]
    assert export.to_csv().splitlines() == [
        "Name;Email;Score;Active",
        "Contact 3;;3.0;true",
        "Contact 1;;1.0;true",
    ]

    limited = await export_rows(
        session,
        caller=_admin(tenant),
        table_id=table.id,
        payload=FilterPayload(),
        export_format="json",
        limit=1,
    )
    assert [record["values"]["Name"] for record in limited.records] == ["Contact 1"]

    with pytest.raises(ValidationError):
        await export_rows(
            session,
            caller=_admin(tenant),
            table_id=table.id,
            payload=FilterPayload(),
            export_format="xml",
        )


@pytest.mark.asyncio
async def test_export_follows_column_and_reference_grants(session) -> None:
    tenant = tenant_id()
    companies, company_columns = await seed_table(
        session, tenant, [{"name": "Label", "primary": True}], name="Companies"
    )
    acme = await create_row(
        session, tenant_id=tenant, table_id=companies.id, values={company_columns["Label"].id: "Acme Corp"}
    )
    contacts = await create_table(session, tenant_id=tenant, database_id=companies.database_id, name="Contacts")
    name, employer, salary = await create_columns(
        session,
        tenant_id=tenant,
        table_id=contacts.id,
        columns=[
            ColumnSpec(name="Name"),
            ColumnSpec(name="Employer", type="reference", referenceTableId=companies.id),
            ColumnSpec(name="Salary", type="number"),
        ],
    )
    await create_row(
        session,
        tenant_id=tenant,
        table_id=contacts.id,
        values={name.id: "Ada", employer.id: acme.id, salary.id: 100},
    )

    admin_export = await export_rows(
        session, caller=_admin(tenant), table_id=contacts.id, payload=FilterPayload()
    )
    assert admin_export.records[0]["values"] == {"Name": "Ada", "Employer": "Acme Corp", "Salary": 100.0}

    member = Caller(tenant_id=tenant, user_id="member-1")
    with pytest.raises(PermissionDeniedError):
        await export_rows(session, caller=member, table_id=contacts.id, payload=FilterPayload())

    await grant_table_permission(session, tenant_id=tenant, table_id=contacts.id, user_id="member-1")
    await grant_column_permission(
        session, tenant_id=tenant, column_id=salary.id, user_id="member-1", can_read=False
    )
    member_export = await export_rows(session, caller=member, table_id=contacts.id, payload=FilterPayload())
    assert member_export.headers == ["Name", "Employer"]
    # Without read access to Companies the referenced row id is exported instead.
    assert member_export.records[0]["values"] == {"Name": "Ada", "Employer": acme.id}
