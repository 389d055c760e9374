from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tabula.core.errors import NotFoundError, PlanLimitError, RequiredFieldError, ValidationError
from tabula.domain.payloads import ColumnSpec
from tabula.services.filter_cache import CacheEntry, InMemoryFilterCache
from tabula.services.plan_limits import set_plan_limits
from tabula.services.row_store import create_row, delete_row, read_rows, update_row
from tabula.services.schema_registry import create_columns, create_table
from tabula.tests.utils.seed import seed_table, tenant_id


CONTACT_COLUMNS = [
    {"name": "Name", "required": True, "primary": True},
    {"name": "Email", "unique": True},
    {"name": "Score", "type": "number"},
    {"name": "Joined", "type": "date"},
    {"name": "Active", "type": "boolean"},
    {"name": "Stage", "type": "customArray", "customOptions": ["lead", "customer"]},
]


@pytest.mark.asyncio
async def test_values_round_trip_through_typed_read(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    record = await create_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        values={
            str(columns["Name"].id): "Ada",
            str(columns["Score"].id): "12.5",
            columns["Joined"].id: "2024-02-03T04:05:06Z",
            columns["Active"].id: "yes",
            columns["Stage"].id: " lead ",
        },
    )
    values = record.values()
    assert values[columns["Name"].id] == "Ada"
    assert values[columns["Score"].id] == 12.5
    assert values[columns["Joined"].id] == datetime(2024, 2, 3, 4, 5, 6, tzinfo=timezone.utc)
    assert values[columns["Active"].id] is True
    assert values[columns["Stage"].id] == "lead"
    # Columns without a value have no cell at all.
    assert columns["Email"].id not in values

    [read] = await read_rows(session, tenant_id=tenant, table_id=table.id, row_ids=[record.id])
    assert read.values() == values


@pytest.mark.asyncio
async def test_non_coercible_values_read_back_as_none(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    record = await create_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        values={columns["Name"].id: "Bob", columns["Score"].id: "3,5"},
    )
    cell = record.cells[columns["Score"].id]
    assert cell.value is None
    assert cell.raw == "3,5"


@pytest.mark.asyncio
async def test_required_columns_are_checked_before_quota(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    await set_plan_limits(session, tenant_id=tenant, max_tables=None, max_rows=0)
    await session.commit()
    with pytest.raises(RequiredFieldError) as excinfo:
        await create_row(session, tenant_id=tenant, table_id=table.id, values={columns["Score"].id: 1})
    assert excinfo.value.columns == ["Name"]
    with pytest.raises(PlanLimitError):
        await create_row(session, tenant_id=tenant, table_id=table.id, values={columns["Name"].id: "x"})


@pytest.mark.asyncio
async def test_row_quota_counts_existing_rows(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    await set_plan_limits(session, tenant_id=tenant, max_tables=None, max_rows=1)
    await session.commit()
    await create_row(session, tenant_id=tenant, table_id=table.id, values={columns["Name"].id: "one"})
    with pytest.raises(PlanLimitError) as excinfo:
        await create_row(session, tenant_id=tenant, table_id=table.id, values={columns["Name"].id: "two"})
    assert excinfo.value.resource == "rows"


@pytest.mark.asyncio
async def test_invalid_writes_are_rejected(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    name = columns["Name"].id
    await create_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        values={name: "Ada", columns["Email"].id: "ada@example.com"},
    )
    cases = [
        {name: "Dup", columns["Email"].id: "ada@example.com"},
        {name: "Bad stage", columns["Stage"].id: "partner"},
        {name: "Bad column", 99999: "x"},
        {name: "Bad key", "not-an-id": "x"},
    ]
    for values in cases:
        with pytest.raises(ValidationError):
            await create_row(session, tenant_id=tenant, table_id=table.id, values=values)
    assert len(await read_rows(session, tenant_id=tenant, table_id=table.id)) == 1


@pytest.mark.asyncio
async def test_reference_values_must_point_at_existing_rows(session) -> None:
    tenant = tenant_id()
    companies, company_columns = await seed_table(session, tenant, [{"name": "Name"}], name="Companies")
    contacts = await create_table(
        session, tenant_id=tenant, database_id=companies.database_id, name="Contacts"
    )
    [employer] = await create_columns(
        session,
        tenant_id=tenant,
        table_id=contacts.id,
        columns=[ColumnSpec(name="Employer", type="reference", referenceTableId=companies.id)],
    )
    acme = await create_row(
        session, tenant_id=tenant, table_id=companies.id, values={company_columns["Name"].id: "Acme"}
    )
    with pytest.raises(ValidationError) as excinfo:
        await create_row(session, tenant_id=tenant, table_id=contacts.id, values={employer.id: acme.id + 100})
    assert excinfo.value.details["missing"] == [acme.id + 100]

    linked = await create_row(session, tenant_id=tenant, table_id=contacts.id, values={employer.id: str(acme.id)})
    assert linked.values()[employer.id] == acme.id


@pytest.mark.asyncio
async def test_partial_update_clears_and_sets_cells(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    record = await create_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        values={columns["Name"].id: "Ada", columns["Score"].id: 10, columns["Email"].id: "a@x.io"},
    )
    updated = await update_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        row_id=record.id,
        values={columns["Score"].id: 11, columns["Email"].id: "", columns["Active"].id: False},
    )
    values = updated.values()
    assert values[columns["Name"].id] == "Ada"
    assert values[columns["Score"].id] == 11.0
    assert values[columns["Active"].id] is False
    assert columns["Email"].id not in values

    with pytest.raises(RequiredFieldError):
        await update_row(
            session,
            tenant_id=tenant,
            table_id=table.id,
            row_id=record.id,
            values={columns["Name"].id: None},
        )
    # A row may keep its own unique value.
    await update_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        row_id=record.id,
        values={columns["Email"].id: "a@x.io"},
    )
    await update_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        row_id=record.id,
        values={columns["Email"].id: "a@x.io"},
    )


@pytest.mark.asyncio
async def test_deleted_rows_are_gone(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    record = await create_row(session, tenant_id=tenant, table_id=table.id, values={columns["Name"].id: "Ada"})
    await delete_row(session, tenant_id=tenant, table_id=table.id, row_id=record.id)
    assert await read_rows(session, tenant_id=tenant, table_id=table.id) == []
    with pytest.raises(NotFoundError):
        await delete_row(session, tenant_id=tenant, table_id=table.id, row_id=record.id)
    with pytest.raises(NotFoundError):
        await update_row(
            session,
            tenant_id=tenant,
            table_id=table.id,
            row_id=record.id,
            values={columns["Name"].id: "Again"},
        )


@pytest.mark.asyncio
async def test_rows_of_another_tenant_are_not_found(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    with pytest.raises(NotFoundError):
        await create_row(session, tenant_id=tenant_id(), table_id=table.id, values={columns["Name"].id: "x"})
    with pytest.raises(NotFoundError):
        await read_rows(session, tenant_id=tenant_id(), table_id=table.id)


@pytest.mark.asyncio
async def test_writes_invalidate_cached_pages(session) -> None:
    tenant = tenant_id()
    table, columns = await seed_table(session, tenant, CONTACT_COLUMNS)
    cache = InMemoryFilterCache(ttl_s=300)

    def _entry(**fields) -> CacheEntry:
        return CacheEntry(
            data=[],
            pagination={"totalRows": 0},
            inserted_at=cache.now(),
            filter_hash="h",
            table_id=table.id,
            **fields,
        )

    await cache.set("page", _entry())
    record = await create_row(
        session, tenant_id=tenant, table_id=table.id, values={columns["Name"].id: "Ada"}, cache=cache
    )
    assert len(cache) == 0

    await cache.set("by_score", _entry(filter_column_ids=[columns["Score"].id]))
    await cache.set("by_active", _entry(filter_column_ids=[columns["Active"].id]))
    await update_row(
        session,
        tenant_id=tenant,
        table_id=table.id,
        row_id=record.id,
        values={columns["Score"].id: 5},
        cache=cache,
    )
    # Every write moves updatedAt, so no page of the table survives an update.
    assert await cache.get("by_score") is None
    assert await cache.get("by_active") is None

    await delete_row(session, tenant_id=tenant, table_id=table.id, row_id=record.id, cache=cache)
    assert len(cache) == 0
