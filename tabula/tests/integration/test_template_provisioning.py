from __future__ import annotations

import pytest

from tabula.core.errors import CircularDependencyError, NotFoundError
from tabula.domain.payloads import TemplateSpec
from tabula.persistence.repos import audit as audit_repo
from tabula.persistence.repos import schema as schema_repo
from tabula.services.provisioning import provision_template_batch
from tabula.services.schema_registry import create_database
from tabula.tests.utils.seed import tenant_id


def _templates(raw: list[dict]) -> list[TemplateSpec]:
    return [TemplateSpec.model_validate(item) for item in raw]


async def _database(session, tenant: str) -> int:
    database = await create_database(session, tenant_id=tenant, name="CRM")
    return database.id


@pytest.mark.asyncio
async def test_batch_is_provisioned_in_dependency_order(session) -> None:
    tenant = tenant_id()
    database_id = await _database(session, tenant)
    result = await provision_template_batch(
        session,
        tenant_id=tenant,
        database_id=database_id,
        templates=_templates(
            [
                {
                    "id": "orders",
                    "name": "Orders",
                    "dependencies": ["customers"],
                    "columns": [
                        {"name": "Number", "primary": True, "isLocked": True},
                        {"name": "Customer", "type": "reference", "referenceTable": "customers"},
                    ],
                },
                {
                    "id": "customers",
                    "name": "Customers",
                    "isProtected": True,
                    "protectedType": "crm",
                    "columns": [{"name": "Name", "primary": True}],
                },
            ]
        ),
    )
    assert result.errors == []
    assert [item.template_id for item in result.created] == ["customers", "orders"]
    customers, orders = result.created
    assert len(orders.column_ids) == 2

    columns = await schema_repo.list_columns(session, orders.table_id)
    customer_column = next(column for column in columns if column.name == "Customer")
    assert customer_column.reference_table_id == customers.table_id
    table = await schema_repo.get_table_for_tenant(session, tenant, customers.table_id)
    assert table.is_protected is True
    assert table.protected_type == "crm"


@pytest.mark.asyncio
async def test_cycle_aborts_before_any_write(session) -> None:
    tenant = tenant_id()
    database_id = await _database(session, tenant)
    with pytest.raises(CircularDependencyError):
        await provision_template_batch(
            session,
            tenant_id=tenant,
            database_id=database_id,
            templates=_templates(
                [
                    {"id": "a", "name": "A", "dependencies": ["b"]},
                    {"id": "b", "name": "B", "dependencies": ["a"]},
                    {"id": "c", "name": "C"},
                ]
            ),
        )
    assert await schema_repo.list_tables(session, tenant, database_id) == []


@pytest.mark.asyncio
async def test_failures_are_reported_per_template(session) -> None:
    tenant = tenant_id()
    database_id = await _database(session, tenant)
    result = await provision_template_batch(
        session,
        tenant_id=tenant,
        database_id=database_id,
        templates=_templates(
            [
                {"id": "notes", "name": "Notes", "columns": [{"name": "Body"}]},
                # Duplicate column names fail after the table row was flushed.
                {
                    "id": "broken",
                    "name": "Broken",
                    "columns": [{"name": "Title"}, {"name": "title"}],
                },
                {"id": "child", "name": "Child", "dependencies": ["broken"]},
                {"id": "orphan", "name": "Orphan", "dependencies": ["nowhere"]},
            ]
        ),
    )
    assert [item.template_id for item in result.created] == ["notes"]
    failures = {item.template_id: item for item in result.errors}
    assert set(failures) == {"broken", "child", "orphan"}
    assert failures["broken"].code == "VALIDATION_ERROR"
    assert failures["child"].code == "NOT_FOUND"
    assert failures["child"].message == "Table for dependency 'broken' not found among created tables"
    assert failures["orphan"].code == "NOT_FOUND"

    # The failed template left nothing behind.
    tables = await schema_repo.list_tables(session, tenant, database_id)
    assert [table.name for table in tables] == ["Notes"]

    events = await audit_repo.list_events(
        session, tenant_id=tenant, event_type="schema.template.failed"
    )
    assert sorted(event.resource_id for event in events) == ["broken", "child", "orphan"]
    assert all(event.outcome == "failure" for event in events)


@pytest.mark.asyncio
async def test_unknown_database_is_rejected(session) -> None:
    other_database = await _database(session, tenant_id())
    with pytest.raises(NotFoundError):
        await provision_template_batch(
            session,
            tenant_id=tenant_id(),
            database_id=other_database,
            templates=_templates([{"id": "a", "name": "A"}]),
        )
