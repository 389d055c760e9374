from __future__ import annotations

from datetime import datetime, timedelta, timezone
import json

import pytest
from httpx import ASGITransport, AsyncClient

from tabula.apps.api.main import create_app
from tabula.apps.api.rate_limit import InMemoryRateLimiter
from tabula.core.config import get_settings
from tabula.services.filter_cache import InMemoryFilterCache
from tabula.tests.utils.seed import tenant_id


def _app():
    # ASGITransport skips lifespan, so shared state is attached by hand.
    app = create_app()
    app.state.filter_cache = InMemoryFilterCache(ttl_s=300)
    return app


def _client(app) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=app), base_url="http://test")


def _headers(tenant: str, user: str = "admin-1", role: str = "admin") -> dict[str, str]:
    return {"X-Tenant-Id": tenant, "X-User-Id": user, "X-Role": role}


async def _create_table(client: AsyncClient, tenant: str, columns: list[dict], name: str = "Contacts") -> dict:
    database = await client.post(
        f"/v1/tenants/{tenant}/databases", json={"name": f"{name} DB"}, headers=_headers(tenant)
    )
    assert database.status_code == 201
    database_id = database.json()["data"]["id"]
    table = await client.post(
        f"/v1/tenants/{tenant}/databases/{database_id}/tables",
        json={"name": name, "columns": columns},
        headers=_headers(tenant),
    )
    assert table.status_code == 201
    return table.json()["data"]


def _column_ids(table: dict) -> dict[str, int]:
    return {column["name"]: column["id"] for column in table["columns"]}


@pytest.mark.asyncio
async def test_health_is_served_versioned_and_bare() -> None:
    async with _client(_app()) as client:
        versioned = await client.get("/v1/health")
        assert versioned.status_code == 200
        body = versioned.json()
        assert body["data"]["status"] == "ok"
        assert body["meta"]["api_version"] == "v1"
        assert body["data"]["filter_cache"] == "InMemoryFilterCache"
        assert versioned.headers["X-Request-Id"] == body["meta"]["request_id"]

        bare = await client.get("/health", headers={"X-Request-Id": "probe-1"})
        assert bare.json()["status"] == "ok"
        assert bare.headers["X-Request-Id"] == "probe-1"


@pytest.mark.asyncio
async def test_identity_headers_are_required_and_tenant_scoped() -> None:
    tenant = tenant_id()
    async with _client(_app()) as client:
        missing = await client.get(f"/v1/tenants/{tenant}/databases")
        assert missing.status_code == 401
        assert missing.json()["error"]["code"] == "AUTH_UNAUTHORIZED"

        mismatch = await client.get(f"/v1/tenants/{tenant}/databases", headers=_headers(tenant_id()))
        assert mismatch.status_code == 403
        assert mismatch.json()["error"]["code"] == "AUTH_FORBIDDEN"

        bad_role = await client.get(f"/v1/tenants/{tenant}/databases", headers=_headers(tenant, role="owner"))
        assert bad_role.status_code == 400
        assert bad_role.json()["error"]["code"] == "AUTH_INVALID_ROLE"

        member_write = await client.post(
            f"/v1/tenants/{tenant}/databases",
            json={"name": "Main"},
            headers=_headers(tenant, user="m1", role="member"),
        )
        assert member_write.status_code == 403


@pytest.mark.asyncio
async def test_row_lifecycle_over_http() -> None:
    tenant = tenant_id()
    async with _client(_app()) as client:
        table = await _create_table(
            client,
            tenant,
            [{"name": "Name", "required": True}, {"name": "Score", "type": "number"}],
        )
        ids = _column_ids(table)
        rows_url = f"/v1/tenants/{tenant}/tables/{table['id']}/rows"

        created = await client.post(
            rows_url,
            json={"values": {str(ids["Name"]): "Ada", str(ids["Score"]): "7"}},
            headers=_headers(tenant),
        )
        assert created.status_code == 201
        row = created.json()["data"]
        assert row["values"] == {str(ids["Name"]): "Ada", str(ids["Score"]): 7.0}

        patched = await client.patch(
            f"{rows_url}/{row['id']}",
            json={"values": {str(ids["Score"]): 8}},
            headers=_headers(tenant),
        )
        assert patched.status_code == 200
        assert patched.json()["data"]["values"][str(ids["Score"])] == 8.0

        fetched = await client.get(f"{rows_url}/{row['id']}", headers=_headers(tenant))
        assert fetched.json()["data"]["values"][str(ids["Name"])] == "Ada"

        missing_required = await client.post(
            rows_url, json={"values": {str(ids["Score"]): 1}}, headers=_headers(tenant)
        )
        assert missing_required.status_code == 422
        error = missing_required.json()["error"]
        assert error["code"] == "REQUIRED_FIELD_MISSING"
        assert error["details"]["columns"] == ["Name"]

        deleted = await client.delete(f"{rows_url}/{row['id']}", headers=_headers(tenant))
        assert deleted.json()["data"] == {"id": row["id"], "deleted": True}
        gone = await client.get(f"{rows_url}/{row['id']}", headers=_headers(tenant))
        assert gone.status_code == 404
        assert gone.json()["error"]["code"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_filtered_listing_over_http() -> None:
    tenant = tenant_id()
    app = _app()
    async with _client(app) as client:
        table = await _create_table(
            client, tenant, [{"name": "Name"}, {"name": "Score", "type": "number"}]
        )
        ids = _column_ids(table)
        rows_url = f"/v1/tenants/{tenant}/tables/{table['id']}/rows"
        for index in range(1, 31):
            response = await client.post(
                rows_url,
                json={"values": {str(ids["Name"]): f"Row {index}", str(ids["Score"]): index}},
                headers=_headers(tenant),
            )
            assert response.status_code == 201

        filters = [{"columnId": ids["Score"], "operator": "between", "value": 10, "secondValue": 20}]
        params = {"filters": json.dumps(filters), "pageSize": 5, "page": 3}
        first = await client.get(f"{rows_url}/filtered", params=params, headers=_headers(tenant))
        assert first.status_code == 200
        body = first.json()["data"]
        assert body["pagination"]["totalRows"] == 11
        assert body["pagination"]["hasNext"] is False
        assert len(body["data"]) == 1
        assert body["performance"]["cacheHit"] is False

        again = await client.get(f"{rows_url}/filtered", params=params, headers=_headers(tenant))
        assert again.json()["data"]["performance"]["cacheHit"] is True

        bad_operator = await client.get(
            f"{rows_url}/filtered",
            params={"filters": json.dumps([{"columnId": ids["Score"], "operator": "contains", "value": "1"}])},
            headers=_headers(tenant),
        )
        assert bad_operator.status_code == 400
        assert bad_operator.json()["error"]["code"] == "INVALID_OPERATOR"

        missing_range = await client.get(
            f"{rows_url}/filtered",
            params={"filters": json.dumps([{"columnId": ids["Score"], "operator": "between", "value": 1}])},
            headers=_headers(tenant),
        )
        assert missing_range.json()["error"]["code"] == "MISSING_RANGE_VALUE"

        too_big = await client.get(f"{rows_url}/filtered", params={"pageSize": 500}, headers=_headers(tenant))
        assert too_big.status_code == 400
        assert too_big.json()["error"]["code"] == "PAGE_SIZE_EXCEEDED"

        bad_sort = await client.get(f"{rows_url}/filtered", params={"sortBy": "nope"}, headers=_headers(tenant))
        assert bad_sort.json()["error"]["code"] == "INVALID_SORT_COLUMN"

        not_json = await client.get(f"{rows_url}/filtered", params={"filters": "{oops"}, headers=_headers(tenant))
        assert not_json.status_code == 400
        assert not_json.json()["error"]["code"] == "VALIDATION_ERROR"

        bad_page = await client.get(f"{rows_url}/filtered", params={"page": 0}, headers=_headers(tenant))
        assert bad_page.status_code == 400


@pytest.mark.asyncio
async def test_export_and_import_over_http() -> None:
    tenant = tenant_id()
    async with _client(_app()) as client:
        table = await _create_table(
            client,
            tenant,
            [{"name": "Name", "required": True}, {"name": "Score", "type": "number"}],
        )
        ids = _column_ids(table)
        rows_url = f"/v1/tenants/{tenant}/tables/{table['id']}/rows"

        imported = await client.post(
            f"{rows_url}/import",
            json={
                "rows": [
                    {"values": {str(ids["Name"]): "Ada", str(ids["Score"]): 3}},
                    {"values": {str(ids["Name"]): "Bob; Jr", str(ids["Score"]): 5}},
                    {"values": {str(ids["Score"]): 9}},
                    {"values": {}},
                ]
            },
            headers=_headers(tenant),
        )
        assert imported.status_code == 200
        result = imported.json()["data"]
        assert result["imported"] == 2
        assert result["skipped"] == [4]
        assert [(error["row"], error["code"]) for error in result["errors"]] == [(3, "REQUIRED_FIELD_MISSING")]

        filters = [{"columnId": ids["Score"], "operator": "greater_than", "value": 4}]
        exported = await client.get(
            f"{rows_url}/export", params={"filters": json.dumps(filters)}, headers=_headers(tenant)
        )
        assert exported.status_code == 200
        assert exported.headers["content-type"].startswith("text/csv")
        assert "attachment" in exported.headers["content-disposition"]
        assert exported.text == 'Name;Score\n"Bob; Jr";5.0\n'

        as_json = await client.get(
            f"{rows_url}/export", params={"format": "json", "sortBy": "id"}, headers=_headers(tenant)
        )
        body = as_json.json()["data"]
        assert body["headers"] == ["Name", "Score"]
        assert [row["values"]["Name"] for row in body["rows"]] == ["Ada", "Bob; Jr"]

        unsupported = await client.get(f"{rows_url}/export", params={"format": "xlsx"}, headers=_headers(tenant))
        assert unsupported.status_code == 400
        assert unsupported.json()["error"]["code"] == "VALIDATION_ERROR"

        rejected = await client.post(
            f"{rows_url}/import",
            json={"rows": [{"values": {str(ids["Score"]): 1}}]},
            headers=_headers(tenant),
        )
        assert rejected.status_code == 400
        assert rejected.json()["error"]["details"]["total_errors"] == 1


@pytest.mark.asyncio
async def test_member_access_follows_grants() -> None:
    tenant = tenant_id()
    member = _headers(tenant, user="m1", role="member")
    async with _client(_app()) as client:
        table = await _create_table(client, tenant, [{"name": "Name"}, {"name": "Salary", "type": "number"}])
        ids = _column_ids(table)
        rows_url = f"/v1/tenants/{tenant}/tables/{table['id']}/rows"
        created = await client.post(
            rows_url,
            json={"values": {str(ids["Name"]): "Ada", str(ids["Salary"]): 100}},
            headers=_headers(tenant),
        )
        row_id = created.json()["data"]["id"]

        denied = await client.get(f"{rows_url}/filtered", headers=member)
        assert denied.status_code == 403
        assert denied.json()["error"]["code"] == "PERMISSION_DENIED"

        listing = await client.get(f"/v1/tenants/{tenant}/databases/{table['databaseId']}/tables", headers=member)
        assert listing.json()["data"] == []

        grant = await client.put(
            f"/v1/tenants/{tenant}/permissions/tables/{table['id']}/users/m1",
            json={"canRead": True, "canEdit": True},
            headers=_headers(tenant),
        )
        assert grant.status_code == 200
        assert grant.json()["data"]["can_edit"] is True
        hide = await client.put(
            f"/v1/tenants/{tenant}/permissions/columns/{ids['Salary']}/users/m1",
            json={"canRead": False, "canEdit": False},
            headers=_headers(tenant),
        )
        assert hide.status_code == 200

        visible = await client.get(f"{rows_url}/{row_id}", headers=member)
        assert visible.json()["data"]["values"] == {str(ids["Name"]): "Ada"}

        described = await client.get(f"/v1/tenants/{tenant}/tables/{table['id']}", headers=member)
        assert [column["name"] for column in described.json()["data"]["columns"]] == ["Name"]

        listing = await client.get(f"/v1/tenants/{tenant}/databases/{table['databaseId']}/tables", headers=member)
        assert [item["id"] for item in listing.json()["data"]] == [table["id"]]

        hidden_write = await client.patch(
            f"{rows_url}/{row_id}", json={"values": {str(ids["Salary"]): 1}}, headers=member
        )
        assert hidden_write.status_code == 403
        allowed_write = await client.patch(
            f"{rows_url}/{row_id}", json={"values": {str(ids["Name"]): "Ada L."}}, headers=member
        )
        assert allowed_write.status_code == 200

        no_delete = await client.delete(f"{rows_url}/{row_id}", headers=member)
        assert no_delete.status_code == 403

        check = await client.post(
            f"/v1/tenants/{tenant}/permissions/check",
            json={"resourceType": "column", "resourceId": ids["Salary"], "action": "read"},
            headers=member,
        )
        assert check.json()["data"]["allowed"] is False
        on_behalf = await client.post(
            f"/v1/tenants/{tenant}/permissions/check",
            json={"resourceType": "table", "resourceId": table["id"], "action": "read", "userId": "m2"},
            headers=member,
        )
        assert on_behalf.status_code == 403

        revoked = await client.delete(
            f"/v1/tenants/{tenant}/permissions/tables/{table['id']}/users/m1", headers=_headers(tenant)
        )
        assert revoked.json()["data"]["revoked"] is True
        again = await client.delete(
            f"/v1/tenants/{tenant}/permissions/tables/{table['id']}/users/m1", headers=_headers(tenant)
        )
        assert again.status_code == 404
        unknown = await client.delete(
            f"/v1/tenants/{tenant}/permissions/widgets/1/users/m1", headers=_headers(tenant)
        )
        assert unknown.status_code == 404
        assert (await client.get(f"{rows_url}/filtered", headers=member)).status_code == 403


@pytest.mark.asyncio
async def test_expiring_grants_are_listed_for_admins() -> None:
    tenant = tenant_id()
    soon = (datetime.now(timezone.utc) + timedelta(days=2)).isoformat()
    async with _client(_app()) as client:
        table = await _create_table(client, tenant, [{"name": "Name"}])
        await client.put(
            f"/v1/tenants/{tenant}/permissions/tables/{table['id']}/users/m1",
            json={"expiresAt": soon},
            headers=_headers(tenant),
        )
        await client.put(
            f"/v1/tenants/{tenant}/permissions/dashboards/5/users/m1",
            json={"canView": True},
            headers=_headers(tenant),
        )
        expiring = await client.get(
            f"/v1/tenants/{tenant}/permissions/expiring", params={"withinDays": 7}, headers=_headers(tenant)
        )
        assert expiring.status_code == 200
        items = expiring.json()["data"]
        assert [(item["resourceType"], item["resourceId"]) for item in items] == [("table", table["id"])]

        narrow = await client.get(
            f"/v1/tenants/{tenant}/permissions/expiring", params={"withinDays": 1}, headers=_headers(tenant)
        )
        assert narrow.json()["data"] == []

        member = await client.get(
            f"/v1/tenants/{tenant}/permissions/expiring", headers=_headers(tenant, user="m1", role="member")
        )
        assert member.status_code == 403


@pytest.mark.asyncio
async def test_template_batch_over_http() -> None:
    tenant = tenant_id()
    async with _client(_app()) as client:
        database = await client.post(f"/v1/tenants/{tenant}/databases", json={"name": "CRM"}, headers=_headers(tenant))
        database_id = database.json()["data"]["id"]
        url = f"/v1/tenants/{tenant}/databases/{database_id}/templates"

        response = await client.post(
            url,
            json={
                "templates": [
                    {
                        "id": "deals",
                        "name": "Deals",
                        "dependencies": ["accounts"],
                        "columns": [{"name": "Account", "type": "reference", "referenceTable": "accounts"}],
                    },
                    {"id": "accounts", "name": "Accounts", "columns": [{"name": "Name"}]},
                    {"id": "stray", "name": "Stray", "dependencies": ["missing"]},
                ]
            },
            headers=_headers(tenant),
        )
        assert response.status_code == 201
        body = response.json()["data"]
        assert [item["templateId"] for item in body["created"]] == ["accounts", "deals"]
        assert body["errors"] == [
            {
                "templateId": "stray",
                "code": "NOT_FOUND",
                "message": "Table for dependency 'missing' not found among created tables",
            }
        ]

        cycle = await client.post(
            url,
            json={
                "templates": [
                    {"id": "x", "name": "X", "dependencies": ["y"]},
                    {"id": "y", "name": "Y", "dependencies": ["x"]},
                ]
            },
            headers=_headers(tenant),
        )
        assert cycle.status_code == 400
        assert cycle.json()["error"]["code"] == "CIRCULAR_DEPENDENCY"

        events = await client.get(
            f"/v1/tenants/{tenant}/audit/events",
            params={"eventType": "schema.template.failed"},
            headers=_headers(tenant),
        )
        items = events.json()["data"]["items"]
        assert [item["resourceId"] for item in items] == ["stray"]
        assert events.json()["data"]["nextOffset"] is None


@pytest.mark.asyncio
async def test_table_and_column_deletion_rules() -> None:
    tenant = tenant_id()
    async with _client(_app()) as client:
        table = await _create_table(client, tenant, [{"name": "Code", "isLocked": True}, {"name": "Memo"}])
        ids = _column_ids(table)
        base = f"/v1/tenants/{tenant}/tables/{table['id']}"

        locked = await client.delete(f"{base}/columns/{ids['Code']}", headers=_headers(tenant))
        assert locked.status_code == 400
        memo = await client.delete(f"{base}/columns/{ids['Memo']}", headers=_headers(tenant))
        assert memo.json()["data"]["deleted"] is True

        added = await client.post(
            f"{base}/columns", json={"columns": [{"name": "Notes", "type": "text"}]}, headers=_headers(tenant)
        )
        assert added.status_code == 201
        assert added.json()["data"][0]["order"] == 1

        await client.put(
            f"/v1/tenants/{tenant}/permissions/tables/{table['id']}/users/m1",
            json={"canRead": True, "canDelete": True},
            headers=_headers(tenant),
        )
        member = _headers(tenant, user="m1", role="member")
        forced = await client.delete(base, params={"force": "true"}, headers=member)
        assert forced.status_code == 403
        dropped = await client.delete(base, headers=member)
        assert dropped.json()["data"] == {"id": table["id"], "deleted": True}
        assert (await client.get(base, headers=_headers(tenant))).status_code == 404


@pytest.mark.asyncio
async def test_plan_limits_are_enforced_over_http() -> None:
    tenant = tenant_id()
    async with _client(_app()) as client:
        table = await _create_table(client, tenant, [{"name": "Name"}])
        ids = _column_ids(table)
        limits = await client.put(
            f"/v1/tenants/{tenant}/plan-limits", json={"maxTables": 5, "maxRows": 1}, headers=_headers(tenant)
        )
        assert limits.json()["data"] == {
            "tables": {"current": 1, "limit": 5},
            "rows": {"current": 0, "limit": 1},
        }
        rows_url = f"/v1/tenants/{tenant}/tables/{table['id']}/rows"
        first = await client.post(rows_url, json={"values": {str(ids["Name"]): "a"}}, headers=_headers(tenant))
        assert first.status_code == 201
        second = await client.post(rows_url, json={"values": {str(ids["Name"]): "b"}}, headers=_headers(tenant))
        assert second.status_code == 402
        error = second.json()["error"]
        assert error["code"] == "PLAN_LIMIT_EXCEEDED"
        assert error["details"] == {"resource": "rows", "current": 1, "limit": 1}

        usage = await client.get(f"/v1/tenants/{tenant}/plan-limits", headers=_headers(tenant))
        assert usage.json()["data"]["rows"]["current"] == 1


@pytest.mark.asyncio
async def test_rate_limit_returns_429_with_retry_headers(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RL_READ_RPS", "0.01")
    monkeypatch.setenv("RL_READ_BURST", "2")
    get_settings.cache_clear()
    tenant = tenant_id()
    app = _app()
    app.state.rate_limiter = InMemoryRateLimiter()
    async with _client(app) as client:
        url = f"/v1/tenants/{tenant}/databases"
        assert (await client.get(url, headers=_headers(tenant))).status_code == 200
        assert (await client.get(url, headers=_headers(tenant))).status_code == 200
        throttled = await client.get(url, headers=_headers(tenant))
        assert throttled.status_code == 429
        assert throttled.json()["error"]["code"] == "RATE_LIMITED"
        assert throttled.headers["X-RateLimit-Scope"] == "user"
        assert throttled.headers["X-RateLimit-Route-Class"] == "read"
        assert int(throttled.headers["Retry-After"]) > 0

        # Another user of the same tenant has a separate bucket.
        other = await client.get(url, headers=_headers(tenant, user="admin-2"))
        assert other.status_code == 200

        events = await client.get(
            f"/v1/tenants/{tenant}/audit/events",
            params={"eventType": "security.rate_limited"},
            headers=_headers(tenant, user="admin-3"),
        )
        assert len(events.json()["data"]["items"]) == 1


class _BrokenLimiter(InMemoryRateLimiter):
    async def check(self, **kwargs):
        raise ConnectionError("limiter store down")


@pytest.mark.asyncio
async def test_rate_limit_outage_follows_fail_mode(monkeypatch) -> None:
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "true")
    monkeypatch.setenv("RL_FAIL_MODE", "open")
    get_settings.cache_clear()
    tenant = tenant_id()
    app = _app()
    app.state.rate_limiter = _BrokenLimiter()
    async with _client(app) as client:
        url = f"/v1/tenants/{tenant}/databases"
        degraded = await client.get(url, headers=_headers(tenant))
        assert degraded.status_code == 200
        assert degraded.headers["X-RateLimit-Status"] == "degraded"

        monkeypatch.setenv("RL_FAIL_MODE", "closed")
        get_settings.cache_clear()
        closed = await client.get(url, headers=_headers(tenant))
        assert closed.status_code == 503
        assert closed.json()["error"]["code"] == "RATE_LIMIT_UNAVAILABLE"
