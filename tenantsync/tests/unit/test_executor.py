from __future__ import annotations

from datetime import date, datetime, timezone
import json

import pytest

from tenantsync.core.config import Settings
from tenantsync.core.errors import WarehouseError
from tenantsync.services.resilience import RetryPolicy
from tenantsync.services.telemetry import counters_snapshot
from tenantsync.services.warehouse.cache import InMemoryQueryCache
from tenantsync.services.warehouse.credentials import TokenProvider
from tenantsync.services.warehouse.executor import QueryExecutor, coerce_row
from tenantsync.services.warehouse.query import QuerySpec, encode_cursor
from tenantsync.tests.utils.warehouse import (
    API_BASE,
    PROJECT_ID,
    TOKEN_URI,
    WarehouseApi,
    bigquery_rows,
    make_service_account,
)


_FIELDS = [
    {"name": "CusId", "type": "INTEGER"},
    {"name": "Name", "type": "STRING"},
    {"name": "CreatedDate", "type": "TIMESTAMP"},
    {"name": "Active", "type": "BOOLEAN"},
]


def _result(rows: list[list], *, total_rows: int | None = None, page_token: str | None = None) -> dict:
    body = {
        "jobComplete": True,
        "jobReference": {"jobId": "job-1"},
        "schema": {"fields": _FIELDS},
        "rows": bigquery_rows(rows),
        "totalRows": str(total_rows if total_rows is not None else len(rows)),
        "totalBytesProcessed": "2048",
    }
    if page_token:
        body["pageToken"] = page_token
    return body


def _executor(api: WarehouseApi, client, *, cache=None, max_attempts: int = 3) -> QueryExecutor:
    settings = Settings(
        warehouse_token_uri=TOKEN_URI,
        warehouse_api_base=API_BASE,
        warehouse_project_id=PROJECT_ID,
    )
    tokens = TokenProvider(make_service_account(), client=client, settings=settings)
    return QueryExecutor(
        tokens,
        client=client,
        settings=settings,
        cache=cache,
        retry_policy=RetryPolicy(timeout_ms=5000, max_attempts=max_attempts, backoff_ms=1),
    )


_SPEC = QuerySpec(mode="raw", table="sales.customers", columns=("CusId", "Name", "CreatedDate", "Active"), page_size=2)


@pytest.mark.asyncio
async def test_full_page_returns_typed_rows_and_next_cursor() -> None:
    api = WarehouseApi()
    api.queue_query(body=_result([[1, "An", "1700000000.0", "true"], [2, "Binh", None, "false"]], total_rows=5))
    async with api.client() as client:
        page = await _executor(api, client).execute(_SPEC, tenant_id="t1")

    assert page.rows[0] == {
        "CusId": 1,
        "Name": "An",
        "CreatedDate": datetime.fromtimestamp(1700000000, tz=timezone.utc),
        "Active": True,
    }
    assert page.rows[1]["CreatedDate"] is None
    assert page.rows[1]["Active"] is False
    assert page.next_cursor == encode_cursor(2)
    assert page.end_cursor == encode_cursor(2)
    assert page.total_rows == 5
    assert page.bytes_processed == 2048
    assert page.columns == ["CusId", "Name", "CreatedDate", "Active"]

    request = api.query_requests[0]
    assert str(request.url) == f"{API_BASE}/projects/{PROJECT_ID}/queries"
    assert request.headers["Authorization"] == "Bearer tok-1"
    body = json.loads(request.content)
    assert body["useLegacySql"] is False
    assert body["parameterMode"] == "NAMED"
    assert body["query"].endswith("LIMIT 2 OFFSET 0")


@pytest.mark.asyncio
async def test_short_page_exhausts_source() -> None:
    api = WarehouseApi()
    api.queue_query(body=_result([[3, "Chi", None, None]]))
    async with api.client() as client:
        page = await _executor(api, client).execute(_SPEC.with_cursor(encode_cursor(2)), tenant_id="t1")
    assert page.next_cursor is None
    assert page.end_cursor == encode_cursor(3)
    assert json.loads(api.query_requests[0].content)["query"].endswith("LIMIT 2 OFFSET 2")


@pytest.mark.asyncio
async def test_follows_page_tokens_up_to_limit() -> None:
    api = WarehouseApi()
    api.queue_query(body=_result([[1, "An", None, None]], total_rows=2, page_token="tok-page-2"))
    api.queue_query(body={"rows": bigquery_rows([[2, "Binh", None, None]])})
    async with api.client() as client:
        page = await _executor(api, client).execute(_SPEC, tenant_id="t1")
    assert [row["CusId"] for row in page.rows] == [1, 2]
    follow_up = api.query_requests[1]
    assert follow_up.method == "GET"
    assert follow_up.url.path.endswith("/queries/job-1")
    assert follow_up.url.params["pageToken"] == "tok-page-2"
    assert follow_up.url.params["maxResults"] == "1"


@pytest.mark.asyncio
async def test_polls_incomplete_jobs() -> None:
    api = WarehouseApi()
    api.queue_query(body={"jobComplete": False, "jobReference": {"jobId": "job-1"}})
    api.queue_query(body=_result([[1, "An", None, None]]))
    async with api.client() as client:
        page = await _executor(api, client).execute(_SPEC, tenant_id="t1")
    assert len(page.rows) == 1
    assert api.query_requests[1].method == "GET"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "status_code,reason",
    [(503, "backendError"), (403, "rateLimitExceeded"), (500, None)],
)
async def test_transient_failures_are_retried(status_code: int, reason: str | None) -> None:
    api = WarehouseApi()
    error = {"message": "try later"}
    if reason:
        error["errors"] = [{"reason": reason}]
    api.queue_query(status_code, {"error": error})
    api.queue_query(body=_result([[1, "An", None, None]]))
    async with api.client() as client:
        page = await _executor(api, client).execute(_SPEC, tenant_id="t1")
    assert len(page.rows) == 1
    assert len(api.query_requests) == 2
    assert counters_snapshot()["external_retries_total"] == 1


@pytest.mark.asyncio
async def test_invalid_query_is_not_retried() -> None:
    api = WarehouseApi()
    api.queue_query(400, {"error": {"message": "Unrecognized name: Foo", "errors": [{"reason": "invalidQuery"}]}})
    async with api.client() as client:
        with pytest.raises(WarehouseError) as exc_info:
            await _executor(api, client).execute(_SPEC, tenant_id="t1")
    assert exc_info.value.status_code == 400
    assert exc_info.value.reason == "invalidQuery"
    assert exc_info.value.transient is False
    assert len(api.query_requests) == 1


@pytest.mark.asyncio
async def test_exhausted_retries_surface_transient_error() -> None:
    api = WarehouseApi()
    for _ in range(2):
        api.queue_query(503, {"error": {"message": "down"}})
    async with api.client() as client:
        with pytest.raises(WarehouseError) as exc_info:
            await _executor(api, client, max_attempts=2).execute(_SPEC, tenant_id="t1")
    assert exc_info.value.transient is True
    assert len(api.query_requests) == 2


@pytest.mark.asyncio
async def test_unauthorized_drops_cached_token() -> None:
    api = WarehouseApi()
    api.queue_query(401, {"error": {"message": "Invalid credentials"}})
    api.queue_query(body=_result([[1, "An", None, None]]))
    async with api.client() as client:
        executor = _executor(api, client)
        with pytest.raises(WarehouseError):
            await executor.execute(_SPEC, tenant_id="t1")
        await executor.execute(_SPEC, tenant_id="t1")
    assert api.query_requests[1].headers["Authorization"] == "Bearer tok-2"


@pytest.mark.asyncio
async def test_cache_serves_repeat_queries_per_tenant() -> None:
    api = WarehouseApi()
    api.queue_query(body=_result([[1, "An", None, None]]))
    api.queue_query(body=_result([[1, "An", None, None]]))
    api.queue_query(body=_result([[1, "An", None, None]]))
    async with api.client() as client:
        executor = _executor(api, client, cache=InMemoryQueryCache())
        first = await executor.execute(_SPEC, tenant_id="t1")
        second = await executor.execute(_SPEC, tenant_id="t1")
        other_tenant = await executor.execute(_SPEC, tenant_id="t2")
        bypass = await executor.execute(_SPEC, tenant_id="t1", use_cache=False)
    assert first.cached is False
    assert second.cached is True
    assert second.rows == first.rows
    assert other_tenant.cached is False
    assert bypass.cached is False
    assert len(api.query_requests) == 3
    assert counters_snapshot()["warehouse_cache_hits_total"] == 1


@pytest.mark.asyncio
async def test_iterate_follows_cursors_until_exhausted() -> None:
    api = WarehouseApi()
    api.queue_query(body=_result([[1, "An", None, None], [2, "Binh", None, None]]))
    api.queue_query(body=_result([[3, "Chi", None, None]]))
    async with api.client() as client:
        executor = _executor(api, client)
        pages = [page async for page in executor.iterate(_SPEC, tenant_id="t1")]
    assert [len(page.rows) for page in pages] == [2, 1]
    assert json.loads(api.query_requests[1].content)["query"].endswith("LIMIT 2 OFFSET 2")


def test_coerce_row_handles_nested_and_repeated_fields() -> None:
    fields = [
        {"name": "OrderDate", "type": "DATE"},
        {"name": "Total", "type": "NUMERIC"},
        {"name": "Tags", "type": "STRING", "mode": "REPEATED"},
        {
            "name": "Customer",
            "type": "RECORD",
            "fields": [{"name": "Id", "type": "INT64"}, {"name": "Name", "type": "STRING"}],
        },
    ]
    row = {
        "f": [
            {"v": "2024-03-01"},
            {"v": "125.5"},
            {"v": [{"v": "vip"}, {"v": "new"}]},
            {"v": {"f": [{"v": "9"}, {"v": "Dung"}]}},
        ]
    }
    assert coerce_row(row, fields) == {
        "OrderDate": date(2024, 3, 1),
        "Total": 125.5,
        "Tags": ["vip", "new"],
        "Customer": {"Id": 9, "Name": "Dung"},
    }
