from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
import logging
import time
from typing import Any, AsyncIterator

import httpx

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.errors import ProviderConfigError, WarehouseError
from tenantsync.services.resilience import RetryPolicy, default_retry_policy, retry_async
from tenantsync.services.telemetry import increment_counter, record_external_call
from tenantsync.services.warehouse.cache import QueryCache, get_query_cache
from tenantsync.services.warehouse.credentials import TokenProvider, load_service_account
from tenantsync.services.warehouse.query import (
    CompiledQuery,
    QuerySpec,
    compile_query,
    encode_cursor,
    fingerprint,
)


logger = logging.getLogger(__name__)

_TRANSIENT_STATUS = {408, 429, 500, 502, 503, 504}
_TRANSIENT_REASONS = {
    "rateLimitExceeded",
    "backendError",
    "internalError",
    "jobBackendError",
    "jobInternalError",
    "quotaExceeded",
}
# Bound job polling so a stuck job surfaces as a timeout instead of spinning.
_MAX_POLLS = 60


@dataclass
class QueryPage:
    rows: list[dict[str, Any]]
    # Cursor for the next page, absent when the source is exhausted.
    next_cursor: str | None
    # Resume point after this page, present for paginated modes even on the last page.
    end_cursor: str | None = None
    total_rows: int | None = None
    bytes_processed: int | None = None
    cached: bool = False
    columns: list[str] = field(default_factory=list)


def is_transient_warehouse_error(exc: Exception) -> bool:
    # Timeouts, transport failures and rate limits retry; malformed queries and auth do not.
    if isinstance(exc, WarehouseError):
        return exc.transient
    return isinstance(exc, (TimeoutError, httpx.TransportError))


def _error_from_response(response: httpx.Response) -> WarehouseError:
    reason = None
    message = f"Warehouse request failed with status {response.status_code}"
    try:
        body = response.json()
    except ValueError:
        body = None
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict):
        message = str(error.get("message") or message)
        details = error.get("errors") or []
        if details and isinstance(details[0], dict):
            reason = details[0].get("reason")
    transient = response.status_code in _TRANSIENT_STATUS or reason in _TRANSIENT_REASONS
    return WarehouseError(message, status_code=response.status_code, reason=reason, transient=transient)


def _coerce_scalar(value: Any, field_type: str) -> Any:
    if field_type in {"INTEGER", "INT64"}:
        return int(value)
    if field_type in {"FLOAT", "FLOAT64", "NUMERIC", "BIGNUMERIC"}:
        return float(value)
    if field_type in {"BOOLEAN", "BOOL"}:
        return str(value).lower() == "true"
    if field_type == "TIMESTAMP":
        # Timestamps arrive as epoch seconds in string form.
        return datetime.fromtimestamp(float(value), tz=timezone.utc)
    if field_type == "DATE":
        return date.fromisoformat(value)
    if field_type == "DATETIME":
        return datetime.fromisoformat(value)
    return value


def coerce_value(value: Any, schema_field: dict[str, Any]) -> Any:
    if value is None:
        return None
    field_type = str(schema_field.get("type", "STRING")).upper()
    if schema_field.get("mode") == "REPEATED":
        element = {**schema_field, "mode": "NULLABLE"}
        return [coerce_value(item.get("v"), element) for item in value]
    if field_type in {"RECORD", "STRUCT"}:
        return coerce_row(value, schema_field.get("fields") or [])
    return _coerce_scalar(value, field_type)


def coerce_row(row: dict[str, Any], fields: list[dict[str, Any]]) -> dict[str, Any]:
    cells = row.get("f") or []
    return {
        schema_field["name"]: coerce_value(cell.get("v"), schema_field)
        for schema_field, cell in zip(fields, cells)
    }


class QueryExecutor:
    """Runs QuerySpecs against the warehouse REST API.

    Raw and filtered specs page with LIMIT/OFFSET and return an opaque cursor;
    aggregated and custom specs return one bounded result set. Transient failures are
    retried per page with backoff; everything else raises immediately.
    """

    def __init__(
        self,
        token_provider: TokenProvider,
        *,
        project_id: str | None = None,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        cache: QueryCache | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._tokens = token_provider
        self._project_id = (
            project_id or self._settings.warehouse_project_id or token_provider.account.project_id
        )
        if not self._project_id:
            raise ProviderConfigError("WAREHOUSE_PROJECT_ID is required")
        self._client = client
        self._owns_client = client is None
        self._cache = cache
        self._retry_policy = retry_policy

    @property
    def project_id(self) -> str:
        return self._project_id

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per executor for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
        await self._tokens.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        token = await self._tokens.get_token()
        url = f"{self._settings.warehouse_api_base}/projects/{self._project_id}{path}"
        headers = {"Authorization": f"{token.token_type} {token.access_token}"}
        start = time.monotonic()
        try:
            response = await self._get_client().request(method, url, headers=headers, **kwargs)
        except httpx.TransportError:
            record_external_call(
                integration="warehouse.query",
                latency_ms=(time.monotonic() - start) * 1000.0,
                success=False,
            )
            raise
        latency_ms = (time.monotonic() - start) * 1000.0
        if response.status_code >= 300:
            record_external_call(integration="warehouse.query", latency_ms=latency_ms, success=False)
            if response.status_code == 401:
                # Force a fresh token on the next invocation.
                self._tokens.invalidate()
            raise _error_from_response(response)
        record_external_call(integration="warehouse.query", latency_ms=latency_ms, success=True)
        try:
            return response.json()
        except ValueError as exc:
            raise WarehouseError("Warehouse returned a non-JSON body", transient=True) from exc

    def _results_params(self, max_results: int, page_token: str | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {
            "maxResults": max_results,
            "timeoutMs": self._settings.warehouse_query_timeout_ms,
        }
        if self._settings.warehouse_location:
            params["location"] = self._settings.warehouse_location
        if page_token:
            params["pageToken"] = page_token
        return params

    async def _run(self, compiled: CompiledQuery) -> dict[str, Any]:
        # One attempt: start the query, poll to completion, follow page tokens up to the limit.
        body: dict[str, Any] = {
            "query": compiled.sql,
            "useLegacySql": False,
            "parameterMode": "NAMED",
            "queryParameters": compiled.parameters,
            "maxResults": compiled.limit,
            "timeoutMs": self._settings.warehouse_query_timeout_ms,
        }
        if self._settings.warehouse_location:
            body["location"] = self._settings.warehouse_location
        response = await self._request("POST", "/queries", json=body)
        job_id = (response.get("jobReference") or {}).get("jobId")
        polls = 0
        while not response.get("jobComplete", False):
            if not job_id or polls >= _MAX_POLLS:
                raise WarehouseError("Warehouse job did not complete", reason="timeout", transient=True)
            polls += 1
            await asyncio.sleep(min(0.5 * polls, 5.0))
            response = await self._request(
                "GET", f"/queries/{job_id}", params=self._results_params(compiled.limit)
            )
        schema = (response.get("schema") or {}).get("fields") or []
        rows = list(response.get("rows") or [])
        page_token = response.get("pageToken")
        while page_token and job_id and len(rows) < compiled.limit:
            page = await self._request(
                "GET",
                f"/queries/{job_id}",
                params=self._results_params(compiled.limit - len(rows), page_token),
            )
            rows.extend(page.get("rows") or [])
            page_token = page.get("pageToken")
        return {
            "schema": schema,
            "rows": rows[: compiled.limit],
            "total_rows": int(response["totalRows"]) if response.get("totalRows") is not None else None,
            "bytes_processed": (
                int(response["totalBytesProcessed"])
                if response.get("totalBytesProcessed") is not None
                else None
            ),
        }

    async def execute(
        self,
        spec: QuerySpec,
        *,
        tenant_id: str,
        use_cache: bool = True,
        enforce_allowlist: bool = False,
    ) -> QueryPage:
        compiled = compile_query(
            spec,
            project_id=self._project_id,
            settings=self._settings,
            enforce_allowlist=enforce_allowlist,
        )
        cache = self._cache if use_cache and spec.cacheable else None
        cache_key = fingerprint(tenant_id, spec) if cache is not None else None
        payload = await cache.get(cache_key) if cache is not None else None
        cached = payload is not None
        if cached:
            increment_counter("warehouse_cache_hits_total")
        else:
            try:
                payload = await retry_async(
                    lambda: self._run(compiled),
                    policy=self._retry_policy or default_retry_policy(),
                    retryable=is_transient_warehouse_error,
                    operation="warehouse.query",
                )
            except TimeoutError as exc:
                raise WarehouseError("Warehouse query timed out", reason="timeout", transient=True) from exc
            except httpx.TransportError as exc:
                raise WarehouseError("Warehouse unreachable", reason="transport", transient=True) from exc
            if cache is not None:
                await cache.set(cache_key, payload, self._settings.warehouse_cache_ttl_s)

        schema = payload["schema"]
        rows = [coerce_row(row, schema) for row in payload["rows"]]
        next_cursor = None
        end_cursor = None
        if compiled.paginated:
            end_offset = compiled.offset + len(rows)
            end_cursor = encode_cursor(end_offset)
            # A short page means the source is exhausted.
            if len(rows) >= compiled.limit:
                next_cursor = end_cursor
        logger.debug(
            "warehouse_query_executed tenant=%s mode=%s rows=%s cached=%s",
            tenant_id,
            spec.mode,
            len(rows),
            cached,
        )
        return QueryPage(
            rows=rows,
            next_cursor=next_cursor,
            end_cursor=end_cursor,
            total_rows=payload.get("total_rows"),
            bytes_processed=payload.get("bytes_processed"),
            cached=cached,
            columns=[schema_field["name"] for schema_field in schema],
        )

    async def iterate(
        self, spec: QuerySpec, *, tenant_id: str, max_pages: int | None = None, use_cache: bool = True
    ) -> AsyncIterator[QueryPage]:
        # Follow cursors until the source is exhausted or the page limit is reached.
        current = spec
        pages = 0
        while True:
            page = await self.execute(current, tenant_id=tenant_id, use_cache=use_cache)
            pages += 1
            yield page
            if page.next_cursor is None or (max_pages is not None and pages >= max_pages):
                return
            current = current.with_cursor(page.next_cursor)


def build_executor(settings: Settings | None = None) -> QueryExecutor:
    # Wire the executor from settings for jobs, routes and scripts.
    settings = settings or get_settings()
    account = load_service_account(settings)
    return QueryExecutor(
        TokenProvider(account, settings=settings),
        settings=settings,
        cache=get_query_cache(settings),
    )
