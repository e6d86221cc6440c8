from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from tenantsync.apps.api.deps import OpsAuth, get_query_executor
from tenantsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantsync.apps.api.response import SuccessEnvelope, success_response
from tenantsync.persistence.tenants import validate_tenant_id
from tenantsync.services.warehouse.executor import QueryExecutor
from tenantsync.services.warehouse.query import QuerySpec

router = APIRouter(
    prefix="/warehouse", tags=["warehouse"], dependencies=[OpsAuth], responses=DEFAULT_ERROR_RESPONSES
)


class WarehouseQueryRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    spec: QuerySpec
    use_cache: bool = True


class WarehouseQueryResponse(BaseModel):
    rows: list[dict[str, Any]]
    columns: list[str]
    next_cursor: str | None
    total_rows: int | None
    bytes_processed: int | None
    cached: bool


@router.post("/query", response_model=SuccessEnvelope[WarehouseQueryResponse])
async def query_warehouse(
    request: Request,
    payload: WarehouseQueryRequest,
    executor: QueryExecutor = Depends(get_query_executor),
) -> dict:
    # Ad hoc reads are confined to allow-listed tables.
    validate_tenant_id(payload.tenant_id)
    page = await executor.execute(
        payload.spec,
        tenant_id=payload.tenant_id,
        use_cache=payload.use_cache,
        enforce_allowlist=True,
    )
    data = WarehouseQueryResponse(
        rows=page.rows,
        columns=page.columns,
        next_cursor=page.next_cursor,
        total_rows=page.total_rows,
        bytes_processed=page.bytes_processed,
        cached=page.cached,
    )
    return success_response(request=request, data=data)
