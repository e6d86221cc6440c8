from __future__ import annotations

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantsync.apps.api.deps import OpsAuth, get_session_factory
from tenantsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantsync.apps.api.response import SuccessEnvelope, success_response
from tenantsync.persistence.repos import audit as audit_repo
from tenantsync.persistence.tenants import tenant_session, validate_tenant_id
from tenantsync.services.jobs import get_queue_depth, get_worker_heartbeat
from tenantsync.services.telemetry import counters_snapshot, external_latency_by_integration, job_stats


router = APIRouter(prefix="/ops", tags=["ops"], dependencies=[OpsAuth], responses=DEFAULT_ERROR_RESPONSES)


class MetricsResponse(BaseModel):
    counters: dict[str, int]
    jobs: dict[str, dict[str, int]]
    external_latency_ms: dict[str, dict[str, float | None]]
    queue_depth: int | None
    worker_heartbeat_at: datetime | None


class AuditEventResponse(BaseModel):
    id: int
    occurred_at: datetime
    event_type: str
    outcome: str
    actor_type: str
    actor_id: str | None
    resource_type: str | None
    resource_id: str | None
    request_id: str | None
    metadata_json: dict[str, Any] | None
    old_value_json: dict[str, Any] | None
    new_value_json: dict[str, Any] | None


class AuditListResponse(BaseModel):
    items: list[AuditEventResponse]


@router.get("/metrics", response_model=SuccessEnvelope[MetricsResponse])
async def ops_metrics(request: Request, window_s: int = Query(default=3600, ge=60, le=86400)) -> dict:
    # In-process counters only; they reset with the process.
    payload = MetricsResponse(
        counters=counters_snapshot(),
        jobs=job_stats(window_s),
        external_latency_ms=external_latency_by_integration(window_s),
        queue_depth=await get_queue_depth(),
        worker_heartbeat_at=await get_worker_heartbeat(),
    )
    return success_response(request=request, data=payload)


@router.get("/audit", response_model=SuccessEnvelope[AuditListResponse])
async def ops_audit(
    request: Request,
    tenant_id: str = Query(min_length=1, max_length=64),
    event_type: str | None = Query(default=None),
    limit: int = Query(default=100, ge=1, le=1000),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    validate_tenant_id(tenant_id)
    async with tenant_session(session_factory, tenant_id) as session:
        events = await audit_repo.list_events(
            session, tenant_id=tenant_id, event_type=event_type, limit=limit
        )
    items = [AuditEventResponse.model_validate(event, from_attributes=True) for event in events]
    return success_response(request=request, data=AuditListResponse(items=items))
