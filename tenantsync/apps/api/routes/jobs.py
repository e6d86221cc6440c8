from __future__ import annotations

from datetime import date, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantsync.apps.api.deps import OpsAuth, get_session_factory
from tenantsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES, DISPATCH_ERROR_RESPONSES
from tenantsync.apps.api.response import SuccessEnvelope, get_request_id, success_response
from tenantsync.persistence.repos import checkpoints as checkpoints_repo
from tenantsync.persistence.tenants import tenant_session, validate_tenant_id
from tenantsync.services.audit import record_event
from tenantsync.services.jobs import (
    BackfillJobRequest,
    JobDispatch,
    PositionSyncJobRequest,
    dispatch_backfill,
    dispatch_position_sync,
)

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[OpsAuth], responses=DEFAULT_ERROR_RESPONSES)


class CheckpointResponse(BaseModel):
    tenant_id: str
    source: str
    model_type: str
    status: str
    cursor: str | None
    generation: int
    window_start: date | None
    window_end: date | None
    batches_committed: int
    rows_read: int
    rows_written: int
    rows_skipped: int
    last_committed_key: str | None
    cancel_requested: bool
    last_error: str | None
    lease_expires_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    updated_at: datetime | None


class CheckpointListResponse(BaseModel):
    items: list[CheckpointResponse]


class CancelRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    source: str = Field(min_length=1)
    model_type: str = Field(min_length=1)


class CancelResponse(BaseModel):
    cancel_requested: bool


@router.post(
    "/backfill",
    response_model=SuccessEnvelope[JobDispatch],
    status_code=status.HTTP_202_ACCEPTED,
    responses=DISPATCH_ERROR_RESPONSES,
)
async def create_backfill_job(
    request: Request,
    payload: BackfillJobRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    validate_tenant_id(payload.tenant_id)
    if payload.request_id is None:
        payload = payload.model_copy(update={"request_id": get_request_id(request)})
    dispatch = await dispatch_backfill(payload, session_factory=session_factory)
    return success_response(request=request, data=dispatch)


@router.post(
    "/position-sync",
    response_model=SuccessEnvelope[JobDispatch],
    status_code=status.HTTP_202_ACCEPTED,
    responses=DISPATCH_ERROR_RESPONSES,
)
async def create_position_sync_job(
    request: Request,
    payload: PositionSyncJobRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    validate_tenant_id(payload.tenant_id)
    if payload.request_id is None:
        payload = payload.model_copy(update={"request_id": get_request_id(request)})
    dispatch = await dispatch_position_sync(payload, session_factory=session_factory)
    return success_response(request=request, data=dispatch)


@router.get("/checkpoints", response_model=SuccessEnvelope[CheckpointListResponse])
async def list_checkpoints(
    request: Request,
    tenant_id: str = Query(min_length=1, max_length=64),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    validate_tenant_id(tenant_id)
    async with tenant_session(session_factory, tenant_id) as session:
        rows = await checkpoints_repo.list_checkpoints(session, tenant_id)
    items = [CheckpointResponse.model_validate(row, from_attributes=True) for row in rows]
    return success_response(request=request, data=CheckpointListResponse(items=items))


@router.post("/backfill/cancel", response_model=SuccessEnvelope[CancelResponse])
async def cancel_backfill(
    request: Request,
    payload: CancelRequest,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> dict:
    # Only a running checkpoint can be flagged; the run pauses before its next batch.
    validate_tenant_id(payload.tenant_id)
    async with tenant_session(session_factory, payload.tenant_id) as session:
        flagged = await checkpoints_repo.request_cancel(
            session, payload.tenant_id, payload.source, payload.model_type
        )
        if flagged:
            await record_event(
                session=session,
                tenant_id=payload.tenant_id,
                actor_type="operator",
                actor_id="ops_token",
                event_type="backfill.cancel.requested",
                outcome="success",
                resource_type="progress_checkpoint",
                resource_id=f"{payload.source}:{payload.model_type}",
                request_id=get_request_id(request),
            )
        await session.commit()
    if not flagged:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": "NOT_RUNNING", "message": "No running backfill for this scope"},
        )
    return success_response(request=request, data=CancelResponse(cancel_requested=True))
