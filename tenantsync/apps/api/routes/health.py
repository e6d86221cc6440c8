from __future__ import annotations

from datetime import datetime
import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantsync.apps.api.deps import get_db
from tenantsync.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from tenantsync.apps.api.response import SuccessEnvelope, success_response
from tenantsync.services.jobs import get_worker_heartbeat

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"], responses=DEFAULT_ERROR_RESPONSES)


class HealthResponse(BaseModel):
    status: str
    database: str
    worker_heartbeat_at: datetime | None = None


@router.get("/health", response_model=SuccessEnvelope[HealthResponse])
async def health(request: Request, db: AsyncSession = Depends(get_db)) -> dict:
    # Report degraded instead of failing so load balancers can tell the two apart.
    database = "ok"
    try:
        await db.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        logger.warning("health_database_unavailable error=%s", type(exc).__name__)
        database = "unavailable"
    payload = HealthResponse(
        status="ok" if database == "ok" else "degraded",
        database=database,
        worker_heartbeat_at=await get_worker_heartbeat(),
    )
    return success_response(request=request, data=payload)
