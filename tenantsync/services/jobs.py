from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime, timezone
from typing import Literal

from arq import Retry, create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantsync.core.config import get_settings
from tenantsync.core.errors import AlreadyRunningError
from tenantsync.domain.records import MODEL_TYPES
from tenantsync.persistence.db import SessionLocal
from tenantsync.persistence.repos import checkpoints as checkpoints_repo
from tenantsync.persistence.tenants import tenant_session
from tenantsync.services.backfill.orchestrator import BackfillOrchestrator, BackfillResult, PageSource
from tenantsync.services.positions.sync import POSITION_MODEL, POSITION_SOURCE, PositionSync, SyncResult
from tenantsync.services.warehouse.executor import build_executor


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Keep heartbeat key stable for ops endpoint lookups.
WORKER_HEARTBEAT_KEY = "tenantsync:worker:heartbeat"

# Failures worth another worker attempt; everything else is deterministic.
_RETRYABLE_ERRORS = ("WarehouseError", "StoreWriteError", "AuthError")


def _queue_key(queue_name: str) -> str:
    # Use arq's queue naming convention for depth checks.
    return f"arq:queue:{queue_name}"


class BackfillJobRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    source: str = Field(min_length=1)
    model_types: list[Literal["customers", "products", "orders", "order_items"]] = Field(
        default_factory=lambda: list(MODEL_TYPES), min_length=1
    )
    max_batches: int | None = Field(default=None, ge=1)
    batch_size: int | None = Field(default=None, ge=1)
    force_restart: bool = False
    # Inclusive window on the source's created or order date; sources without one ignore it.
    date_from: date | None = None
    date_to: date | None = None
    request_id: str | None = None

    @model_validator(mode="after")
    def _check_window(self) -> "BackfillJobRequest":
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class PositionSyncJobRequest(BaseModel):
    tenant_id: str = Field(min_length=1, max_length=64)
    request_id: str | None = None


class JobDispatch(BaseModel):
    job_id: str
    mode: Literal["inline", "queued"]
    backfill: list[BackfillResult] | None = None
    position_sync: SyncResult | None = None


def _utc_now() -> datetime:
    # Use UTC timestamps for consistency across API and worker processes.
    return datetime.now(timezone.utc)


def _inline_mode() -> bool:
    return get_settings().job_execution_mode.lower() == "inline"


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.job_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def get_queue_depth() -> int | None:
    # Return None to signal Redis unavailability to ops endpoints.
    settings = get_settings()
    if _inline_mode():
        return 0
    try:
        redis = await get_redis_pool()
        depth = await redis.zcard(_queue_key(settings.job_queue_name))
        return int(depth)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None


async def set_worker_heartbeat(*, timestamp: datetime | None = None) -> None:
    # Persist a heartbeat for the health endpoint.
    if _inline_mode():
        return
    redis = await get_redis_pool()
    heartbeat_time = timestamp or _utc_now()
    await redis.set(WORKER_HEARTBEAT_KEY, heartbeat_time.isoformat())


async def get_worker_heartbeat() -> datetime | None:
    # Return None when the heartbeat is missing or Redis is unavailable.
    if _inline_mode():
        return None
    try:
        redis = await get_redis_pool()
        raw_value = await redis.get(WORKER_HEARTBEAT_KEY)
    except Exception:  # noqa: BLE001 - ops endpoints handle degraded Redis
        return None
    if not raw_value:
        return None
    value = raw_value.decode("utf-8") if isinstance(raw_value, (bytes, bytearray)) else str(raw_value)
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _as_aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def ensure_not_running(
    tenant_id: str,
    source: str,
    model_type: str,
    *,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> None:
    # Fail fast before enqueueing; the orchestrator's lock claim remains the real guard.
    async with tenant_session(session_factory or SessionLocal, tenant_id) as session:
        checkpoint = await checkpoints_repo.get_checkpoint(session, tenant_id, source, model_type)
    if checkpoint is None or checkpoint.status != "running":
        return
    lease = _as_aware(checkpoint.lease_expires_at)
    if lease is not None and lease > _utc_now():
        raise AlreadyRunningError(tenant_id, source, model_type)


async def run_backfill(
    request: BackfillJobRequest,
    *,
    executor: PageSource | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> list[BackfillResult]:
    # Shared by the worker, inline dispatch and the CLI script.
    owned = executor is None
    executor = executor or build_executor()
    try:
        orchestrator = BackfillOrchestrator(executor, session_factory=session_factory)
        return await orchestrator.run_many(
            request.tenant_id,
            request.source,
            list(request.model_types),
            max_batches=request.max_batches,
            batch_size=request.batch_size,
            force_restart=request.force_restart,
            date_from=request.date_from,
            date_to=request.date_to,
            request_id=request.request_id,
        )
    finally:
        if owned:
            await executor.aclose()


async def run_position_sync(
    request: PositionSyncJobRequest,
    *,
    executor: PageSource | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> SyncResult:
    owned = executor is None
    executor = executor or build_executor()
    try:
        job = PositionSync(executor, session_factory=session_factory)
        return await job.sync(request.tenant_id, request_id=request.request_id)
    finally:
        if owned:
            await executor.aclose()


async def dispatch_backfill(
    request: BackfillJobRequest,
    *,
    executor: PageSource | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> JobDispatch:
    job_id = f"backfill:{request.tenant_id}:{request.source}:{request.request_id or _utc_now().isoformat()}"
    if _inline_mode():
        results = await run_backfill(request, executor=executor, session_factory=session_factory)
        return JobDispatch(job_id=job_id, mode="inline", backfill=results)

    for model_type in request.model_types:
        await ensure_not_running(
            request.tenant_id, request.source, model_type, session_factory=session_factory
        )
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "run_backfill_job",
        request.model_dump(),
        _job_id=job_id,
        _queue_name=settings.job_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return JobDispatch(job_id=job.job_id if job else job_id, mode="queued")


async def dispatch_position_sync(
    request: PositionSyncJobRequest,
    *,
    executor: PageSource | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> JobDispatch:
    job_id = f"position_sync:{request.tenant_id}:{request.request_id or _utc_now().isoformat()}"
    if _inline_mode():
        result = await run_position_sync(request, executor=executor, session_factory=session_factory)
        return JobDispatch(job_id=job_id, mode="inline", position_sync=result)

    await ensure_not_running(
        request.tenant_id, POSITION_SOURCE, POSITION_MODEL, session_factory=session_factory
    )
    settings = get_settings()
    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        "run_position_sync_job",
        request.model_dump(),
        _job_id=job_id,
        _queue_name=settings.job_queue_name,
    )
    return JobDispatch(job_id=job.job_id if job else job_id, mode="queued")


def should_retry(errors: list[str | None], *, attempt: int, max_tries: int) -> bool:
    # Retry only transient failures; the checkpoint makes a retry resume, not repeat.
    if attempt >= max_tries:
        return False
    return any(error and error.startswith(_RETRYABLE_ERRORS) for error in errors)


def retry_after(attempt: int) -> Retry:
    return Retry(defer=min(60, 5 * attempt))
