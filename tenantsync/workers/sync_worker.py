from __future__ import annotations

import asyncio
import logging
from uuid import uuid4

from arq import cron
from arq.connections import RedisSettings

from tenantsync.core.config import get_settings
from tenantsync.core.logging import configure_logging
from tenantsync.services.jobs import (
    BackfillJobRequest,
    PositionSyncJobRequest,
    retry_after,
    run_backfill,
    run_position_sync,
    set_worker_heartbeat,
    should_retry,
)


logger = logging.getLogger(__name__)


async def run_backfill_job(ctx, payload: dict) -> list[dict]:
    # Parse and validate payloads in the worker to enforce schema contracts.
    request = BackfillJobRequest.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    results = await run_backfill(request)
    if should_retry([result.error for result in results], attempt=attempt, max_tries=settings.job_max_tries):
        logger.warning(
            "backfill_job_retry tenant=%s source=%s attempt=%s", request.tenant_id, request.source, attempt
        )
        raise retry_after(attempt)
    return [result.model_dump(mode="json") for result in results]


async def run_position_sync_job(ctx, payload: dict) -> dict:
    request = PositionSyncJobRequest.model_validate(payload)
    settings = get_settings()
    attempt = ctx.get("job_try", 1)
    result = await run_position_sync(request)
    if should_retry([result.error], attempt=attempt, max_tries=settings.job_max_tries):
        logger.warning("position_sync_job_retry tenant=%s attempt=%s", request.tenant_id, attempt)
        raise retry_after(attempt)
    return result.model_dump(mode="json")


async def scheduled_position_sync(ctx) -> int:
    # Fan out one queued job per configured tenant so tenants fail independently.
    settings = get_settings()
    redis = ctx["redis"]
    enqueued = 0
    for tenant_id in settings.scheduled_tenants():
        request = PositionSyncJobRequest(tenant_id=tenant_id, request_id=f"cron-{uuid4().hex}")
        job = await redis.enqueue_job(
            "run_position_sync_job",
            request.model_dump(),
            _job_id=f"position_sync:{tenant_id}:{request.request_id}",
            _queue_name=settings.job_queue_name,
        )
        if job is not None:
            enqueued += 1
    logger.info("position_sync_cron_enqueued tenants=%s", enqueued)
    return enqueued


async def _heartbeat_loop() -> None:
    # Emit heartbeats on a fixed interval for ops health reporting.
    settings = get_settings()
    while True:
        await set_worker_heartbeat()
        await asyncio.sleep(settings.worker_heartbeat_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    ctx["heartbeat_task"] = asyncio.create_task(_heartbeat_loop())


async def _shutdown(ctx) -> None:
    # Cancel the heartbeat task to avoid dangling coroutines on exit.
    task = ctx.get("heartbeat_task")
    if task:
        task.cancel()


def _cron_minutes(interval: int) -> set[int]:
    interval = max(1, min(60, interval))
    return set(range(0, 60, interval))


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.job_queue_name
    max_tries = settings.job_max_tries
    job_timeout = settings.job_timeout_s
    functions = [run_backfill_job, run_position_sync_job]
    cron_jobs = [
        cron(
            scheduled_position_sync,
            minute=_cron_minutes(settings.position_sync_cron_minutes),
            run_at_startup=False,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
