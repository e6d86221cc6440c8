from __future__ import annotations

from datetime import date, datetime

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tenantsync.domain.models import ProgressCheckpoint
from tenantsync.persistence.guards import tenant_predicate
from tenantsync.persistence.upsert import insert_ignore


def _scope(tenant_id: str, source: str, model_type: str) -> object:
    return and_(
        tenant_predicate(ProgressCheckpoint, tenant_id),
        ProgressCheckpoint.source == source,
        ProgressCheckpoint.model_type == model_type,
    )


async def ensure_checkpoint(
    session: AsyncSession,
    tenant_id: str,
    source: str,
    model_type: str,
    *,
    window_start: date | None = None,
    window_end: date | None = None,
) -> None:
    # Create the idle row on first invocation; concurrent creators collapse on the unique scope.
    await insert_ignore(
        session,
        ProgressCheckpoint.__table__,
        {
            "tenant_id": tenant_id,
            "source": source,
            "model_type": model_type,
            "status": "idle",
            "rows_read": 0,
            "generation": 1,
            "window_start": window_start,
            "window_end": window_end,
            "cancel_requested": False,
            "batches_committed": 0,
            "rows_written": 0,
            "rows_skipped": 0,
        },
        index_elements=["tenant_id", "source", "model_type"],
    )


async def get_checkpoint(
    session: AsyncSession, tenant_id: str, source: str, model_type: str
) -> ProgressCheckpoint | None:
    # Always read fresh state; the row is the source of truth across retries.
    stmt = (
        select(ProgressCheckpoint)
        .where(_scope(tenant_id, source, model_type))
        .execution_options(populate_existing=True)
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def list_checkpoints(session: AsyncSession, tenant_id: str) -> list[ProgressCheckpoint]:
    stmt = (
        select(ProgressCheckpoint)
        .where(tenant_predicate(ProgressCheckpoint, tenant_id))
        .order_by(ProgressCheckpoint.source, ProgressCheckpoint.model_type)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def claim_checkpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    source: str,
    model_type: str,
    run_id: str,
    now: datetime,
    lease_expires_at: datetime,
) -> bool:
    # Compare-and-set into running; an unexpired lease held by another run wins.
    stmt = (
        update(ProgressCheckpoint)
        .where(
            _scope(tenant_id, source, model_type),
            or_(
                ProgressCheckpoint.status != "running",
                ProgressCheckpoint.lease_expires_at.is_(None),
                ProgressCheckpoint.lease_expires_at < now,
            ),
        )
        .values(
            status="running",
            run_id=run_id,
            lease_expires_at=lease_expires_at,
            cancel_requested=False,
            last_error=None,
            started_at=now,
            completed_at=None,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def restart_checkpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    source: str,
    model_type: str,
    run_id: str,
    window_start: date | None = None,
    window_end: date | None = None,
) -> bool:
    # Rewind to start-of-source and open a new ledger generation over the given window.
    stmt = (
        update(ProgressCheckpoint)
        .where(_scope(tenant_id, source, model_type), ProgressCheckpoint.run_id == run_id)
        .values(
            cursor=None,
            rows_read=0,
            last_committed_key=None,
            generation=ProgressCheckpoint.generation + 1,
            window_start=window_start,
            window_end=window_end,
            batches_committed=0,
            rows_written=0,
            rows_skipped=0,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def advance_checkpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    source: str,
    model_type: str,
    run_id: str,
    cursor: str | None,
    rows_read: int,
    last_committed_key: str | None,
    rows_written: int,
    rows_skipped: int,
    lease_expires_at: datetime,
) -> bool:
    # Fenced on run_id: a run whose lease was taken over cannot move the cursor.
    values: dict[str, object] = {
        "cursor": cursor,
        "rows_read": ProgressCheckpoint.rows_read + rows_read,
        "batches_committed": ProgressCheckpoint.batches_committed + 1,
        "rows_written": ProgressCheckpoint.rows_written + rows_written,
        "rows_skipped": ProgressCheckpoint.rows_skipped + rows_skipped,
        "lease_expires_at": lease_expires_at,
    }
    if last_committed_key is not None:
        values["last_committed_key"] = last_committed_key
    stmt = (
        update(ProgressCheckpoint)
        .where(
            _scope(tenant_id, source, model_type),
            ProgressCheckpoint.run_id == run_id,
            ProgressCheckpoint.status == "running",
        )
        .values(**values)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def finish_checkpoint(
    session: AsyncSession,
    *,
    tenant_id: str,
    source: str,
    model_type: str,
    run_id: str,
    status: str,
    error: str | None,
    completed_at: datetime | None,
) -> bool:
    # Release the lease and record the terminal status of this run.
    stmt = (
        update(ProgressCheckpoint)
        .where(_scope(tenant_id, source, model_type), ProgressCheckpoint.run_id == run_id)
        .values(
            status=status,
            last_error=error,
            lease_expires_at=None,
            cancel_requested=False,
            completed_at=completed_at,
        )
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def request_cancel(session: AsyncSession, tenant_id: str, source: str, model_type: str) -> bool:
    # Flag a running job; the orchestrator pauses before its next batch.
    stmt = (
        update(ProgressCheckpoint)
        .where(_scope(tenant_id, source, model_type), ProgressCheckpoint.status == "running")
        .values(cancel_requested=True)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1
