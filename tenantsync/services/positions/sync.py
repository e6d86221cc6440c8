from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta, timezone
import logging
import time
from typing import Literal
from uuid import uuid4

from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.errors import MappingError, TenantSyncError
from tenantsync.persistence.db import SessionLocal
from tenantsync.persistence.repos import checkpoints as checkpoints_repo
from tenantsync.persistence.repos import positions as positions_repo
from tenantsync.persistence.tenants import tenant_session, validate_tenant_id
from tenantsync.services.audit import record_event
from tenantsync.services.backfill.orchestrator import PageSource
from tenantsync.services.mapping.resolver import MappingResolver
from tenantsync.services.mapping.transforms import BRANCH_STORE, SKU_FAMILY
from tenantsync.services.telemetry import increment_counter, record_job
from tenantsync.services.warehouse.query import QuerySpec, register_template, validate_table


logger = logging.getLogger(__name__)

# Lock scope shared with backfill checkpoints so the same CAS guards both jobs.
POSITION_SOURCE = "warehouse"
POSITION_MODEL = "positions"
SNAPSHOT_TEMPLATE = "position_snapshot"

_SNAPSHOT_SQL = """
WITH ranked AS (
  SELECT
    CAST(BranchId AS STRING) AS branch_id,
    CAST(ProductCode AS STRING) AS sku,
    OnHand AS quantity,
    ModifiedDate AS observed_at,
    ROW_NUMBER() OVER (PARTITION BY BranchId, ProductCode ORDER BY ModifiedDate DESC) AS rn
  FROM `{{project}}.{table}`
)
SELECT branch_id, sku, quantity, observed_at FROM ranked WHERE rn = 1
"""

_QUANTITY_EPSILON = 1e-9


class SnapshotRow(BaseModel):
    branch_id: str
    sku: str
    quantity: float
    observed_at: datetime | None = None


class SyncResult(BaseModel):
    tenant_id: str
    status: Literal["completed", "failed", "already_running"]
    run_id: str | None = None
    rows_read: int = 0
    updated: int = 0
    unchanged: int = 0
    # Same quantity, newer snapshot time: observed_at is rewritten without an audit event.
    refreshed: int = 0
    skipped: int = 0
    errors: int = 0
    skipped_by_reason: dict[str, int] = Field(default_factory=dict)
    error: str | None = None


def ensure_snapshot_template(settings: Settings | None = None) -> None:
    # The snapshot table is configurable, so the template is registered on first use.
    settings = settings or get_settings()
    table = validate_table(settings.position_snapshot_table)
    register_template(SNAPSHOT_TEMPLATE, _SNAPSHOT_SQL.format(table=table))


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _as_aware(value: datetime | None) -> datetime | None:
    # SQLite and some warehouse timestamps come back naive; treat them as UTC.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _snapshot(position_quantity: float, observed_at: datetime | None) -> dict:
    return {
        "quantity": position_quantity,
        "observed_at": observed_at.isoformat() if observed_at else None,
    }


class PositionSync:
    """Full current-state pull of on-hand positions for one tenant.

    Not resumable: every run reads the latest snapshot per (branch, sku) in one
    bounded query, folds SKUs into their family per store, and upserts only the
    positions whose quantity changed.
    """

    def __init__(
        self,
        executor: PageSource,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._executor = executor
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()

    async def sync(self, tenant_id: str, *, request_id: str | None = None) -> SyncResult:
        validate_tenant_id(tenant_id)
        result = SyncResult(tenant_id=tenant_id, status="failed")
        run_id = uuid4().hex
        started = time.monotonic()
        try:
            claimed = await self._claim(tenant_id, run_id)
        except SQLAlchemyError as exc:
            logger.error("position_sync_claim_failed tenant=%s", tenant_id, exc_info=exc)
            result.error = f"StoreWriteError: lock claim failed ({type(exc).__name__})"
            return result
        if not claimed:
            logger.info("position_sync_already_running tenant=%s", tenant_id)
            result.status = "already_running"
            return result

        result.run_id = run_id
        try:
            await self._run(tenant_id, result, request_id=request_id)
            result.status = "completed" if result.errors == 0 else "failed"
        except TenantSyncError as exc:
            result.status = "failed"
            result.error = f"{type(exc).__name__}: {exc}"
            logger.warning("position_sync_failed tenant=%s error=%s", tenant_id, result.error)
        except Exception as exc:  # noqa: BLE001 - every invocation returns a summary
            result.status = "failed"
            result.error = f"{type(exc).__name__}: {exc}"
            logger.exception("position_sync_crashed tenant=%s", tenant_id)

        await self._finish(tenant_id, run_id, result, request_id=request_id)
        record_job(
            job="position_sync",
            status=result.status,
            duration_ms=(time.monotonic() - started) * 1000.0,
            rows_written=result.updated,
        )
        return result

    async def _claim(self, tenant_id: str, run_id: str) -> bool:
        async with tenant_session(self._session_factory, tenant_id) as session:
            await checkpoints_repo.ensure_checkpoint(session, tenant_id, POSITION_SOURCE, POSITION_MODEL)
            claimed = await checkpoints_repo.claim_checkpoint(
                session,
                tenant_id=tenant_id,
                source=POSITION_SOURCE,
                model_type=POSITION_MODEL,
                run_id=run_id,
                now=_utc_now(),
                lease_expires_at=_utc_now() + timedelta(seconds=self._settings.backfill_lease_ttl_s),
            )
            await session.commit()
            return claimed

    async def _run(self, tenant_id: str, result: SyncResult, *, request_id: str | None) -> None:
        ensure_snapshot_template(self._settings)
        page = await self._executor.execute(
            QuerySpec(mode="custom", template=SNAPSHOT_TEMPLATE),
            tenant_id=tenant_id,
            use_cache=False,
        )
        result.rows_read = len(page.rows)
        if page.total_rows is not None and page.total_rows > len(page.rows):
            logger.warning(
                "position_snapshot_truncated tenant=%s rows=%s total_rows=%s",
                tenant_id,
                len(page.rows),
                page.total_rows,
            )
        skipped: Counter = Counter()
        totals = await self._resolve_positions(tenant_id, page.rows, skipped)
        result.skipped = sum(skipped.values())
        result.skipped_by_reason = dict(skipped)
        await self._apply(tenant_id, totals, result, request_id=request_id)

    async def _resolve_positions(
        self, tenant_id: str, rows: list[dict], skipped: Counter
    ) -> dict[tuple[str, str], tuple[float, datetime | None]]:
        # Sum quantities per (store, family); observed_at is the latest snapshot time.
        totals: dict[tuple[str, str], tuple[float, datetime | None]] = {}
        chunk_size = max(1, self._settings.position_sync_chunk_size)
        for start in range(0, len(rows), chunk_size):
            chunk = rows[start : start + chunk_size]
            async with tenant_session(self._session_factory, tenant_id) as session:
                resolver = MappingResolver(session, tenant_id)
                for raw in chunk:
                    try:
                        row = SnapshotRow.model_validate(raw)
                    except ValidationError:
                        skipped["invalid_record"] += 1
                        continue
                    try:
                        store_id = await resolver.resolve(row.branch_id, BRANCH_STORE)
                        family_id = await resolver.resolve(row.sku, SKU_FAMILY)
                    except MappingError as exc:
                        skipped[f"unmapped_{exc.kind}"] += 1
                        increment_counter("mapping_errors_total")
                        continue
                    quantity, observed_at = totals.get((store_id, family_id), (0.0, None))
                    latest = observed_at
                    if row.observed_at is not None and (latest is None or row.observed_at > latest):
                        latest = row.observed_at
                    totals[(store_id, family_id)] = (quantity + row.quantity, latest)
                # Mapping rows created while resolving are kept even if a later chunk fails.
                await session.commit()
        return totals

    async def _apply(
        self,
        tenant_id: str,
        totals: dict[tuple[str, str], tuple[float, datetime | None]],
        result: SyncResult,
        *,
        request_id: str | None,
    ) -> None:
        keys = sorted(totals)
        chunk_size = max(1, self._settings.position_sync_chunk_size)
        for start in range(0, len(keys), chunk_size):
            chunk = keys[start : start + chunk_size]
            async with tenant_session(self._session_factory, tenant_id) as session:
                try:
                    existing = await positions_repo.get_positions(session, tenant_id, chunk)
                    changed: list[dict] = []
                    refreshed: list[dict] = []
                    for store_id, family_id in chunk:
                        quantity, observed_at = totals[(store_id, family_id)]
                        current = existing.get((store_id, family_id))
                        row = {
                            "store_id": store_id,
                            "family_id": family_id,
                            "quantity": quantity,
                            "observed_at": observed_at,
                        }
                        if current is not None and abs(current.quantity - quantity) < _QUANTITY_EPSILON:
                            stored_at = _as_aware(current.observed_at)
                            seen_at = _as_aware(observed_at)
                            if seen_at is not None and (stored_at is None or seen_at > stored_at):
                                refreshed.append(row)
                            else:
                                result.unchanged += 1
                            continue
                        changed.append(row)
                        await record_event(
                            session=session,
                            tenant_id=tenant_id,
                            actor_type="system",
                            actor_id="position_sync",
                            event_type="position.updated",
                            outcome="success",
                            resource_type="current_position",
                            resource_id=f"{store_id}:{family_id}",
                            request_id=request_id,
                            old_value=(
                                _snapshot(current.quantity, current.observed_at) if current else None
                            ),
                            new_value=_snapshot(quantity, observed_at),
                        )
                    await positions_repo.upsert_positions(session, tenant_id, changed + refreshed)
                    await session.commit()
                    result.updated += len(changed)
                    result.refreshed += len(refreshed)
                except SQLAlchemyError as exc:
                    await session.rollback()
                    result.errors += len(chunk)
                    logger.error(
                        "position_sync_chunk_failed tenant=%s chunk_start=%s size=%s",
                        tenant_id,
                        start,
                        len(chunk),
                        exc_info=exc,
                    )

    async def _finish(
        self, tenant_id: str, run_id: str, result: SyncResult, *, request_id: str | None
    ) -> None:
        try:
            async with tenant_session(self._session_factory, tenant_id) as session:
                await checkpoints_repo.finish_checkpoint(
                    session,
                    tenant_id=tenant_id,
                    source=POSITION_SOURCE,
                    model_type=POSITION_MODEL,
                    run_id=run_id,
                    status=result.status,
                    error=result.error,
                    completed_at=_utc_now() if result.status == "completed" else None,
                )
                await record_event(
                    session=session,
                    tenant_id=tenant_id,
                    actor_type="system",
                    actor_id="position_sync",
                    event_type=f"position_sync.run.{result.status}",
                    outcome="failure" if result.status == "failed" else "success",
                    resource_type="position_sync",
                    resource_id=tenant_id,
                    request_id=request_id,
                    metadata={
                        "run_id": run_id,
                        "updated": result.updated,
                        "unchanged": result.unchanged,
                        "refreshed": result.refreshed,
                        "skipped": result.skipped,
                        "errors": result.errors,
                        "error": result.error,
                    },
                )
                await session.commit()
        except SQLAlchemyError as exc:
            logger.error("position_sync_finish_failed tenant=%s run_id=%s", tenant_id, run_id, exc_info=exc)
        logger.info(
            "position_sync_finished tenant=%s status=%s updated=%s unchanged=%s refreshed=%s skipped=%s errors=%s",
            tenant_id,
            result.status,
            result.updated,
            result.unchanged,
            result.refreshed,
            result.skipped,
            result.errors,
        )
