from __future__ import annotations

import asyncio
from collections import Counter
from datetime import date, datetime, timedelta, timezone
import logging
import time
from typing import Any, Callable, Literal, Protocol
from uuid import uuid4

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantsync.core.config import Settings, get_settings
from tenantsync.core.errors import MappingError, RecordValidationError, StoreWriteError, TenantSyncError
from tenantsync.domain.records import SourceRecord, build_record, record_hash
from tenantsync.persistence.db import SessionLocal
from tenantsync.persistence.repos import checkpoints as checkpoints_repo
from tenantsync.persistence.repos import targets as targets_repo
from tenantsync.persistence.tenants import tenant_session, validate_tenant_id
from tenantsync.services.audit import record_event
from tenantsync.services.backfill.sources import SourceDefinition, get_source
from tenantsync.services.mapping.resolver import MappingResolver
from tenantsync.services.mapping.transforms import BRANCH_STORE, SKU_FAMILY
from tenantsync.services.telemetry import increment_counter, record_job
from tenantsync.services.warehouse.executor import QueryPage
from tenantsync.services.warehouse.query import QuerySpec


logger = logging.getLogger(__name__)

RunStatus = Literal["completed", "paused", "failed", "already_running"]


class PageSource(Protocol):
    async def execute(self, spec: QuerySpec, *, tenant_id: str, use_cache: bool = True) -> QueryPage: ...


class BackfillResult(BaseModel):
    tenant_id: str
    source: str
    model_type: str
    status: RunStatus
    run_id: str | None = None
    batches_processed: int = 0
    rows_read: int = 0
    rows_written: int = 0
    rows_skipped: int = 0
    skipped_by_reason: dict[str, int] = Field(default_factory=dict)
    date_from: date | None = None
    date_to: date | None = None
    next_cursor: str | None = None
    error: str | None = None


class _StopRun(Exception):
    # Internal signal: the run lost its lease to another invocation.
    pass


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class BackfillOrchestrator:
    """Drives resumable historical loads for one (tenant, source, model) at a time.

    Each batch is written in one store transaction together with the checkpoint
    advance, so the checkpoint never runs ahead of committed rows. Duplicate natural
    keys resolve last-seen-wins: later rows in page order overwrite earlier ones,
    because the warehouse does not guarantee stable ordering across pages.
    """

    def __init__(
        self,
        executor: PageSource,
        *,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._executor = executor
        self._session_factory = session_factory or SessionLocal
        self._settings = settings or get_settings()
        self._clock = clock or time.monotonic

    def _batch_size(self, requested: int | None) -> int:
        size = requested or self._settings.backfill_batch_size
        return max(1, min(size, self._settings.backfill_max_batch_size, self._settings.warehouse_max_rows))

    def _lease_until(self) -> datetime:
        return _utc_now() + timedelta(seconds=self._settings.backfill_lease_ttl_s)

    async def run(
        self,
        tenant_id: str,
        source: str,
        model_type: str,
        *,
        max_batches: int | None = None,
        force_restart: bool = False,
        batch_size: int | None = None,
        date_from: date | None = None,
        date_to: date | None = None,
        stop_signal: asyncio.Event | None = None,
        request_id: str | None = None,
    ) -> BackfillResult:
        validate_tenant_id(tenant_id)
        result = BackfillResult(tenant_id=tenant_id, source=source, model_type=model_type, status="failed")
        definition = get_source(source, model_type)
        if definition is None:
            result.error = f"Unknown source {source!r} for model {model_type!r}"
            return result
        if date_from is not None and date_to is not None and date_from > date_to:
            result.error = "date_from must not be after date_to"
            return result
        if definition.date_column is None and (date_from is not None or date_to is not None):
            logger.info(
                "backfill_window_ignored tenant=%s source=%s model=%s", tenant_id, source, model_type
            )
            date_from = date_to = None
        result.date_from = date_from
        result.date_to = date_to

        run_id = uuid4().hex
        started = self._clock()
        try:
            claimed = await self._claim(
                tenant_id, definition, run_id, force_restart=force_restart, window=(date_from, date_to)
            )
        except SQLAlchemyError as exc:
            logger.error(
                "backfill_claim_failed tenant=%s source=%s model=%s",
                tenant_id,
                source,
                model_type,
                exc_info=exc,
            )
            result.error = f"StoreWriteError: checkpoint claim failed ({type(exc).__name__})"
            return result
        if not claimed:
            logger.info(
                "backfill_already_running tenant=%s source=%s model=%s",
                tenant_id,
                source,
                model_type,
            )
            result.status = "already_running"
            result.next_cursor = await self._current_cursor(tenant_id, definition)
            return result

        result.run_id = run_id
        logger.info(
            "backfill_started tenant=%s source=%s model=%s run_id=%s force_restart=%s window=%s..%s",
            tenant_id,
            source,
            model_type,
            run_id,
            force_restart,
            date_from,
            date_to,
        )
        try:
            status = await self._run_batches(
                tenant_id,
                definition,
                run_id,
                result,
                batch_size=self._batch_size(batch_size),
                max_batches=max_batches,
                stop_signal=stop_signal,
                deadline=started + self._settings.backfill_max_runtime_s,
            )
            result.status = status
        except _StopRun as exc:
            result.status = "failed"
            result.error = str(exc)
        except TenantSyncError as exc:
            # Checkpoint stays at the last committed batch.
            result.status = "failed"
            result.error = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "backfill_failed tenant=%s source=%s model=%s run_id=%s error=%s",
                tenant_id,
                source,
                model_type,
                run_id,
                result.error,
            )
        except asyncio.CancelledError:
            result.status = "paused"
            result.error = "cancelled"
            await self._finish(tenant_id, definition, run_id, result, request_id=request_id)
            raise
        except Exception as exc:  # noqa: BLE001 - every invocation returns a summary
            result.status = "failed"
            result.error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "backfill_crashed tenant=%s source=%s model=%s run_id=%s",
                tenant_id,
                source,
                model_type,
                run_id,
            )

        await self._finish(tenant_id, definition, run_id, result, request_id=request_id)
        record_job(
            job="backfill",
            status=result.status,
            duration_ms=(self._clock() - started) * 1000.0,
            rows_written=result.rows_written,
        )
        return result

    async def run_many(
        self,
        tenant_id: str,
        source: str,
        model_types: list[str],
        **kwargs: Any,
    ) -> list[BackfillResult]:
        # Model types run sequentially in request order; one failure does not stop the rest.
        results = []
        for model_type in model_types:
            results.append(await self.run(tenant_id, source, model_type, **kwargs))
        return results

    async def _claim(
        self,
        tenant_id: str,
        definition: SourceDefinition,
        run_id: str,
        *,
        force_restart: bool,
        window: tuple[date | None, date | None],
    ) -> bool:
        async with tenant_session(self._session_factory, tenant_id) as session:
            await checkpoints_repo.ensure_checkpoint(
                session,
                tenant_id,
                definition.source,
                definition.model_type,
                window_start=window[0],
                window_end=window[1],
            )
            claimed = await checkpoints_repo.claim_checkpoint(
                session,
                tenant_id=tenant_id,
                source=definition.source,
                model_type=definition.model_type,
                run_id=run_id,
                now=_utc_now(),
                lease_expires_at=self._lease_until(),
            )
            if claimed:
                checkpoint = await checkpoints_repo.get_checkpoint(
                    session, tenant_id, definition.source, definition.model_type
                )
                # A different date window starts a fresh pass; the ledger still skips unchanged rows.
                if force_restart or (checkpoint.window_start, checkpoint.window_end) != window:
                    await checkpoints_repo.restart_checkpoint(
                        session,
                        tenant_id=tenant_id,
                        source=definition.source,
                        model_type=definition.model_type,
                        run_id=run_id,
                        window_start=window[0],
                        window_end=window[1],
                    )
            await session.commit()
            return claimed

    async def _current_cursor(self, tenant_id: str, definition: SourceDefinition) -> str | None:
        async with tenant_session(self._session_factory, tenant_id) as session:
            checkpoint = await checkpoints_repo.get_checkpoint(
                session, tenant_id, definition.source, definition.model_type
            )
            return checkpoint.cursor if checkpoint else None

    async def _run_batches(
        self,
        tenant_id: str,
        definition: SourceDefinition,
        run_id: str,
        result: BackfillResult,
        *,
        batch_size: int,
        max_batches: int | None,
        stop_signal: asyncio.Event | None,
        deadline: float,
    ) -> RunStatus:
        while True:
            # Re-read the checkpoint every batch; memory never holds the resume point.
            async with tenant_session(self._session_factory, tenant_id) as session:
                checkpoint = await checkpoints_repo.get_checkpoint(
                    session, tenant_id, definition.source, definition.model_type
                )
            if checkpoint is None or checkpoint.run_id != run_id or checkpoint.status != "running":
                raise _StopRun("Run lease was taken over by another invocation")
            if checkpoint.cancel_requested:
                return "paused"
            if stop_signal is not None and stop_signal.is_set():
                return "paused"
            if max_batches is not None and result.batches_processed >= max_batches:
                return "paused"
            if self._clock() >= deadline:
                return "paused"

            spec = definition.query_spec(
                batch_size,
                cursor=checkpoint.cursor,
                date_from=checkpoint.window_start,
                date_to=checkpoint.window_end,
            )
            # Backfills always read through to the warehouse.
            page = await self._executor.execute(spec, tenant_id=tenant_id, use_cache=False)
            if not page.rows:
                return "completed"

            written, skipped = await self._commit_batch(
                tenant_id,
                definition,
                run_id,
                generation=checkpoint.generation,
                page=page,
            )
            result.batches_processed += 1
            result.rows_read += len(page.rows)
            result.rows_written += written
            result.rows_skipped += sum(skipped.values())
            for reason, count in skipped.items():
                result.skipped_by_reason[reason] = result.skipped_by_reason.get(reason, 0) + count
            logger.info(
                "backfill_batch_committed tenant=%s source=%s model=%s batch=%s rows=%s written=%s skipped=%s",
                tenant_id,
                definition.source,
                definition.model_type,
                result.batches_processed,
                len(page.rows),
                written,
                sum(skipped.values()),
            )
            if page.next_cursor is None:
                return "completed"

    def _dedupe(
        self, definition: SourceDefinition, rows: list[dict[str, Any]], skipped: Counter
    ) -> dict[str, SourceRecord]:
        # Last-seen wins: re-inserting moves a key to the end of page order.
        records: dict[str, SourceRecord] = {}
        for row in rows:
            try:
                record = build_record(definition.model_type, row, definition.mapping)
            except RecordValidationError as exc:
                skipped[exc.reason] += 1
                continue
            if record.natural_key in records:
                skipped["duplicate_in_batch"] += 1
                del records[record.natural_key]
            records[record.natural_key] = record
        return records

    async def _target_values(self, record: SourceRecord, resolver: MappingResolver) -> dict[str, Any]:
        values = record.model_dump(exclude={"model_type"})
        if record.model_type == "products":
            values["family_id"] = await resolver.resolve(record.sku, SKU_FAMILY)
        elif record.model_type == "order_items":
            values["family_id"] = await resolver.resolve(record.sku, SKU_FAMILY)
        elif record.model_type == "orders":
            branch_code = values.pop("branch_code", None)
            values["store_id"] = (
                await resolver.resolve(branch_code, BRANCH_STORE) if branch_code else None
            )
        return values

    async def _commit_batch(
        self,
        tenant_id: str,
        definition: SourceDefinition,
        run_id: str,
        *,
        generation: int,
        page: QueryPage,
    ) -> tuple[int, Counter]:
        skipped: Counter = Counter()
        records = self._dedupe(definition, page.rows, skipped)
        async with tenant_session(self._session_factory, tenant_id) as session:
            try:
                committed = await targets_repo.get_committed_keys(
                    session,
                    tenant_id=tenant_id,
                    source=definition.source,
                    model_type=definition.model_type,
                    natural_keys=records.keys(),
                )
                resolver = MappingResolver(session, tenant_id)
                rows: list[dict[str, Any]] = []
                hashes: dict[str, str] = {}
                last_key = None
                for natural_key, record in records.items():
                    row_hash = record_hash(record)
                    prior = committed.get(natural_key)
                    # Unchanged rows committed by an earlier generation are not rewritten.
                    if prior is not None and prior.generation != generation and prior.row_hash == row_hash:
                        skipped["already_committed"] += 1
                        continue
                    try:
                        values = await self._target_values(record, resolver)
                    except MappingError as exc:
                        skipped[f"unmapped_{exc.kind}"] += 1
                        increment_counter("mapping_errors_total")
                        continue
                    rows.append(values)
                    hashes[natural_key] = row_hash
                    last_key = natural_key
                written = await targets_repo.upsert_targets(
                    session,
                    tenant_id=tenant_id,
                    source=definition.source,
                    model_type=definition.model_type,
                    rows=rows,
                )
                await targets_repo.record_committed_keys(
                    session,
                    tenant_id=tenant_id,
                    source=definition.source,
                    model_type=definition.model_type,
                    generation=generation,
                    hashes=hashes,
                )
                advanced = await checkpoints_repo.advance_checkpoint(
                    session,
                    tenant_id=tenant_id,
                    source=definition.source,
                    model_type=definition.model_type,
                    run_id=run_id,
                    cursor=page.end_cursor,
                    rows_read=len(page.rows),
                    last_committed_key=last_key,
                    rows_written=written,
                    rows_skipped=sum(skipped.values()),
                    lease_expires_at=self._lease_until(),
                )
                if not advanced:
                    await session.rollback()
                    raise _StopRun("Run lease was taken over by another invocation")
                await session.commit()
            except SQLAlchemyError as exc:
                await session.rollback()
                raise StoreWriteError(f"Batch write failed: {type(exc).__name__}") from exc
        return written, skipped

    async def _finish(
        self,
        tenant_id: str,
        definition: SourceDefinition,
        run_id: str,
        result: BackfillResult,
        *,
        request_id: str | None,
    ) -> None:
        # Release the lease, record the terminal status and report the resume point.
        try:
            async with tenant_session(self._session_factory, tenant_id) as session:
                await checkpoints_repo.finish_checkpoint(
                    session,
                    tenant_id=tenant_id,
                    source=definition.source,
                    model_type=definition.model_type,
                    run_id=run_id,
                    status=result.status,
                    error=result.error,
                    completed_at=_utc_now() if result.status == "completed" else None,
                )
                await record_event(
                    session=session,
                    tenant_id=tenant_id,
                    actor_type="system",
                    actor_id="backfill",
                    event_type=f"backfill.run.{result.status}",
                    outcome="failure" if result.status == "failed" else "success",
                    resource_type="backfill",
                    resource_id=f"{definition.source}/{definition.model_type}",
                    request_id=request_id,
                    metadata={
                        "run_id": run_id,
                        "batches_processed": result.batches_processed,
                        "rows_written": result.rows_written,
                        "rows_skipped": result.rows_skipped,
                        "skipped_by_reason": result.skipped_by_reason,
                        "date_from": result.date_from.isoformat() if result.date_from else None,
                        "date_to": result.date_to.isoformat() if result.date_to else None,
                        "error": result.error,
                    },
                )
                await session.commit()
                checkpoint = await checkpoints_repo.get_checkpoint(
                    session, tenant_id, definition.source, definition.model_type
                )
                result.next_cursor = checkpoint.cursor if checkpoint else None
        except SQLAlchemyError as exc:
            # The lease expires on its own; the summary still goes back to the caller.
            logger.error(
                "backfill_finish_failed tenant=%s source=%s model=%s run_id=%s",
                tenant_id,
                definition.source,
                definition.model_type,
                run_id,
                exc_info=exc,
            )
        logger.info(
            "backfill_finished tenant=%s source=%s model=%s status=%s batches=%s written=%s skipped=%s",
            tenant_id,
            definition.source,
            definition.model_type,
            result.status,
            result.batches_processed,
            result.rows_written,
            result.rows_skipped,
        )
