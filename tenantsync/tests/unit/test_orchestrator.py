from __future__ import annotations

import asyncio
from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import event, inspect, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tenantsync.core.config import Settings, get_settings
from tenantsync.domain.models import AuditEvent, Base, Customer, ProgressCheckpoint
from tenantsync.persistence.repos import checkpoints as checkpoints_repo
from tenantsync.persistence.repos import targets as targets_repo
from tenantsync.persistence.tenants import tenant_session
from tenantsync.services.backfill.orchestrator import BackfillOrchestrator
from tenantsync.services.warehouse.query import decode_cursor
from tenantsync.tests.utils.warehouse import FakeWarehouse


CUSTOMERS = "olvboutique_kiotviet.raw_kiotviet_Customers"
ORDER_ITEMS = "olvboutique_kiotviet.raw_kiotviet_OrderDetails"


def _customer_rows(count: int, *, start: int = 0) -> list[dict]:
    return [
        {"CusId": index, "Name": f"Customer {index}", "ContactNumber": f"09{index:08d}"}
        for index in range(start, start + count)
    ]


def _orchestrator(warehouse: FakeWarehouse, session_factory, **settings_overrides) -> BackfillOrchestrator:
    settings = Settings(**{"backfill_batch_size": 10, **settings_overrides})
    return BackfillOrchestrator(warehouse, session_factory=session_factory, settings=settings)


async def _checkpoint(session_factory, tenant_id: str = "t1", source: str = "kiotviet", model_type: str = "customers"):
    async with session_factory() as session:
        return await checkpoints_repo.get_checkpoint(session, tenant_id, source, model_type)


async def _count(session_factory, model_type: str = "customers", tenant_id: str = "t1") -> int:
    async with session_factory() as session:
        return await targets_repo.count_targets(session, tenant_id, model_type)


@pytest.mark.asyncio
async def test_full_run_pages_until_exhausted(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)})
    result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "customers")

    assert result.status == "completed"
    assert result.batches_processed == 3
    assert result.rows_read == 25
    assert result.rows_written == 25
    assert await _count(session_factory) == 25
    # Backfills never read through the query cache.
    assert len(warehouse.calls) == 3
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.status == "completed"
    assert checkpoint.lease_expires_at is None
    assert decode_cursor(checkpoint.cursor) == 25
    assert checkpoint.batches_committed == 3


@pytest.mark.asyncio
async def test_max_batches_pauses_and_resumes(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)})
    orchestrator = _orchestrator(warehouse, session_factory)

    paused = await orchestrator.run("t1", "kiotviet", "customers", max_batches=2)
    assert paused.status == "paused"
    assert paused.batches_processed == 2
    assert decode_cursor(paused.next_cursor) == 20
    assert await _count(session_factory) == 20

    resumed = await orchestrator.run("t1", "kiotviet", "customers")
    assert resumed.status == "completed"
    assert resumed.rows_read == 5
    assert await _count(session_factory) == 25
    assert decode_cursor(warehouse.calls[2].cursor) == 20


@pytest.mark.asyncio
async def test_failure_keeps_last_committed_cursor(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)}, fail_on={3})
    orchestrator = _orchestrator(warehouse, session_factory)

    failed = await orchestrator.run("t1", "kiotviet", "customers")
    assert failed.status == "failed"
    assert failed.error.startswith("WarehouseError")
    assert failed.batches_processed == 2
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.status == "failed"
    assert decode_cursor(checkpoint.cursor) == 20
    assert await _count(session_factory) == 20

    resumed = await orchestrator.run("t1", "kiotviet", "customers")
    assert resumed.status == "completed"
    assert resumed.rows_written == 5
    assert await _count(session_factory) == 25


@pytest.mark.asyncio
async def test_store_write_failure_rolls_back_partial_batch(session_factory, monkeypatch) -> None:
    # The second batch's target rows are already upserted when its ledger write fails.
    record_committed_keys = targets_repo.record_committed_keys
    calls = 0

    async def fail_second_ledger_write(session, **kwargs):
        nonlocal calls
        calls += 1
        if calls == 2:
            raise OperationalError("INSERT INTO committed_keys", {}, Exception("disk I/O error"))
        return await record_committed_keys(session, **kwargs)

    monkeypatch.setattr(targets_repo, "record_committed_keys", fail_second_ledger_write)
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)})
    orchestrator = _orchestrator(warehouse, session_factory)

    failed = await orchestrator.run("t1", "kiotviet", "customers")
    assert failed.status == "failed"
    assert failed.error.startswith("StoreWriteError")
    assert failed.batches_processed == 1
    assert decode_cursor(failed.next_cursor) == 10
    assert await _count(session_factory) == 10
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.status == "failed"
    assert decode_cursor(checkpoint.cursor) == 10
    assert checkpoint.batches_committed == 1

    monkeypatch.setattr(targets_repo, "record_committed_keys", record_committed_keys)
    resumed = await orchestrator.run("t1", "kiotviet", "customers")
    assert resumed.status == "completed"
    assert resumed.rows_written == 15
    assert await _count(session_factory) == 25


@pytest.mark.asyncio
async def test_schema_mode_keeps_every_batch_in_tenant_schema(tmp_path, monkeypatch) -> None:
    monkeypatch.setenv("TENANT_SCHEMA_MODE", "schema")
    monkeypatch.setenv("TENANT_SCHEMA_PREFIX", "tenant_")
    get_settings.cache_clear()
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'main.db'}")
    tenant_file = tmp_path / "tenant_t1.db"

    # SQLite stands in for a per-tenant schema with an attached database.
    @event.listens_for(engine.sync_engine, "connect")
    def attach_tenant_schema(dbapi_connection, _connection_record) -> None:
        cursor = dbapi_connection.cursor()
        cursor.execute(f"ATTACH DATABASE '{tenant_file}' AS tenant_t1")
        cursor.close()

    async with engine.execution_options(schema_translate_map={None: "tenant_t1"}).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    try:
        warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)})
        result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "customers")

        assert result.status == "completed"
        assert result.batches_processed == 3
        assert decode_cursor(result.next_cursor) == 25
        async with tenant_session(session_factory, "t1") as session:
            assert await targets_repo.count_targets(session, "t1", "customers") == 25
            checkpoint = await checkpoints_repo.get_checkpoint(session, "t1", "kiotviet", "customers")
        assert checkpoint.status == "completed"
        assert checkpoint.batches_committed == 3
        async with engine.connect() as conn:
            default_tables = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        assert default_tables == []
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_rerun_after_completion_reads_from_tail(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)})
    orchestrator = _orchestrator(warehouse, session_factory)
    await orchestrator.run("t1", "kiotviet", "customers")

    warehouse.tables[CUSTOMERS].extend(_customer_rows(3, start=25))
    again = await orchestrator.run("t1", "kiotviet", "customers")
    assert again.status == "completed"
    assert again.rows_written == 3
    assert await _count(session_factory) == 28


@pytest.mark.asyncio
async def test_force_restart_skips_unchanged_rows(session_factory) -> None:
    rows = _customer_rows(25)
    warehouse = FakeWarehouse({CUSTOMERS: rows})
    orchestrator = _orchestrator(warehouse, session_factory)
    await orchestrator.run("t1", "kiotviet", "customers")

    rows[0]["Name"] = "Renamed"
    restarted = await orchestrator.run("t1", "kiotviet", "customers", force_restart=True)
    assert restarted.status == "completed"
    assert restarted.rows_read == 25
    assert restarted.rows_written == 1
    assert restarted.skipped_by_reason == {"already_committed": 24}
    assert await _count(session_factory) == 25
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.generation == 2
    async with session_factory() as session:
        renamed = await targets_repo.get_target(session, "t1", "customers", "kiotviet", "0900000000")
    assert renamed.full_name == "Renamed"


@pytest.mark.asyncio
async def test_date_window_filters_pages_and_rewinds_when_changed(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)})
    orchestrator = _orchestrator(warehouse, session_factory)
    january = {"date_from": date(2024, 1, 1), "date_to": date(2024, 1, 31)}

    first = await orchestrator.run("t1", "kiotviet", "customers", max_batches=1, **january)
    assert first.status == "paused"
    assert (first.date_from, first.date_to) == (date(2024, 1, 1), date(2024, 1, 31))
    spec = warehouse.calls[0]
    assert (spec.date_field, spec.start_date, spec.end_date) == (
        "CreatedDate",
        date(2024, 1, 1),
        date(2024, 1, 31),
    )
    checkpoint = await _checkpoint(session_factory)
    assert (checkpoint.window_start, checkpoint.window_end) == (date(2024, 1, 1), date(2024, 1, 31))
    assert checkpoint.generation == 1

    # The same window resumes from the stored cursor.
    await orchestrator.run("t1", "kiotviet", "customers", max_batches=1, **january)
    assert decode_cursor(warehouse.calls[1].cursor) == 10
    assert warehouse.calls[1].start_date == date(2024, 1, 1)

    widened = await orchestrator.run("t1", "kiotviet", "customers", date_from=date(2023, 1, 1))
    assert widened.status == "completed"
    assert warehouse.calls[2].cursor is None
    assert (warehouse.calls[2].start_date, warehouse.calls[2].end_date) == (date(2023, 1, 1), None)
    assert widened.rows_written == 5
    assert widened.skipped_by_reason == {"already_committed": 20}
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.generation == 2
    assert (checkpoint.window_start, checkpoint.window_end) == (date(2023, 1, 1), None)


@pytest.mark.asyncio
async def test_date_window_is_ignored_without_a_date_column(session_factory) -> None:
    warehouse = FakeWarehouse({ORDER_ITEMS: []})
    result = await _orchestrator(warehouse, session_factory).run(
        "t1", "kiotviet", "order_items", date_from=date(2024, 1, 1)
    )
    assert result.status == "completed"
    assert result.date_from is None
    assert warehouse.calls[0].date_field is None
    assert warehouse.calls[0].start_date is None


@pytest.mark.asyncio
async def test_inverted_date_window_fails_without_claiming(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(5)})
    result = await _orchestrator(warehouse, session_factory).run(
        "t1", "kiotviet", "customers", date_from=date(2024, 2, 1), date_to=date(2024, 1, 1)
    )
    assert result.status == "failed"
    assert "date_from" in result.error
    assert warehouse.calls == []
    assert await _checkpoint(session_factory) is None


@pytest.mark.asyncio
async def test_duplicate_keys_in_batch_keep_last_seen(session_factory) -> None:
    rows = [
        {"CusId": 1, "Name": "First", "ContactNumber": "0912345678"},
        {"CusId": 2, "Name": "Other", "ContactNumber": "0987654321"},
        {"CusId": 3, "Name": "Latest", "ContactNumber": "+84 912 345 678"},
    ]
    warehouse = FakeWarehouse({CUSTOMERS: rows})
    result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "customers")

    assert result.status == "completed"
    assert result.rows_written == 2
    assert result.skipped_by_reason == {"duplicate_in_batch": 1}
    async with session_factory() as session:
        customer = await targets_repo.get_target(session, "t1", "customers", "kiotviet", "0912345678")
    assert customer.full_name == "Latest"
    assert customer.external_id == "3"


@pytest.mark.asyncio
async def test_invalid_rows_are_counted_by_reason(session_factory) -> None:
    rows = _customer_rows(2) + [
        {"CusId": 90, "Name": "No contact", "ContactNumber": None},
        {"CusId": 91, "Name": "Bad revenue", "ContactNumber": "0911111111", "TotalRevenue": "n/a"},
    ]
    warehouse = FakeWarehouse({CUSTOMERS: rows})
    result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "customers")

    assert result.status == "completed"
    assert result.rows_written == 2
    assert result.rows_skipped == 2
    assert result.skipped_by_reason == {"missing_natural_key": 1, "invalid_record": 1}
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.rows_skipped == 2


@pytest.mark.asyncio
async def test_order_items_resolve_families_and_skip_unmapped(session_factory) -> None:
    rows = [
        {"OrderId": "HD1", "ProductId": 1, "ProductCode": "ABC123-M", "Quantity": 1},
        {"OrderId": "HD1", "ProductId": 2, "ProductCode": "ABC123-L", "Quantity": 2},
        {"OrderId": "HD2", "ProductId": 3, "ProductCode": "--", "Quantity": 1},
    ]
    warehouse = FakeWarehouse({ORDER_ITEMS: rows})
    result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "order_items")

    assert result.status == "completed"
    assert result.rows_written == 2
    assert result.skipped_by_reason == {"unmapped_sku_family": 1}
    async with session_factory() as session:
        medium = await targets_repo.get_target(session, "t1", "order_items", "kiotviet", "HD1:1")
        large = await targets_repo.get_target(session, "t1", "order_items", "kiotviet", "HD1:2")
    assert medium.family_id is not None
    assert medium.family_id == large.family_id


@pytest.mark.asyncio
async def test_live_lease_blocks_second_run(session_factory) -> None:
    async with session_factory() as session:
        session.add(
            ProgressCheckpoint(
                tenant_id="t1",
                source="kiotviet",
                model_type="customers",
                status="running",
                run_id="other-run",
                lease_expires_at=datetime.now(timezone.utc) + timedelta(minutes=5),
            )
        )
        await session.commit()
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(5)})
    result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "customers")

    assert result.status == "already_running"
    assert result.run_id is None
    assert warehouse.calls == []
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.run_id == "other-run"


@pytest.mark.asyncio
async def test_expired_lease_is_taken_over(session_factory) -> None:
    # A crashed run leaves a stale lease; the next invocation resumes from its cursor.
    async with session_factory() as session:
        session.add(
            ProgressCheckpoint(
                tenant_id="t1",
                source="kiotviet",
                model_type="customers",
                status="running",
                run_id="crashed-run",
                lease_expires_at=datetime.now(timezone.utc) - timedelta(minutes=5),
            )
        )
        await session.commit()
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(5)})
    result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "customers")
    assert result.status == "completed"
    assert result.rows_written == 5


@pytest.mark.asyncio
async def test_cancel_request_pauses_before_next_batch(session_factory) -> None:
    async def cancel_after_first_fetch(call_number: int, _spec) -> None:
        if call_number == 1:
            async with session_factory() as session:
                await checkpoints_repo.request_cancel(session, "t1", "kiotviet", "customers")
                await session.commit()

    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(25)}, on_execute=cancel_after_first_fetch)
    result = await _orchestrator(warehouse, session_factory).run("t1", "kiotviet", "customers")

    assert result.status == "paused"
    assert result.batches_processed == 1
    checkpoint = await _checkpoint(session_factory)
    assert checkpoint.status == "paused"
    assert checkpoint.cancel_requested is False
    assert decode_cursor(checkpoint.cursor) == 10


@pytest.mark.asyncio
async def test_stop_signal_and_runtime_budget_pause(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(5)})
    stop = asyncio.Event()
    stop.set()
    stopped = await _orchestrator(warehouse, session_factory).run(
        "t1", "kiotviet", "customers", stop_signal=stop
    )
    assert stopped.status == "paused"
    assert stopped.batches_processed == 0

    budget = await _orchestrator(warehouse, session_factory, backfill_max_runtime_s=0).run(
        "t1", "kiotviet", "customers"
    )
    assert budget.status == "paused"
    assert warehouse.calls == []


@pytest.mark.asyncio
async def test_unknown_source_fails_without_claiming(session_factory) -> None:
    warehouse = FakeWarehouse()
    result = await _orchestrator(warehouse, session_factory).run("t1", "shopify", "customers")
    assert result.status == "failed"
    assert "Unknown source" in result.error
    assert await _checkpoint(session_factory, source="shopify") is None


@pytest.mark.asyncio
async def test_tenants_are_isolated(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(5)})
    orchestrator = _orchestrator(warehouse, session_factory)
    await orchestrator.run("t1", "kiotviet", "customers")
    await orchestrator.run("t2", "kiotviet", "customers", max_batches=1)
    assert await _count(session_factory, tenant_id="t1") == 5
    assert await _count(session_factory, tenant_id="t2") == 5
    async with session_factory() as session:
        tenants = await session.execute(select(Customer.tenant_id).distinct())
    assert sorted(tenants.scalars().all()) == ["t1", "t2"]


@pytest.mark.asyncio
async def test_run_many_runs_each_model_and_audits(session_factory) -> None:
    warehouse = FakeWarehouse({CUSTOMERS: _customer_rows(3)})
    results = await _orchestrator(warehouse, session_factory).run_many(
        "t1", "kiotviet", ["customers", "order_items"], request_id="req-1"
    )
    assert [(item.model_type, item.status) for item in results] == [
        ("customers", "completed"),
        ("order_items", "completed"),
    ]
    async with session_factory() as session:
        events = await session.execute(
            select(AuditEvent).where(AuditEvent.event_type == "backfill.run.completed")
        )
        audit_rows = events.scalars().all()
    assert len(audit_rows) == 2
    assert {row.request_id for row in audit_rows} == {"req-1"}
