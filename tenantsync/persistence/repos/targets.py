from __future__ import annotations

from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantsync.domain.models import CommittedKey, Customer, Order, OrderItem, Product
from tenantsync.persistence.guards import require_tenant_id, tenant_predicate
from tenantsync.persistence.upsert import upsert_rows


TARGET_MODELS = {
    "customers": Customer,
    "products": Product,
    "orders": Order,
    "order_items": OrderItem,
}
_NATURAL_KEY = ["tenant_id", "source", "natural_key"]
# synced_at is refreshed from its server default on every rewrite.
_IMMUTABLE = {"id", "tenant_id", "source", "natural_key"}


async def upsert_targets(
    session: AsyncSession,
    *,
    tenant_id: str,
    source: str,
    model_type: str,
    rows: list[dict[str, Any]],
) -> int:
    # Natural-key upsert so replaying a batch after a crash rewrites the same rows.
    require_tenant_id(tenant_id)
    if not rows:
        return 0
    model = TARGET_MODELS[model_type]
    payload = [
        {**row, "id": str(uuid4()), "tenant_id": tenant_id, "source": source} for row in rows
    ]
    update_columns = [
        column.name for column in model.__table__.columns if column.name not in _IMMUTABLE
    ]
    return await upsert_rows(
        session,
        model.__table__,
        payload,
        index_elements=_NATURAL_KEY,
        update_columns=update_columns,
    )


async def count_targets(session: AsyncSession, tenant_id: str, model_type: str) -> int:
    model = TARGET_MODELS[model_type]
    stmt = select(func.count()).select_from(model).where(tenant_predicate(model, tenant_id))
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def get_target(
    session: AsyncSession, tenant_id: str, model_type: str, source: str, natural_key: str
) -> Any:
    model = TARGET_MODELS[model_type]
    stmt = (
        select(model).where(
            tenant_predicate(model, tenant_id),
            model.source == source,
            model.natural_key == natural_key,
        )
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def get_committed_keys(
    session: AsyncSession,
    *,
    tenant_id: str,
    source: str,
    model_type: str,
    natural_keys: Iterable[str],
) -> dict[str, CommittedKey]:
    keys = list(natural_keys)
    if not keys:
        return {}
    stmt = (
        select(CommittedKey).where(
            tenant_predicate(CommittedKey, tenant_id),
            CommittedKey.source == source,
            CommittedKey.model_type == model_type,
            CommittedKey.natural_key.in_(keys),
        )
    )
    result = await session.execute(stmt)
    return {row.natural_key: row for row in result.scalars().all()}


async def record_committed_keys(
    session: AsyncSession,
    *,
    tenant_id: str,
    source: str,
    model_type: str,
    generation: int,
    hashes: dict[str, str],
) -> int:
    # Ledger rows share the batch transaction with the target rows they describe.
    rows = [
        {
            "tenant_id": tenant_id,
            "source": source,
            "model_type": model_type,
            "natural_key": natural_key,
            "row_hash": row_hash,
            "generation": generation,
        }
        for natural_key, row_hash in hashes.items()
    ]
    return await upsert_rows(
        session,
        CommittedKey.__table__,
        rows,
        index_elements=["tenant_id", "source", "model_type", "natural_key"],
        update_columns=["row_hash", "generation"],
    )
