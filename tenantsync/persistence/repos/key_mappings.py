from __future__ import annotations

from uuid import uuid4

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantsync.core.errors import StoreWriteError
from tenantsync.domain.models import FamilyCode, KeyMapping, Store
from tenantsync.persistence.guards import tenant_predicate
from tenantsync.persistence.upsert import insert_ignore


# Target entity per mapping kind: model, code column.
_ENTITIES = {
    "sku_family": (FamilyCode, "fc_code"),
    "branch_store": (Store, "store_code"),
}


async def get_mapping(
    session: AsyncSession, tenant_id: str, kind: str, external_key: str
) -> KeyMapping | None:
    stmt = (
        select(KeyMapping).where(
            tenant_predicate(KeyMapping, tenant_id),
            KeyMapping.kind == kind,
            KeyMapping.external_key == external_key,
        )
    )
    result = await session.execute(stmt)
    return result.scalar_one_or_none()


async def count_mappings(session: AsyncSession, tenant_id: str, kind: str | None = None) -> int:
    stmt = select(func.count()).select_from(KeyMapping).where(tenant_predicate(KeyMapping, tenant_id))
    if kind:
        stmt = stmt.where(KeyMapping.kind == kind)
    result = await session.execute(stmt)
    return int(result.scalar_one())


async def find_or_create_entity(session: AsyncSession, tenant_id: str, kind: str, code: str) -> str:
    # Race-safe insert: a concurrent creator wins the unique constraint and we reload its row.
    model, code_column = _ENTITIES[kind]
    await insert_ignore(
        session,
        model.__table__,
        {"id": str(uuid4()), "tenant_id": tenant_id, code_column: code},
        index_elements=["tenant_id", code_column],
    )
    stmt = (
        select(model.id).where(
            tenant_predicate(model, tenant_id),
            getattr(model, code_column) == code,
        )
    )
    result = await session.execute(stmt)
    entity_id = result.scalar_one_or_none()
    if entity_id is None:
        raise StoreWriteError(f"{kind} entity insert failed for {code!r}")
    return entity_id


async def find_or_create_mapping(
    session: AsyncSession, tenant_id: str, kind: str, external_key: str, internal_id: str
) -> KeyMapping:
    # Losing a concurrent race re-reads the winning mapping instead of failing.
    await insert_ignore(
        session,
        KeyMapping.__table__,
        {
            "tenant_id": tenant_id,
            "kind": kind,
            "external_key": external_key,
            "internal_id": internal_id,
        },
        index_elements=["tenant_id", "kind", "external_key"],
    )
    mapping = await get_mapping(session, tenant_id, kind, external_key)
    if mapping is None:
        raise StoreWriteError(f"{kind} mapping insert failed for {external_key!r}")
    return mapping
