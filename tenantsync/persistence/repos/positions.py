from __future__ import annotations

from typing import Iterable

from sqlalchemy import and_, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tenantsync.domain.models import CurrentStatePosition
from tenantsync.persistence.guards import tenant_predicate
from tenantsync.persistence.upsert import upsert_rows


async def get_positions(
    session: AsyncSession, tenant_id: str, keys: Iterable[tuple[str, str]]
) -> dict[tuple[str, str], CurrentStatePosition]:
    # Load the live rows for a chunk of (store_id, family_id) pairs.
    pairs = list(keys)
    if not pairs:
        return {}
    stmt = (
        select(CurrentStatePosition).where(
            tenant_predicate(CurrentStatePosition, tenant_id),
            or_(
                *[
                    and_(
                        CurrentStatePosition.store_id == store_id,
                        CurrentStatePosition.family_id == family_id,
                    )
                    for store_id, family_id in pairs
                ]
            ),
        )
    )
    result = await session.execute(stmt)
    return {(row.store_id, row.family_id): row for row in result.scalars().all()}


async def list_positions(session: AsyncSession, tenant_id: str) -> list[CurrentStatePosition]:
    stmt = (
        select(CurrentStatePosition)
        .where(tenant_predicate(CurrentStatePosition, tenant_id))
        .order_by(CurrentStatePosition.store_id, CurrentStatePosition.family_id)
    )
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def upsert_positions(session: AsyncSession, tenant_id: str, rows: list[dict]) -> int:
    # Keyed on (tenant, store, family); never appends a second live row.
    payload = [{**row, "tenant_id": tenant_id} for row in rows]
    return await upsert_rows(
        session,
        CurrentStatePosition.__table__,
        payload,
        index_elements=["tenant_id", "store_id", "family_id"],
        update_columns=["quantity", "observed_at"],
    )
