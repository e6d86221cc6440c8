from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select

from tenantsync.core.errors import MappingError
from tenantsync.domain.models import FamilyCode, KeyMapping, Store
from tenantsync.persistence.repos import key_mappings as key_mappings_repo
from tenantsync.services.mapping.resolver import MappingResolver, resolve
from tenantsync.services.mapping.transforms import (
    BRANCH_STORE,
    SKU_FAMILY,
    branch_to_store_code,
    canonical_key,
    sku_to_family_code,
)


@pytest.mark.parametrize(
    "sku,family",
    [
        ("ABC123-M", "ABC123"),
        ("ABC123-L", "ABC123"),
        ("abc123xl", "ABC123"),
        ("ABC123_XXL", "ABC123"),
        ("ABC123", "ABC123"),
        ("TSHIRT", "TSHIRT"),
        (" DRS2024-S ", "DRS2024"),
    ],
)
def test_sku_to_family_code(sku: str, family: str) -> None:
    assert sku_to_family_code(sku) == family


def test_branch_to_store_code() -> None:
    assert branch_to_store_code(" hn01 ") == "HN01"
    assert branch_to_store_code(7) == "7"  # type: ignore[arg-type]


def test_canonical_key_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        canonical_key("warehouse_bin", "A1")


@pytest.mark.asyncio
async def test_size_variants_share_one_family(session_factory) -> None:
    async with session_factory() as session:
        medium = await resolve(session, "t1", "ABC123-M", SKU_FAMILY)
        large = await resolve(session, "t1", "ABC123-L", SKU_FAMILY)
        await session.commit()
        assert medium == large
        assert await key_mappings_repo.count_mappings(session, "t1", SKU_FAMILY) == 1
        families = await session.execute(select(func.count()).select_from(FamilyCode))
        assert families.scalar_one() == 1


@pytest.mark.asyncio
async def test_concurrent_resolution_creates_one_mapping(session_factory) -> None:
    async def _resolve(sku: str) -> str:
        async with session_factory() as session:
            internal_id = await resolve(session, "t1", sku, SKU_FAMILY)
            await session.commit()
            return internal_id

    medium, large = await asyncio.gather(_resolve("ABC123-M"), _resolve("ABC123-L"))
    assert medium == large
    async with session_factory() as session:
        assert await key_mappings_repo.count_mappings(session, "t1", SKU_FAMILY) == 1
        families = await session.execute(select(func.count()).select_from(FamilyCode))
        assert families.scalar_one() == 1


@pytest.mark.asyncio
async def test_repeat_resolution_is_stable_across_sessions(session_factory) -> None:
    async with session_factory() as session:
        first = await resolve(session, "t1", "HN01", BRANCH_STORE)
        await session.commit()
    async with session_factory() as session:
        second = await resolve(session, "t1", " hn01", BRANCH_STORE)
        stores = await session.execute(select(func.count()).select_from(Store))
    assert first == second
    assert stores.scalar_one() == 1


@pytest.mark.asyncio
async def test_exact_raw_mapping_overrides_transform(session_factory) -> None:
    # Operators pin exceptions by mapping the raw key directly.
    async with session_factory() as session:
        session.add(
            KeyMapping(tenant_id="t1", kind=SKU_FAMILY, external_key="SPECIAL-M", internal_id="fam-pinned")
        )
        await session.commit()
        assert await resolve(session, "t1", "SPECIAL-M", SKU_FAMILY) == "fam-pinned"
        assert await resolve(session, "t1", "SPECIAL-L", SKU_FAMILY) != "fam-pinned"


@pytest.mark.asyncio
async def test_existing_entity_from_lost_race_is_reused(session_factory) -> None:
    # Another resolver already created the family but not yet its mapping.
    async with session_factory() as session:
        session.add(FamilyCode(id="fam-winner", tenant_id="t1", fc_code="ABC123"))
        await session.commit()
        assert await resolve(session, "t1", "ABC123-M", SKU_FAMILY) == "fam-winner"
        await session.commit()
        mapping = await key_mappings_repo.get_mapping(session, "t1", SKU_FAMILY, "ABC123")
    assert mapping is not None
    assert mapping.internal_id == "fam-winner"


@pytest.mark.asyncio
async def test_mappings_are_tenant_scoped(session_factory) -> None:
    async with session_factory() as session:
        first = await resolve(session, "t1", "ABC123-M", SKU_FAMILY)
        second = await resolve(session, "t2", "ABC123-M", SKU_FAMILY)
        await session.commit()
    assert first != second


@pytest.mark.asyncio
@pytest.mark.parametrize("external_key", [None, "", "   "])
async def test_empty_keys_raise_mapping_error(session_factory, external_key) -> None:
    async with session_factory() as session:
        with pytest.raises(MappingError) as exc_info:
            await resolve(session, "t1", external_key, SKU_FAMILY)
    assert exc_info.value.kind == SKU_FAMILY


@pytest.mark.asyncio
async def test_transform_yielding_empty_key_raises(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(MappingError):
            await resolve(session, "t1", "--", SKU_FAMILY)


@pytest.mark.asyncio
async def test_resolver_memoizes_within_transaction(session_factory) -> None:
    async with session_factory() as session:
        resolver = MappingResolver(session, "t1")
        first = await resolver.resolve("ABC123-M", SKU_FAMILY)
        second = await resolver.resolve("ABC123-M", SKU_FAMILY)
    assert first == second
