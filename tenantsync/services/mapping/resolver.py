from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession

from tenantsync.core.errors import MappingError
from tenantsync.persistence.repos import key_mappings as key_mappings_repo
from tenantsync.services.mapping.transforms import MAPPING_KINDS, canonical_key


logger = logging.getLogger(__name__)


async def resolve(session: AsyncSession, tenant_id: str, external_key: str | None, kind: str) -> str:
    """Translate an external key into the internal id of its target entity.

    An exact mapping on the raw key wins, which lets operators pin exceptions. Otherwise
    the kind's transform derives the canonical key, and the target entity and its
    mapping are found or created under their unique constraints, so a concurrent
    resolver that loses the race re-reads the winning row.
    """
    if kind not in MAPPING_KINDS:
        raise MappingError(f"Unknown mapping kind: {kind}", kind=kind, external_key=external_key)
    raw = str(external_key).strip() if external_key is not None else ""
    if not raw:
        raise MappingError("External key is empty", kind=kind, external_key=external_key)
    existing = await key_mappings_repo.get_mapping(session, tenant_id, kind, raw)
    if existing is not None:
        return existing.internal_id

    canonical = canonical_key(kind, raw)
    if not canonical:
        raise MappingError(
            f"Transform produced an empty key for {raw!r}", kind=kind, external_key=external_key
        )
    if canonical != raw:
        existing = await key_mappings_repo.get_mapping(session, tenant_id, kind, canonical)
        if existing is not None:
            return existing.internal_id

    internal_id = await key_mappings_repo.find_or_create_entity(session, tenant_id, kind, canonical)
    mapping = await key_mappings_repo.find_or_create_mapping(
        session, tenant_id, kind, canonical, internal_id
    )
    logger.debug(
        "key_mapping_resolved tenant=%s kind=%s external_key=%s canonical=%s",
        tenant_id,
        kind,
        raw,
        canonical,
    )
    return mapping.internal_id


class MappingResolver:
    # Memoizes within one store transaction only; the tenant store stays the source of truth.
    def __init__(self, session: AsyncSession, tenant_id: str) -> None:
        self._session = session
        self._tenant_id = tenant_id
        self._memo: dict[tuple[str, str], str] = {}

    async def resolve(self, external_key: str | None, kind: str) -> str:
        memo_key = (kind, str(external_key).strip() if external_key is not None else "")
        cached = self._memo.get(memo_key)
        if cached is not None:
            return cached
        internal_id = await resolve(self._session, self._tenant_id, external_key, kind)
        self._memo[memo_key] = internal_id
        return internal_id
