from __future__ import annotations

import re
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantsync.core.config import get_settings
from tenantsync.persistence.guards import TenantPredicateError, require_tenant_id


_TENANT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


def validate_tenant_id(tenant_id: str | None) -> str:
    # Tenant ids become schema names in schema mode, so keep them identifier-safe.
    require_tenant_id(tenant_id)
    if not tenant_id or not _TENANT_ID_PATTERN.match(tenant_id):
        raise TenantPredicateError(f"Invalid tenant id: {tenant_id!r}")
    return tenant_id


def tenant_schema(tenant_id: str) -> str | None:
    # Shared mode keeps every tenant in the default schema.
    settings = get_settings()
    if settings.tenant_schema_mode.lower() != "schema":
        return None
    return f"{settings.tenant_schema_prefix}{tenant_id.replace('-', '_').lower()}"


def resolve_tenant_bind(tenant_id: str) -> dict[str, Any]:
    # Execution options that route unqualified tables to the tenant's namespace.
    schema = tenant_schema(validate_tenant_id(tenant_id))
    if schema is None:
        return {}
    return {"schema_translate_map": {None: schema}}


@asynccontextmanager
async def tenant_session(
    session_factory: async_sessionmaker[AsyncSession], tenant_id: str
) -> AsyncIterator[AsyncSession]:
    # Bind the session to a tenant-scoped engine so every transaction, including those
    # begun after a commit, resolves tables in the tenant's namespace.
    options = resolve_tenant_bind(tenant_id)
    if not options:
        async with session_factory() as session:
            yield session
        return
    bind = session_factory.kw.get("bind")
    if bind is None:
        raise TenantPredicateError("Schema-mode tenancy needs a session factory bound to an engine")
    async with session_factory(bind=bind.execution_options(**options)) as session:
        yield session
