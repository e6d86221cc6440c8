from __future__ import annotations

import hmac
from typing import AsyncGenerator

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tenantsync.core.config import get_settings
from tenantsync.persistence.db import SessionLocal, get_session
from tenantsync.services.warehouse.executor import QueryExecutor, build_executor


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    # Jobs open their own tenant-scoped sessions per batch.
    return SessionLocal


async def get_query_executor() -> AsyncGenerator[QueryExecutor, None]:
    executor = build_executor()
    try:
        yield executor
    finally:
        await executor.aclose()


def _auth_error(message: str) -> HTTPException:
    # Normalize auth errors for clients without leaking internal details.
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "AUTH_UNAUTHORIZED", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def _parse_bearer_token(header_value: str | None) -> str | None:
    if not header_value:
        return None
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise _auth_error("Missing or invalid bearer token")
    return parts[1]


async def require_ops_token(request: Request) -> None:
    # Job and query routes are operator-only; one shared token guards them.
    settings = get_settings()
    token = _parse_bearer_token(request.headers.get("Authorization"))
    if settings.auth_dev_bypass:
        return
    if not settings.ops_api_token:
        raise _auth_error("Ops token not configured; set OPS_API_TOKEN or AUTH_DEV_BYPASS=true")
    if token is None or not hmac.compare_digest(token, settings.ops_api_token):
        raise _auth_error("Missing or invalid bearer token")


OpsAuth = Depends(require_ops_token)
