from __future__ import annotations

import time
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantsync.apps.api.errors import (
    http_exception_handler,
    starlette_http_exception_handler,
    tenant_predicate_exception_handler,
    tenantsync_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from tenantsync.apps.api.response import API_VERSION
from tenantsync.apps.api.routes.health import router as health_router
from tenantsync.apps.api.routes.jobs import router as jobs_router
from tenantsync.apps.api.routes.ops import router as ops_router
from tenantsync.apps.api.routes.warehouse import router as warehouse_router
from tenantsync.core.config import get_settings
from tenantsync.core.errors import TenantSyncError
from tenantsync.core.logging import configure_logging
from tenantsync.persistence.guards import TenantPredicateError
from tenantsync.services.telemetry import increment_counter


def create_app() -> FastAPI:
    configure_logging()
    settings = get_settings()
    app = FastAPI(
        title=settings.app_name,
        openapi_url=f"/{API_VERSION}/openapi.json",
        docs_url=f"/{API_VERSION}/docs",
        redoc_url=None,
    )

    @app.middleware("http")
    async def request_context_middleware(request: Request, call_next):  # type: ignore[override]
        # Preserve incoming request IDs or assign a new one for traceability.
        request_id = request.headers.get("X-Request-Id") or str(uuid4())
        request.state.request_id = request_id
        start = time.monotonic()
        response = await call_next(request)
        increment_counter(f"http_requests_{response.status_code // 100}xx_total")
        response.headers.setdefault("X-Request-Id", request_id)
        response.headers["X-Response-Time-Ms"] = f"{(time.monotonic() - start) * 1000.0:.1f}"
        return response

    @app.exception_handler(StarletteHTTPException)
    async def _starlette_http_exception_handler(request: Request, exc: StarletteHTTPException):
        return await starlette_http_exception_handler(request, exc)

    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        return await unhandled_exception_handler(request, exc)

    @app.exception_handler(RequestValidationError)
    async def _validation_exception_handler(request: Request, exc: RequestValidationError):
        return await validation_exception_handler(request, exc)

    @app.exception_handler(HTTPException)
    async def _http_exception_handler(request: Request, exc: HTTPException):
        return await http_exception_handler(request, exc)

    @app.exception_handler(TenantPredicateError)
    async def _tenant_predicate_exception_handler(request: Request, exc: TenantPredicateError):
        return await tenant_predicate_exception_handler(request, exc)

    @app.exception_handler(TenantSyncError)
    async def _tenantsync_exception_handler(request: Request, exc: TenantSyncError):
        return await tenantsync_exception_handler(request, exc)

    app.include_router(health_router, prefix=f"/{API_VERSION}")
    app.include_router(jobs_router, prefix=f"/{API_VERSION}")
    app.include_router(warehouse_router, prefix=f"/{API_VERSION}")
    app.include_router(ops_router, prefix=f"/{API_VERSION}")
    return app


app = create_app()
