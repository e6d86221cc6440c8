from __future__ import annotations

from typing import Any

from fastapi import HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from tenantsync.apps.api.response import error_response
from tenantsync.core.errors import (
    AlreadyRunningError,
    AuthError,
    ProviderConfigError,
    QueryValidationError,
    TenantSyncError,
    WarehouseError,
)
from tenantsync.persistence.guards import TenantPredicateError


_DEFAULT_ERROR_CODES: dict[int, str] = {
    400: "BAD_REQUEST",
    401: "AUTH_UNAUTHORIZED",
    403: "AUTH_FORBIDDEN",
    404: "NOT_FOUND",
    409: "CONFLICT",
    422: "VALIDATION_ERROR",
    500: "INTERNAL_ERROR",
    502: "BAD_GATEWAY",
    503: "SERVICE_UNAVAILABLE",
}


def _default_code(status_code: int) -> str:
    # Map status codes to fallback error codes when none are provided.
    return _DEFAULT_ERROR_CODES.get(status_code, "UNKNOWN_ERROR")


def _split_detail(detail: Any, status_code: int) -> tuple[str, str, dict[str, Any] | None]:
    # Extract code/message/details from FastAPI HTTPException detail payloads.
    if isinstance(detail, dict):
        code = str(detail.get("code") or _default_code(status_code))
        message = str(detail.get("message") or "Request failed")
        details = {k: v for k, v in detail.items() if k not in {"code", "message"}}
        return code, message, details or None
    if isinstance(detail, str):
        return _default_code(status_code), detail, None
    return _default_code(status_code), "Request failed", None


def _envelope(
    request: Request,
    *,
    status_code: int,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    # Every route lives under /v1, so unknown paths get the same envelope.
    payload = error_response(request=request, code=code, message=message, details=details)
    return JSONResponse(content=payload, status_code=status_code, headers=headers)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    # Route handlers raise HTTPException with a {code, message} detail.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def starlette_http_exception_handler(
    request: Request, exc: StarletteHTTPException
) -> JSONResponse:
    # Starlette raises its own HTTPException for unknown routes and methods.
    code, message, details = _split_detail(exc.detail, exc.status_code)
    return _envelope(
        request,
        status_code=exc.status_code,
        code=code,
        message=message,
        details=details,
        headers=exc.headers,
    )


async def validation_exception_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    # Field-level errors travel in details so callers can point at the bad input.
    return _envelope(
        request,
        status_code=422,
        code="REQUEST_VALIDATION_ERROR",
        message="Validation error",
        details={"errors": jsonable_encoder(exc.errors())},
    )


async def tenant_predicate_exception_handler(
    request: Request, exc: TenantPredicateError
) -> JSONResponse:
    return _envelope(request, status_code=400, code="TENANT_INVALID", message=exc.message)


async def tenantsync_exception_handler(request: Request, exc: TenantSyncError) -> JSONResponse:
    # Domain errors carry no stack traces; messages never include credentials.
    if isinstance(exc, QueryValidationError):
        return _envelope(request, status_code=400, code="QUERY_INVALID", message=str(exc))
    if isinstance(exc, AlreadyRunningError):
        return _envelope(
            request,
            status_code=409,
            code="ALREADY_RUNNING",
            message=str(exc),
            details={"tenant_id": exc.tenant_id, "source": exc.source, "model_type": exc.model_type},
        )
    if isinstance(exc, AuthError):
        return _envelope(request, status_code=502, code="WAREHOUSE_AUTH_FAILED", message=str(exc))
    if isinstance(exc, WarehouseError):
        status_code = 503 if exc.transient else 502
        return _envelope(
            request,
            status_code=status_code,
            code="WAREHOUSE_UNAVAILABLE" if exc.transient else "WAREHOUSE_ERROR",
            message=str(exc),
            details={"reason": exc.reason} if exc.reason else None,
        )
    if isinstance(exc, ProviderConfigError):
        return _envelope(request, status_code=503, code="NOT_CONFIGURED", message=str(exc))
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    # Avoid leaking stack traces; return a stable internal error envelope.
    return _envelope(request, status_code=500, code="INTERNAL_ERROR", message="Internal server error")
