from __future__ import annotations

from typing import Any

from tenantsync.apps.api.response import ErrorEnvelope


def _error_example(*, code: str, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "error": {"code": code, "message": message},
        "meta": {"request_id": "req_example", "api_version": "v1"},
    }
    if details:
        payload["error"]["details"] = details
    return payload


def _response(description: str, example: dict[str, Any]) -> dict[str, Any]:
    return {
        "model": ErrorEnvelope,
        "description": description,
        "content": {"application/json": {"example": example}},
    }


DEFAULT_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    400: _response(
        "Invalid query or tenant",
        _error_example(code="QUERY_INVALID", message="Unknown filter operator: regex"),
    ),
    401: _response(
        "Unauthorized",
        _error_example(code="AUTH_UNAUTHORIZED", message="Missing or invalid bearer token"),
    ),
    422: _response(
        "Request validation failed",
        _error_example(code="REQUEST_VALIDATION_ERROR", message="Validation error"),
    ),
    500: _response(
        "Internal error",
        _error_example(code="INTERNAL_ERROR", message="Internal server error"),
    ),
    502: _response(
        "Warehouse rejected the request",
        _error_example(code="WAREHOUSE_AUTH_FAILED", message="Token endpoint returned 400"),
    ),
    503: _response(
        "Warehouse temporarily unavailable",
        _error_example(
            code="WAREHOUSE_UNAVAILABLE",
            message="Rate limit exceeded",
            details={"reason": "rateLimitExceeded"},
        ),
    ),
}

DISPATCH_ERROR_RESPONSES: dict[int, dict[str, Any]] = {
    **DEFAULT_ERROR_RESPONSES,
    409: _response(
        "A run already holds the lock for this scope",
        _error_example(
            code="ALREADY_RUNNING",
            message="Run already in progress for acme/kiotviet/customers",
            details={"tenant_id": "acme", "source": "kiotviet", "model_type": "customers"},
        ),
    ),
}
