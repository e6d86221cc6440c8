from __future__ import annotations


class TenantSyncError(Exception):
    """Base error for tenantsync."""


class ProviderConfigError(TenantSyncError):
    """Missing or invalid warehouse configuration."""


class AuthError(TenantSyncError):
    """Credential issuance or token exchange failure; never retried with the same assertion."""


class WarehouseError(TenantSyncError):
    """Warehouse API request failure."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        reason: str | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.reason = reason
        self.transient = transient


class QueryValidationError(WarehouseError):
    """Query spec rejected before reaching the warehouse."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status_code=400, reason="invalidQuery", transient=False)


class MappingError(TenantSyncError):
    """External key could not be translated to an internal id."""

    def __init__(self, message: str, *, kind: str, external_key: str | None) -> None:
        super().__init__(message)
        self.kind = kind
        self.external_key = external_key


class RecordValidationError(TenantSyncError):
    """Warehouse row does not match the expected record shape."""

    def __init__(self, message: str, *, reason: str = "invalid_record") -> None:
        super().__init__(message)
        self.reason = reason


class StoreWriteError(TenantSyncError):
    """Tenant store write failed; the batch was rolled back."""


class AlreadyRunningError(TenantSyncError):
    """Another invocation holds the run lock for this scope."""

    def __init__(self, tenant_id: str, source: str, model_type: str) -> None:
        super().__init__(f"Run already in progress for {tenant_id}/{source}/{model_type}")
        self.tenant_id = tenant_id
        self.source = source
        self.model_type = model_type
