from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import json
import logging
from pathlib import Path
import time
from uuid import uuid4

import httpx
import jwt
from pydantic import BaseModel, ValidationError

from tenantsync.core.config import MAX_TOKEN_LIFETIME_S, Settings, get_settings
from tenantsync.core.errors import AuthError, ProviderConfigError
from tenantsync.services.resilience import RetryPolicy, default_retry_policy, retry_async
from tenantsync.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


class ServiceAccount(BaseModel):
    # Subset of the service account key file needed to mint assertions.
    client_email: str
    private_key: str
    project_id: str | None = None
    private_key_id: str | None = None
    token_uri: str | None = None

    def __repr__(self) -> str:
        # Never render key material in logs or tracebacks.
        return f"ServiceAccount(client_email={self.client_email!r}, project_id={self.project_id!r})"

    __str__ = __repr__


class BearerToken(BaseModel):
    access_token: str
    token_type: str = "Bearer"
    expires_at: datetime

    def __repr__(self) -> str:
        return f"BearerToken(token_type={self.token_type!r}, expires_at={self.expires_at.isoformat()})"

    __str__ = __repr__

    def expires_within(self, margin_s: float, *, now: datetime | None = None) -> bool:
        current = now or datetime.now(timezone.utc)
        return self.expires_at - current <= timedelta(seconds=margin_s)


def load_service_account(settings: Settings | None = None) -> ServiceAccount:
    # Inline JSON wins over the key file so containers can inject secrets via env.
    settings = settings or get_settings()
    raw = settings.warehouse_service_account_json
    if not raw and settings.warehouse_service_account_file:
        try:
            raw = Path(settings.warehouse_service_account_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise ProviderConfigError("Warehouse service account file is unreadable") from exc
    if not raw:
        raise ProviderConfigError(
            "WAREHOUSE_SERVICE_ACCOUNT_JSON or WAREHOUSE_SERVICE_ACCOUNT_FILE is required"
        )
    try:
        return ServiceAccount.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as exc:
        raise ProviderConfigError("Warehouse service account JSON is invalid") from exc


def sign_assertion(
    account: ServiceAccount,
    *,
    audience: str,
    scope: str,
    lifetime_s: int,
    now: datetime | None = None,
) -> str:
    # Fresh jti on every call so an assertion is never replayed.
    issued_at = now or datetime.now(timezone.utc)
    lifetime = max(1, min(int(lifetime_s), MAX_TOKEN_LIFETIME_S))
    claims = {
        "iss": account.client_email,
        "scope": scope,
        "aud": audience,
        "iat": int(issued_at.timestamp()),
        "exp": int(issued_at.timestamp()) + lifetime,
        "jti": uuid4().hex,
    }
    headers = {"kid": account.private_key_id} if account.private_key_id else None
    try:
        return jwt.encode(claims, account.private_key, algorithm="RS256", headers=headers)
    except (ValueError, TypeError, jwt.PyJWTError) as exc:
        raise AuthError("Service account private key is malformed") from exc


async def issue_token(
    account: ServiceAccount,
    *,
    client: httpx.AsyncClient,
    settings: Settings | None = None,
    now: datetime | None = None,
) -> BearerToken:
    """Mint an assertion and exchange it for a bearer token.

    Transport errors propagate unchanged so the caller can retry with a newly minted
    assertion; any non-success response from the token endpoint is an ``AuthError``.
    """
    settings = settings or get_settings()
    token_uri = settings.warehouse_token_uri or account.token_uri
    issued_at = now or datetime.now(timezone.utc)
    assertion = sign_assertion(
        account,
        audience=token_uri,
        scope=settings.warehouse_scope,
        lifetime_s=settings.warehouse_token_lifetime_s,
        now=issued_at,
    )
    start = time.monotonic()
    try:
        response = await client.post(
            token_uri,
            data={"grant_type": _JWT_BEARER_GRANT, "assertion": assertion},
        )
    except httpx.TransportError:
        record_external_call(
            integration="warehouse.token",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        raise
    latency_ms = (time.monotonic() - start) * 1000.0
    if response.status_code >= 300:
        record_external_call(integration="warehouse.token", latency_ms=latency_ms, success=False)
        logger.warning(
            "warehouse_token_exchange_failed status=%s client_email=%s",
            response.status_code,
            account.client_email,
        )
        raise AuthError(f"Token exchange failed with status {response.status_code}")
    try:
        body = response.json()
    except ValueError as exc:
        raise AuthError("Token exchange returned a non-JSON body") from exc
    access_token = body.get("access_token") if isinstance(body, dict) else None
    if not access_token:
        raise AuthError("Token exchange response missing access_token")
    record_external_call(integration="warehouse.token", latency_ms=latency_ms, success=True)
    expires_in = int(body.get("expires_in") or settings.warehouse_token_lifetime_s)
    return BearerToken(
        access_token=access_token,
        token_type=body.get("token_type") or "Bearer",
        expires_at=issued_at + timedelta(seconds=min(expires_in, MAX_TOKEN_LIFETIME_S)),
    )


def _is_transport_error(exc: Exception) -> bool:
    return isinstance(exc, (httpx.TransportError, TimeoutError))


class TokenProvider:
    """Process-local bearer token cache for one service account.

    Tokens live in memory only and are refreshed once they are within the configured
    safety margin of expiry.
    """

    def __init__(
        self,
        account: ServiceAccount,
        *,
        client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._account = account
        self._settings = settings or get_settings()
        self._client = client
        self._owns_client = client is None
        self._retry_policy = retry_policy
        self._token: BearerToken | None = None
        self._lock = asyncio.Lock()

    @property
    def account(self) -> ServiceAccount:
        return self._account

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None:
            return self._client
        # Reuse a single client per provider for connection pooling.
        self._client = httpx.AsyncClient(timeout=self._settings.ext_call_timeout_ms / 1000.0)
        return self._client

    def invalidate(self) -> None:
        # Drop the cached token after the warehouse rejects it.
        self._token = None

    async def get_token(self) -> BearerToken:
        margin_s = self._settings.warehouse_token_refresh_margin_s
        token = self._token
        if token is not None and not token.expires_within(margin_s):
            return token
        async with self._lock:
            token = self._token
            if token is not None and not token.expires_within(margin_s):
                return token
            client = self._get_client()

            async def _mint() -> BearerToken:
                # Each attempt signs a new assertion.
                return await issue_token(self._account, client=client, settings=self._settings)

            try:
                token = await retry_async(
                    _mint,
                    policy=self._retry_policy or default_retry_policy(),
                    retryable=_is_transport_error,
                    operation="warehouse.token",
                )
            except (httpx.TransportError, TimeoutError) as exc:
                raise AuthError("Token endpoint unreachable") from exc
            self._token = token
            logger.info(
                "warehouse_token_issued client_email=%s expires_at=%s",
                self._account.client_email,
                token.expires_at.isoformat(),
            )
            return token

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
