from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantsync.domain.models import AuditEvent
from tenantsync.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["authorization", "token", "secret", "password", "private_key", "assertion"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Match sensitive key fragments case-insensitively to enforce redaction policy.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Recursively scrub sensitive fields while preserving safe structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_metadata(raw_value)
        return sanitized
    if isinstance(value, list):
        return [sanitize_metadata(item) for item in value]
    return value


def build_event(
    *,
    tenant_id: str | None,
    actor_type: str,
    actor_id: str | None,
    event_type: str,
    outcome: str,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    old_value: dict[str, Any] | None = None,
    new_value: dict[str, Any] | None = None,
    error_code: str | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    return AuditEvent(
        occurred_at=occurred_at or datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        old_value_json=old_value,
        new_value_json=new_value,
        error_code=error_code,
    )


async def record_event(
    *,
    session: AsyncSession | None = None,
    commit: bool | None = None,
    best_effort: bool = True,
    **fields: Any,
) -> None:
    """Append an audit row.

    With ``session`` the row joins the caller's transaction, so position changes and
    their audit trail commit or roll back together. Without one, a dedicated session is
    used and failures are logged rather than raised when ``best_effort`` is set.
    """
    event = build_event(**fields)
    event_type = fields.get("event_type")
    request_id = fields.get("request_id")

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                if not best_effort:
                    raise
                logger.warning(
                    "audit_event_write_failed event_type=%s request_id=%s",
                    event_type,
                    request_id,
                    exc_info=exc,
                )
        return

    session.add(event)
    if commit:
        await session.commit()
