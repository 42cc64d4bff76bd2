from __future__ import annotations

from datetime import datetime, timezone
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tenantshift.domain.models import AuditEvent
from tenantshift.persistence.db import SessionLocal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["api_key", "authorization", "token", "secret", "password", "dsn", "credential"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    # Substring match, so "dns_api_token" and "database_dsn" both hit.
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_metadata(value: Any) -> Any:
    # Provider handles can carry DSNs and tokens; keep the shape, blank the values.
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


async def record_event(
    *,
    session: AsyncSession | None = None,
    tenant_id: str | None,
    event_type: str,
    outcome: str,
    actor_type: str = "system",
    actor_id: str | None = None,
    resource_type: str | None = None,
    resource_id: str | None = None,
    request_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    error_code: str | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    # Write audit rows in a best-effort manner so audit failures never break migrations.
    event = AuditEvent(
        occurred_at=datetime.now(timezone.utc),
        tenant_id=tenant_id,
        actor_type=actor_type,
        actor_id=actor_id,
        event_type=event_type,
        outcome=outcome,
        resource_type=resource_type,
        resource_id=resource_id,
        request_id=request_id,
        metadata_json=sanitize_metadata(metadata or {}),
        error_code=error_code,
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(event)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                level = logger.warning if best_effort else logger.error
                level("audit_event_write_failed event_type=%s", event_type, exc_info=exc)
                if not best_effort:
                    raise
        return

    try:
        session.add(event)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        level = logger.warning if best_effort else logger.error
        level("audit_event_write_failed event_type=%s", event_type, exc_info=exc)
        if not best_effort:
            raise
